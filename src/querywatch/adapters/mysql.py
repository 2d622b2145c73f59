"""
MySQL database adapter implementation.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from ..errors import AdapterConfigurationError, AdapterConnectionError
from .base import ConnectionConfig, DatabaseAdapter


def _load_driver():
    try:
        import pymysql  # type: ignore[import-untyped]

        return pymysql
    except ImportError:
        return None


class MySQLAdapter(DatabaseAdapter):
    """
    Adapter wrapping the PyMySQL driver.
    """

    driver_name = "mysql"
    paramstyle = "format"

    def connect(self, config: ConnectionConfig) -> Any:
        driver = _load_driver()
        if driver is None:
            raise AdapterConfigurationError("PyMySQL is required to use MySQLAdapter.")
        if not config.dsn:
            raise AdapterConfigurationError("ConnectionConfig must be built from a DSN for MySQL connections.")

        options = dict(config.options or {})
        if config.timeout and "connect_timeout" not in options:
            options["connect_timeout"] = int(config.timeout)

        self.logger.info(
            "Connecting to MySQL %s as '%s' (autocommit=%s)",
            config.descriptive_label(),
            self.name,
            config.autocommit,
        )

        dsn = config.dsn
        connect_kwargs = {
            "host": dsn.host or "localhost",
            "user": dsn.username,
            "password": dsn.password,
            "database": dsn.database,
            **options,
        }
        if dsn.port:
            connect_kwargs["port"] = dsn.port

        try:
            connection = driver.connect(**connect_kwargs)
        except Exception as exc:
            raise AdapterConnectionError("Failed to connect to MySQL.") from exc
        if hasattr(connection, "autocommit"):
            connection.autocommit(config.autocommit)

        self._connection = connection
        self._config = config
        return connection

    def _plan_statement(self, sql: str, *, analyze: bool) -> str:
        if analyze:
            return f"EXPLAIN ANALYZE {sql}"
        return f"EXPLAIN FORMAT=JSON {sql}"

    def _parse_plan(self, rows: Sequence[Any], *, analyze: bool) -> Any:
        if not rows:
            return None
        if analyze:
            return {"plan": "\n".join(str(row[0]) for row in rows)}
        plan = rows[0][0]
        if isinstance(plan, (str, bytes)):
            plan = json.loads(plan)
        return plan
