"""
PostgreSQL database adapter implementation.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from ..errors import AdapterConfigurationError, AdapterConnectionError
from .base import ConnectionConfig, DatabaseAdapter


def _load_driver():
    try:
        import psycopg

        return psycopg
    except ImportError:
        return None


class PostgresAdapter(DatabaseAdapter):
    """
    Adapter wrapping the psycopg PostgreSQL driver.
    """

    driver_name = "postgres"
    paramstyle = "format"

    def connect(self, config: ConnectionConfig) -> Any:
        driver = _load_driver()
        if driver is None:
            raise AdapterConfigurationError("psycopg is required to use PostgresAdapter.")

        options = dict(config.options or {})
        if config.timeout and "connect_timeout" not in options:
            options["connect_timeout"] = int(config.timeout)

        self.logger.info(
            "Connecting to PostgreSQL %s as '%s' (autocommit=%s)",
            config.descriptive_label(),
            self.name,
            config.autocommit,
        )

        try:
            connection = driver.connect(config.url, **options)
        except Exception as exc:
            raise AdapterConnectionError("Failed to connect to PostgreSQL.") from exc
        connection.autocommit = bool(config.autocommit)

        self._connection = connection
        self._config = config
        return connection

    def _plan_statement(self, sql: str, *, analyze: bool) -> str:
        if analyze:
            return f"EXPLAIN (ANALYZE, FORMAT JSON) {sql}"
        return f"EXPLAIN (FORMAT JSON) {sql}"

    def _parse_plan(self, rows: Sequence[Any], *, analyze: bool) -> Any:
        if not rows:
            return None
        plan = rows[0][0]
        if isinstance(plan, (str, bytes)):
            plan = json.loads(plan)
        return plan
