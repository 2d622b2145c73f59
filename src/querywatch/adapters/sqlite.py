"""
SQLite database adapter implementation.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Sequence

from ..errors import PlanError
from .base import ConnectionConfig, DatabaseAdapter


class SQLiteAdapter(DatabaseAdapter):
    """
    Adapter wrapping the Python stdlib sqlite3 module.
    """

    driver_name = "sqlite"
    paramstyle = "qmark"

    def connect(self, config: ConnectionConfig) -> sqlite3.Connection:
        path = self._normalize_path(config.url)
        timeout = config.timeout if config.timeout is not None else 5.0

        connection = sqlite3.connect(
            path,
            isolation_level=None if config.autocommit else "",
            timeout=timeout,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")

        self._connection = connection
        self._config = config
        return connection

    def _plan_statement(self, sql: str, *, analyze: bool) -> str:
        if analyze:
            raise PlanError("SQLite does not support EXPLAIN ANALYZE")
        return f"EXPLAIN QUERY PLAN {sql}"

    def _parse_plan(self, rows: Sequence[Any], *, analyze: bool) -> Any:
        plan = []
        for row in rows:
            values = tuple(row)
            plan.append({"id": values[0], "parent": values[1], "detail": values[-1]})
        return plan

    @staticmethod
    def _normalize_path(url: str) -> str:
        if url == "sqlite:///:memory:":
            return ":memory:"
        prefix = "sqlite:///"
        if url.startswith(prefix):
            return url[len(prefix) :]
        return url
