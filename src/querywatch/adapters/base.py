"""
Instrumented database adapter base.

Adapters wrap a DB-API connection, time every statement and publish a
``QueryEvent`` on a ``QueryEventBus``. They also run the dialect-specific
plan statements used by ``AdapterPlanProvider``.
"""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from ..errors import AdapterConfigurationError, AdapterConnectionError, AdapterExecutionError, PlanError
from ..hooks import QueryEventBus, bus as default_bus
from ..records import QueryEvent, copy_bindings
from ..security.dsns import DSNConfig, parse_dsn
from ..security.redaction import redact_bindings
from ..utils import get_logger, time_call

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise AdapterConfigurationError(f"Invalid boolean value for '{key}': {value!r}")


def _parse_float(value: str, *, key: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise AdapterConfigurationError(f"Invalid float value for '{key}': {value!r}") from exc


def _parse_int(value: str, *, key: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise AdapterConfigurationError(f"Invalid integer value for '{key}': {value!r}") from exc


def _pop_bool(query: dict[str, str], key: str) -> bool | None:
    if key not in query:
        return None
    return _parse_bool(query.pop(key), key=key)


def _pop_float(query: dict[str, str], key: str) -> float | None:
    if key not in query:
        return None
    return _parse_float(query.pop(key), key=key)


def _parse_option_values(query: dict[str, str]) -> dict[str, Any]:
    options: dict[str, Any] = {}
    for key, value in query.items():
        if key == "connect_timeout":
            options[key] = _parse_int(value, key=key)
        else:
            options[key] = value
    return options


@dataclass
class ConnectionConfig:
    """
    Normalized connection configuration for adapters.
    """

    url: str
    autocommit: bool = False
    timeout: float | None = None
    options: dict[str, Any] | None = None
    dsn: DSNConfig | None = None
    source: str | None = None

    @classmethod
    def from_dsn(cls, dsn: str, **kwargs: Any) -> "ConnectionConfig":
        parsed = parse_dsn(dsn)
        query = dict(parsed.query)

        parsed_autocommit = _pop_bool(query, "autocommit")
        parsed_timeout = _pop_float(query, "timeout")
        options = _parse_option_values(query)
        options.update(kwargs.pop("options", None) or {})

        autocommit = kwargs.pop("autocommit", parsed_autocommit)
        timeout = kwargs.pop("timeout", parsed_timeout)
        return cls(
            url=dsn,
            dsn=parsed,
            autocommit=bool(autocommit),
            timeout=timeout,
            options=options or None,
            **kwargs,
        )

    @classmethod
    def from_env(cls, env_var: str, **kwargs: Any) -> "ConnectionConfig":
        value = os.getenv(env_var)
        if not value:
            raise AdapterConfigurationError(f"Environment variable {env_var} is not set")
        return cls.from_dsn(value, source=env_var, **kwargs)

    def redacted_dsn(self) -> str:
        if self.dsn:
            return self.dsn.redacted()
        return self.url

    def descriptive_label(self) -> str:
        redacted = self.redacted_dsn()
        if self.source:
            return f"{self.source} ({redacted})"
        return redacted


class DatabaseAdapter:
    """
    Base class for instrumented adapters.

    Subclasses implement ``connect`` and ``_plan_statement``; statement timing,
    event publication and parameter validation live here.
    """

    driver_name = "generic"
    paramstyle = "qmark"

    def __init__(
        self,
        name: str = "default",
        *,
        bus: QueryEventBus | None = None,
        slow_query_ms: float = 100,
    ) -> None:
        self.name = name
        self.bus = bus or default_bus
        self.slow_query_ms = slow_query_ms
        self.logger = get_logger(f"adapters.{self.driver_name}")
        self._connection: Any = None
        self._config: ConnectionConfig | None = None

    # ------------------------------------------------------------------ #
    # Connection management
    # ------------------------------------------------------------------ #
    def connect(self, config: ConnectionConfig) -> Any:
        raise NotImplementedError

    def close(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            finally:
                self._connection = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def _ensure_connection(self) -> Any:
        if self._connection is None:
            raise AdapterConnectionError(f"{type(self).__name__} is not connected.")
        if getattr(self._connection, "closed", False) and self._config is not None:
            self.logger.warning("%s connection closed; reconnecting.", self.driver_name)
            self.connect(self._config)
        return self._connection

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def execute(self, sql: str, params: Sequence[Any] | Mapping[str, Any] | None = None) -> Any:
        connection = self._ensure_connection()
        cursor = connection.cursor()
        params = params if params is not None else ()
        self._validate_params(sql, params)
        start = time.perf_counter()
        with time_call(
            f"{self.driver_name}.execute",
            self.logger,
            threshold_ms=self.slow_query_ms,
            sql=sql,
            params=redact_bindings(params),
        ):
            cursor.execute(sql, params)
        self._emit(sql, params, (time.perf_counter() - start) * 1000)
        return cursor

    def executemany(self, sql: str, seq_of_params: Iterable[Sequence[Any]]) -> Any:
        """
        Execute ``sql`` for every parameter set. One event is published for
        the whole batch, without bindings.
        """

        connection = self._ensure_connection()
        cursor = connection.cursor()
        seq = list(seq_of_params)
        for params in seq:
            self._validate_params(sql, params)
        start = time.perf_counter()
        with time_call(f"{self.driver_name}.executemany", self.logger, threshold_ms=self.slow_query_ms, sql=sql):
            cursor.executemany(sql, seq)
        self._emit(sql, (), (time.perf_counter() - start) * 1000)
        return cursor

    def commit(self) -> None:
        self._ensure_connection().commit()

    def rollback(self) -> None:
        self._ensure_connection().rollback()

    # ------------------------------------------------------------------ #
    # Plans
    # ------------------------------------------------------------------ #
    def explain(self, sql: str, params: Sequence[Any] | Mapping[str, Any] | None = None, *, analyze: bool = False) -> Any:
        """
        Return the execution plan for ``sql``.

        Plan statements bypass event publication so they are never tracked
        as application queries. Driver failures raise ``PlanError``.
        """

        statement = self._plan_statement(sql, analyze=analyze)
        connection = self._ensure_connection()
        try:
            cursor = connection.cursor()
            cursor.execute(statement, params if params is not None else ())
            rows = cursor.fetchall()
        except Exception as exc:
            raise PlanError(f"Could not explain query on {self.name}: {exc}") from exc
        return self._parse_plan(rows, analyze=analyze)

    def _plan_statement(self, sql: str, *, analyze: bool) -> str:
        raise PlanError(f"{type(self).__name__} does not support execution plans")

    def _parse_plan(self, rows: Sequence[Any], *, analyze: bool) -> Any:
        return [list(row) for row in rows]

    # ------------------------------------------------------------------ #
    def _emit(self, sql: str, params: Any, elapsed_ms: float) -> None:
        self.bus.fire(
            QueryEvent(
                sql=sql,
                bindings=copy_bindings(params),
                time_ms=round(elapsed_ms, 3),
                connection=self.name,
            )
        )

    @staticmethod
    def _count_placeholders(sql: str) -> int:
        count = 0
        idx = 0
        while idx < len(sql) - 1:
            if sql[idx] == "%" and sql[idx + 1] == "s":
                count += 1
                idx += 2
                continue
            if sql[idx] == "%" and sql[idx + 1] == "%":
                idx += 2
                continue
            idx += 1
        return count

    def _validate_params(self, sql: str, params: Any) -> None:
        if self.paramstyle != "format" or isinstance(params, Mapping):
            return
        placeholder_count = self._count_placeholders(sql)
        if placeholder_count == 0:
            if params:
                raise AdapterExecutionError("Parameters provided but SQL statement has no placeholders.")
            return
        if placeholder_count != len(params):
            raise AdapterExecutionError(
                f"Parameter count mismatch: expected {placeholder_count}, received {len(params)}."
            )
