"""
Immutable configuration for querywatch.

The configuration is resolved once at startup (from code, a mapping, or the
environment) and handed to every component's constructor.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigurationError

WILDCARD = "*"

DEFAULT_EXCLUDE_PATTERNS: tuple[str, ...] = (
    r"(?i)^SHOW FULL COLUMNS FROM",
    r"(?i)^SHOW TABLES LIKE",
    r"(?i)^select \* from [`\"]?migrations",
    r"(?i)information_schema",
    r"(?i)^SELECT DATABASE\(\)",
    r"(?i)sqlite_master",
    r"(?i)^PRAGMA\s",
)

DEFAULT_BACKTRACE_EXCLUDES: tuple[str, ...] = (
    "/site-packages/",
    "/dist-packages/",
    "/_pytest/",
    "/pluggy/",
    "/threading.py",
    "/runpy.py",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean value for '{key}': {value!r}")


def _parse_int(value: str, *, key: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer value for '{key}': {value!r}") from exc


def _parse_float(value: str, *, key: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid float value for '{key}': {value!r}") from exc


def _parse_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class StorageConfig:
    path: Path = Path("storage/logs/queries")
    max_file_size_bytes: int = 50 * 1024 * 1024
    retention_days: int = 7
    lock_timeout_s: float = 5.0


@dataclass(frozen=True)
class NPlusOneConfig:
    enabled: bool = True
    threshold: int = 3
    time_window_ms: float = 100.0
    similarity_threshold: float = 80.0


@dataclass(frozen=True)
class AlertConditions:
    slow_query: bool = True
    n_plus_one: bool = True
    query_count_threshold: int = 50


@dataclass(frozen=True)
class AlertConfig:
    enabled: bool = False
    channels: tuple[str, ...] = ("log",)
    conditions: AlertConditions = field(default_factory=AlertConditions)
    webhook_url: str | None = None
    webhook_timeout_s: float = 2.0
    field_limit: int = 500


@dataclass(frozen=True)
class BacktraceConfig:
    enabled: bool = True
    limit: int = 10
    exclude_paths: tuple[str, ...] = DEFAULT_BACKTRACE_EXCLUDES
    base_path: str | None = None


@dataclass(frozen=True)
class MetadataConfig:
    user_id: bool = True
    tenant_id: bool = False
    ip: bool = True
    user_agent: bool = False
    memory_usage: bool = True


@dataclass(frozen=True)
class PlanConfig:
    analyze_queries: bool = True
    analyze_all_queries: bool = False
    explain_analyze: bool = False
    explain_analyze_all_queries: bool = False


@dataclass(frozen=True)
class ResponseConfig:
    inject: bool = False
    key: str = "_query_debug"
    include_full_queries: bool = False


@dataclass(frozen=True)
class WatchConfig:
    """
    Top-level options. Construction validates everything, so a ``WatchConfig``
    that exists is safe to use on the query path.
    """

    enabled: bool = True
    connections: tuple[str, ...] = (WILDCARD,)
    slow_threshold_ms: float = 100.0
    sampling: int = 100
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    redact_bindings: bool = False
    n_plus_one: NPlusOneConfig = field(default_factory=NPlusOneConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    backtrace: BacktraceConfig = field(default_factory=BacktraceConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    plan: PlanConfig = field(default_factory=PlanConfig)
    response: ResponseConfig = field(default_factory=ResponseConfig)
    compiled_exclude_patterns: tuple[re.Pattern[str], ...] = field(
        init=False, repr=False, compare=False, default=()
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "connections", tuple(self.connections))
        object.__setattr__(self, "exclude_patterns", tuple(self.exclude_patterns))
        self.validate()

    # ------------------------------------------------------------------ #
    def validate(self) -> None:
        if self.slow_threshold_ms < 0:
            raise ConfigurationError("slow_threshold_ms must be >= 0")
        if not 1 <= self.sampling <= 100:
            raise ConfigurationError(f"sampling must be between 1 and 100, got {self.sampling}")
        if self.n_plus_one.threshold < 2:
            raise ConfigurationError("n_plus_one.threshold must be at least 2")
        if self.n_plus_one.time_window_ms <= 0:
            raise ConfigurationError("n_plus_one.time_window_ms must be positive")
        if self.backtrace.limit < 1:
            raise ConfigurationError("backtrace.limit must be at least 1")
        if self.storage.max_file_size_bytes <= 0:
            raise ConfigurationError("storage.max_file_size_bytes must be positive")
        if self.storage.lock_timeout_s <= 0:
            raise ConfigurationError("storage.lock_timeout_s must be positive")
        if self.storage.retention_days < 0:
            raise ConfigurationError("storage.retention_days must be >= 0")
        if self.alerts.webhook_timeout_s <= 0:
            raise ConfigurationError("alerts.webhook_timeout_s must be positive")
        if self.alerts.enabled and "webhook" in self.alerts.channels and not self.alerts.webhook_url:
            raise ConfigurationError("alerts.webhook_url is required when the webhook channel is enabled")

        compiled = []
        for pattern in self.exclude_patterns:
            try:
                compiled.append(re.compile(pattern))
            except re.error as exc:
                raise ConfigurationError(f"Invalid exclude pattern {pattern!r}: {exc}") from exc
        object.__setattr__(self, "compiled_exclude_patterns", tuple(compiled))

    def tracks_connection(self, name: str) -> bool:
        return WILDCARD in self.connections or name in self.connections

    def is_excluded(self, sql: str) -> bool:
        return any(pattern.search(sql) for pattern in self.compiled_exclude_patterns)

    def with_overrides(self, **changes: Any) -> "WatchConfig":
        return replace(self, **changes)

    # ------------------------------------------------------------------ #
    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WatchConfig":
        """
        Build a config from nested dictionaries, e.g. a parsed settings file.

        Unknown keys raise ``ConfigurationError`` so typos surface at startup.
        """

        nested = {
            "n_plus_one": NPlusOneConfig,
            "alerts": AlertConfig,
            "storage": StorageConfig,
            "backtrace": BacktraceConfig,
            "metadata": MetadataConfig,
            "plan": PlanConfig,
            "response": ResponseConfig,
        }
        kwargs: dict[str, Any] = {}
        known = {f.name for f in fields(cls) if f.init}
        for key, value in data.items():
            if key not in known:
                raise ConfigurationError(f"Unknown configuration option '{key}'")
            if key in nested and isinstance(value, Mapping):
                kwargs[key] = _build_section(nested[key], value, prefix=key)
            elif key in ("connections", "exclude_patterns"):
                kwargs[key] = tuple(value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = "QUERYWATCH_", environ: Mapping[str, str] | None = None) -> "WatchConfig":
        """
        Build a config from environment variables.

        Instrumentation stays off unless ``<prefix>ENABLED`` is set.
        """

        env = os.environ if environ is None else environ

        def raw(name: str) -> str | None:
            value = env.get(prefix + name)
            return value if value not in (None, "") else None

        def flag(name: str, default: bool) -> bool:
            value = raw(name)
            return default if value is None else _parse_bool(value, key=prefix + name)

        def integer(name: str, default: int) -> int:
            value = raw(name)
            return default if value is None else _parse_int(value, key=prefix + name)

        def number(name: str, default: float) -> float:
            value = raw(name)
            return default if value is None else _parse_float(value, key=prefix + name)

        connections = raw("CONNECTIONS")
        storage_path = raw("STORAGE_PATH")
        channels = raw("ALERT_CHANNELS")
        excludes = raw("EXCLUDE_PATTERNS")

        return cls(
            enabled=flag("ENABLED", False),
            connections=_parse_list(connections) if connections else (WILDCARD,),
            slow_threshold_ms=number("SLOW_THRESHOLD", 100.0),
            sampling=integer("SAMPLING", 100),
            exclude_patterns=_parse_list(excludes) if excludes else DEFAULT_EXCLUDE_PATTERNS,
            redact_bindings=flag("REDACT_BINDINGS", False),
            n_plus_one=NPlusOneConfig(
                enabled=flag("N_PLUS_ONE", True),
                threshold=integer("N_PLUS_ONE_THRESHOLD", 3),
                time_window_ms=number("N_PLUS_ONE_WINDOW", 100.0),
            ),
            alerts=AlertConfig(
                enabled=flag("ALERTS", False),
                channels=_parse_list(channels) if channels else ("log",),
                conditions=AlertConditions(
                    slow_query=flag("ALERT_SLOW_QUERY", True),
                    n_plus_one=flag("ALERT_N_PLUS_ONE", True),
                    query_count_threshold=integer("ALERT_COUNT_THRESHOLD", 50),
                ),
                webhook_url=raw("WEBHOOK_URL"),
                webhook_timeout_s=number("WEBHOOK_TIMEOUT", 2.0),
            ),
            storage=StorageConfig(
                path=Path(storage_path) if storage_path else StorageConfig.path,
                max_file_size_bytes=integer("MAX_FILE_SIZE", 50) * 1024 * 1024,
                retention_days=integer("RETENTION_DAYS", 7),
            ),
            backtrace=BacktraceConfig(
                enabled=flag("BACKTRACE", True),
                limit=integer("BACKTRACE_LIMIT", 10),
                base_path=raw("BASE_PATH"),
            ),
            plan=PlanConfig(
                analyze_queries=flag("ANALYZE", True),
                analyze_all_queries=flag("ANALYZE_ALL", False),
                explain_analyze=flag("EXPLAIN_ANALYZE", False),
                explain_analyze_all_queries=flag("EXPLAIN_ANALYZE_ALL", False),
            ),
            response=ResponseConfig(
                inject=flag("INJECT_RESPONSE", False),
                key=raw("RESPONSE_KEY") or "_query_debug",
                include_full_queries=flag("FULL_QUERIES_IN_RESPONSE", False),
            ),
        )


def _build_section(section_cls: type, data: Mapping[str, Any], *, prefix: str) -> Any:
    known = {f.name for f in fields(section_cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(f"Unknown configuration option '{prefix}.{key}'")
        if section_cls is AlertConfig and key == "conditions" and isinstance(value, Mapping):
            value = _build_section(AlertConditions, value, prefix=f"{prefix}.conditions")
        elif section_cls is StorageConfig and key == "path":
            value = Path(value)
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    return section_cls(**kwargs)
