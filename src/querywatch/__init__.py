"""
querywatch public package initialization.

Request-scoped SQL observability: slow query and N+1 detection, a rotating
JSON evidence log, and pluggable alert channels.
"""

from .adapters import ConnectionConfig, MySQLAdapter, PostgresAdapter, SQLiteAdapter  # noqa: F401
from .alerts import AlertDispatcher, LogChannel, WebhookChannel  # noqa: F401
from .analysis import AnalysisReport, LogAnalyzer, cleanup_logs  # noqa: F401
from .backtrace import BacktraceCollector, application_layer  # noqa: F401
from .config import WatchConfig  # noqa: F401
from .errors import ConfigurationError, QueryWatchError  # noqa: F401
from .hooks import QueryEventBus, bus  # noqa: F401
from .plans import AdapterPlanProvider, PlanProvider  # noqa: F401
from .records import (  # noqa: F401
    AlertEvent,
    AlertKind,
    Frame,
    NPlusOnePattern,
    QueryEvent,
    QueryRecord,
    RequestMetadata,
)
from .response import inject_summary  # noqa: F401
from .storage import JsonFileStore  # noqa: F401
from .tracking import PatternTracker, RequestAggregator  # noqa: F401
from .watch import QueryWatch  # noqa: F401

__all__ = [
    "QueryWatch",
    "WatchConfig",
    "QueryEvent",
    "QueryRecord",
    "NPlusOnePattern",
    "RequestMetadata",
    "Frame",
    "AlertEvent",
    "AlertKind",
    "PatternTracker",
    "RequestAggregator",
    "JsonFileStore",
    "AlertDispatcher",
    "LogChannel",
    "WebhookChannel",
    "BacktraceCollector",
    "application_layer",
    "PlanProvider",
    "AdapterPlanProvider",
    "QueryEventBus",
    "bus",
    "ConnectionConfig",
    "SQLiteAdapter",
    "PostgresAdapter",
    "MySQLAdapter",
    "LogAnalyzer",
    "AnalysisReport",
    "cleanup_logs",
    "inject_summary",
    "ConfigurationError",
    "QueryWatchError",
]
