"""
Value types flowing through the observability pipeline.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set


def copy_bindings(bindings: Any) -> Any:
    """Copy positional (list) or named (dict) bindings into JSON-friendly containers."""
    if bindings is None:
        return []
    if isinstance(bindings, Mapping):
        return dict(bindings)
    return list(bindings)


@dataclass(frozen=True)
class Frame:
    file: str
    line: int
    cls: Optional[str] = None
    function: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "line": self.line, "class": self.cls, "function": self.function}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Frame":
        return cls(
            file=data.get("file", ""),
            line=int(data.get("line", 0)),
            cls=data.get("class"),
            function=data.get("function"),
        )


@dataclass(frozen=True)
class QueryEvent:
    """A single statement execution reported by an event source."""

    sql: str
    bindings: Any = field(default_factory=list)
    time_ms: float = 0.0
    connection: str = "default"


@dataclass(frozen=True)
class NPlusOnePattern:
    query_pattern: str
    count: int
    route: str
    location: Optional[str]
    suggestion: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NPlusOnePattern":
        return cls(
            query_pattern=data["query_pattern"],
            count=int(data["count"]),
            route=data.get("route", "unknown"),
            location=data.get("location"),
            suggestion=data.get("suggestion", ""),
        )


@dataclass
class Execution:
    bindings: Any
    timestamp: float
    backtrace: List[Frame]


@dataclass
class PatternEntry:
    sql: str
    normalized: str
    executions: List[Execution] = field(default_factory=list)
    fingerprints: Set[str] = field(default_factory=set)
    total_ms: float = 0.0

    @property
    def count(self) -> int:
        return len(self.executions)

    @property
    def average_ms(self) -> float:
        if not self.executions:
            return 0.0
        return self.total_ms / len(self.executions)

    def record(self, execution: Execution, *, fingerprint: str, elapsed_ms: float) -> None:
        self.executions.append(execution)
        self.fingerprints.add(fingerprint)
        self.total_ms += elapsed_ms


@dataclass(frozen=True)
class RequestMetadata:
    route: str = "unknown"
    method: Optional[str] = None
    user_id: Any = None
    tenant_id: Any = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    memory_mb: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class QueryRecord:
    """
    One classified query execution, as persisted in the log store.

    Records are immutable; enrichment steps return new instances through
    ``dataclasses.replace``.
    """

    timestamp: str
    request_id: str
    connection: str
    sql: str
    bindings: Any
    time_ms: float
    normalized_sql: str
    query_hash: str
    formatted_sql: str
    backtrace: List[Frame] = field(default_factory=list)
    source: Optional[str] = None
    route: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_slow: bool = False
    n_plus_one: Optional[NPlusOnePattern] = None
    plan: Any = None
    plan_analyze: Any = None
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "request_id": self.request_id,
            "connection": self.connection,
            "sql": self.sql,
            "bindings": copy_bindings(self.bindings),
            "time_ms": self.time_ms,
            "normalized_sql": self.normalized_sql,
            "query_hash": self.query_hash,
            "formatted_sql": self.formatted_sql,
            "backtrace": [frame.to_dict() for frame in self.backtrace],
            "source": self.source,
            "route": self.route,
            "metadata": dict(self.metadata),
            "is_slow": self.is_slow,
            "n_plus_one": self.n_plus_one.to_dict() if self.n_plus_one else None,
            "plan": self.plan,
            "plan_analyze": self.plan_analyze,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryRecord":
        n_plus_one = data.get("n_plus_one")
        return cls(
            timestamp=data["timestamp"],
            request_id=data["request_id"],
            connection=data.get("connection", "default"),
            sql=data["sql"],
            bindings=copy_bindings(data.get("bindings")),
            time_ms=float(data.get("time_ms", 0.0)),
            normalized_sql=data.get("normalized_sql", ""),
            query_hash=data.get("query_hash", ""),
            formatted_sql=data.get("formatted_sql", ""),
            backtrace=[Frame.from_dict(frame) for frame in data.get("backtrace") or []],
            source=data.get("source"),
            route=data.get("route", "unknown"),
            metadata=dict(data.get("metadata") or {}),
            is_slow=bool(data.get("is_slow", False)),
            n_plus_one=NPlusOnePattern.from_dict(n_plus_one) if n_plus_one else None,
            plan=data.get("plan"),
            plan_analyze=data.get("plan_analyze"),
            issues=list(data.get("issues") or []),
        )


class AlertKind(str, enum.Enum):
    SLOW_QUERY = "slow_query"
    N_PLUS_ONE = "n_plus_one"
    HIGH_QUERY_COUNT = "high_query_count"


@dataclass(frozen=True)
class AlertEvent:
    title: str
    kind: AlertKind
    payload: Dict[str, Any]
