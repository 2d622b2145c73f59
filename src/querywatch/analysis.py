"""
Read-only analysis of persisted query logs.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import WatchConfig
from .records import QueryRecord
from .sql import similarity
from .storage import JsonFileStore
from .utils import get_logger, time_call

TOP_N = 20


@dataclass
class PatternGroup:
    """N+1 detections whose normalized SQL is similar enough to be one problem."""

    query_pattern: str
    count: int
    occurrences: int
    routes: List[str] = field(default_factory=list)
    suggestion: str = ""
    location: Optional[str] = None

    def absorb(self, record: QueryRecord) -> None:
        pattern = record.n_plus_one
        self.occurrences += 1
        self.count = max(self.count, pattern.count)
        if record.route not in self.routes:
            self.routes.append(record.route)
        if self.location is None:
            self.location = pattern.location

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_pattern": self.query_pattern,
            "count": self.count,
            "occurrences": self.occurrences,
            "routes": list(self.routes),
            "suggestion": self.suggestion,
            "location": self.location,
        }


@dataclass
class AnalysisReport:
    date: str
    total_queries: int = 0
    total_time_ms: float = 0.0
    average_time_ms: float = 0.0
    slow_count: int = 0
    n_plus_one_count: int = 0
    slow_queries: List[QueryRecord] = field(default_factory=list)
    n_plus_one_patterns: List[PatternGroup] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.total_queries == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "total_queries": self.total_queries,
            "total_time_ms": self.total_time_ms,
            "average_time_ms": self.average_time_ms,
            "slow_count": self.slow_count,
            "n_plus_one_count": self.n_plus_one_count,
            "slow_queries": [record.to_dict() for record in self.slow_queries],
            "n_plus_one_patterns": [group.to_dict() for group in self.n_plus_one_patterns],
        }


class LogAnalyzer:
    """
    Aggregates one day of persisted records into an ``AnalysisReport``.

    Filters are applied first, then ``limit`` truncates the remaining
    records, and the statistics describe what is left.
    """

    def __init__(self, store: JsonFileStore, config: WatchConfig | None = None, *, top: int = TOP_N) -> None:
        self.store = store
        self.config = config or WatchConfig()
        self.top = top
        self.logger = get_logger("analysis")

    def analyze(
        self,
        date: _dt.date | str | None = None,
        *,
        slow_only: bool = False,
        n_plus_one_only: bool = False,
        limit: Optional[int] = None,
    ) -> AnalysisReport:
        day = self.store.log_path(date).stem[len("queries-") :]
        with time_call("analysis.analyze", self.logger, threshold_ms=1000, date=day):
            records = self.store.read_all(date)
            if slow_only:
                records = [record for record in records if self._is_slow(record)]
            if n_plus_one_only:
                records = [record for record in records if record.n_plus_one is not None]
            if limit is not None:
                records = records[:limit]
            return self._report(day, records)

    # ------------------------------------------------------------------ #
    def _report(self, day: str, records: List[QueryRecord]) -> AnalysisReport:
        total_time = sum(record.time_ms for record in records)
        slow = [record for record in records if self._is_slow(record)]
        groups = self.group_patterns(records)
        return AnalysisReport(
            date=day,
            total_queries=len(records),
            total_time_ms=round(total_time, 2),
            average_time_ms=round(total_time / len(records), 2) if records else 0.0,
            slow_count=len(slow),
            n_plus_one_count=len(groups),
            slow_queries=sorted(slow, key=lambda record: record.time_ms, reverse=True)[: self.top],
            n_plus_one_patterns=sorted(groups, key=lambda group: group.count, reverse=True)[: self.top],
        )

    def group_patterns(self, records: List[QueryRecord]) -> List[PatternGroup]:
        threshold = self.config.n_plus_one.similarity_threshold
        groups: List[PatternGroup] = []
        for record in records:
            pattern = record.n_plus_one
            if pattern is None:
                continue
            group = next(
                (group for group in groups if similarity(group.query_pattern, pattern.query_pattern) >= threshold),
                None,
            )
            if group is None:
                group = PatternGroup(
                    query_pattern=pattern.query_pattern,
                    count=pattern.count,
                    occurrences=0,
                    suggestion=pattern.suggestion,
                )
                groups.append(group)
            group.absorb(record)
        return groups

    def _is_slow(self, record: QueryRecord) -> bool:
        return record.is_slow or record.time_ms >= self.config.slow_threshold_ms


def cleanup_logs(store: JsonFileStore, retention_days: Optional[int] = None) -> int:
    """Apply the retention policy, optionally overriding the configured window."""
    return store.cleanup(retention_days)
