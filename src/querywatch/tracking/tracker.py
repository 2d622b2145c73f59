"""
Per-request query pattern tracking and N+1 detection.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..backtrace import OriginPredicate, application_layer, find_origin_location
from ..config import WatchConfig
from ..records import Execution, NPlusOnePattern, PatternEntry, QueryRecord, copy_bindings
from ..sql import extract_table
from ..utils import get_logger

if TYPE_CHECKING:
    from ..alerts import AlertDispatcher
    from ..plans import PlanProvider

GENERIC_SUGGESTION = "Consider using eager loading to reduce queries"


class PatternTracker:
    """
    Groups executions by normalized-SQL hash and classifies slow queries and
    N+1 storms for exactly one request.

    A tracker must never be shared between requests; ``reset`` is called once
    at each request boundary.
    """

    def __init__(
        self,
        config: WatchConfig,
        *,
        alerts: Optional["AlertDispatcher"] = None,
        plans: Optional["PlanProvider"] = None,
        origin_predicate: OriginPredicate = application_layer,
        clock: Callable[[], float] = time.monotonic,
        defer_alerts: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.defer_alerts = defer_alerts
        self.alerts = alerts
        self.plans = plans
        self.origin_predicate = origin_predicate
        self.clock = clock
        self.logger = logger or get_logger("tracking.tracker")
        self.patterns: Dict[str, PatternEntry] = {}
        self._alerted: set[str] = set()
        self._pending: List[NPlusOnePattern] = []

    # ------------------------------------------------------------------ #
    def observe(self, record: QueryRecord) -> QueryRecord:
        issues: List[str] = []
        is_slow = record.time_ms >= self.config.slow_threshold_ms
        if is_slow:
            issues.append("slow_query")

        plan, plan_analyze = self._plans_for(record, is_slow)

        n_plus_one = None
        if self.config.n_plus_one.enabled:
            n_plus_one = self._detect_n_plus_one(record)
            if n_plus_one is not None:
                issues.append("n_plus_one")

        return replace(
            record,
            is_slow=is_slow,
            plan=plan,
            plan_analyze=plan_analyze,
            n_plus_one=n_plus_one,
            issues=issues,
        )

    def reset(self) -> None:
        self.patterns.clear()
        self._alerted.clear()
        self._pending.clear()

    def take_pending(self) -> List[NPlusOnePattern]:
        """Return and clear N+1 alerts queued while ``defer_alerts`` is set."""
        pending, self._pending = self._pending, []
        return pending

    def detected_patterns(self) -> List[PatternEntry]:
        threshold = self.config.n_plus_one.threshold
        return [entry for entry in self.patterns.values() if entry.count >= threshold]

    def summary(self) -> List[dict[str, object]]:
        return [
            {
                "query_pattern": entry.normalized,
                "count": entry.count,
                "total_ms": round(entry.total_ms, 2),
                "average_ms": round(entry.average_ms, 2),
                "distinct_bindings": len(entry.fingerprints),
            }
            for entry in self.patterns.values()
        ]

    # ------------------------------------------------------------------ #
    def _plans_for(self, record: QueryRecord, is_slow: bool) -> tuple[Any, Any]:
        if self.plans is None:
            return None, None
        options = self.config.plan
        plan = plan_analyze = None
        if (is_slow and options.analyze_queries) or options.analyze_all_queries:
            plan = self._explain(record, analyze=False)
        if (is_slow and options.explain_analyze) or options.explain_analyze_all_queries:
            plan_analyze = self._explain(record, analyze=True)
        return plan, plan_analyze

    def _explain(self, record: QueryRecord, *, analyze: bool) -> Any:
        try:
            return self.plans.explain(record.sql, record.bindings, record.connection, analyze=analyze)
        except Exception as exc:
            self.logger.debug("Plan provider raised", exc_info=True)
            return {"error": str(exc)}

    def _detect_n_plus_one(self, record: QueryRecord) -> Optional[NPlusOnePattern]:
        entry = self.patterns.get(record.query_hash)
        if entry is None:
            entry = PatternEntry(sql=record.sql, normalized=record.normalized_sql)
            self.patterns[record.query_hash] = entry
        entry.record(
            Execution(bindings=copy_bindings(record.bindings), timestamp=self.clock(), backtrace=list(record.backtrace)),
            fingerprint=self._fingerprint(record.sql, record.bindings),
            elapsed_ms=record.time_ms,
        )

        options = self.config.n_plus_one
        if entry.count < options.threshold:
            return None
        elapsed_ms = (entry.executions[-1].timestamp - entry.executions[0].timestamp) * 1000
        if elapsed_ms > options.time_window_ms:
            return None
        if len(entry.fingerprints) < 2:
            return None

        pattern = NPlusOnePattern(
            query_pattern=entry.normalized,
            count=entry.count,
            route=record.route,
            location=find_origin_location(entry.executions[0].backtrace, self.origin_predicate),
            suggestion=self._suggest(record.sql),
        )
        if record.query_hash not in self._alerted:
            self._alerted.add(record.query_hash)
            self._report(pattern)
        return pattern

    def _report(self, pattern: NPlusOnePattern) -> None:
        self.logger.info(
            "Potential N+1 detected for SQL '%s' (%s executions)",
            self._abbreviate(pattern.query_pattern),
            pattern.count,
            extra={"query_pattern": pattern.query_pattern, "count": pattern.count, "route": pattern.route},
        )
        if self.defer_alerts:
            self._pending.append(pattern)
        elif self.alerts is not None:
            self.alerts.alert_n_plus_one(pattern)

    @staticmethod
    def _suggest(sql: str) -> str:
        table = extract_table(sql)
        if table is None:
            return GENERIC_SUGGESTION
        return f"Consider eager loading '{table}' (e.g. a JOIN or an IN (...) batch) instead of one query per row"

    @staticmethod
    def _fingerprint(sql: str, bindings: Any) -> str:
        if isinstance(bindings, Mapping):
            return repr((sql, tuple(sorted(bindings.items(), key=lambda item: str(item[0])))))
        normalized = []
        for value in bindings or ():
            if isinstance(value, (list, tuple)):
                normalized.append(tuple(value))
            elif isinstance(value, dict):
                normalized.append(tuple(sorted(value.items())))
            else:
                normalized.append(value)
        return repr((sql, tuple(normalized)))

    @staticmethod
    def _abbreviate(sql: str, max_length: int = 80) -> str:
        if len(sql) <= max_length:
            return sql
        return sql[: max_length - 3] + "..."
