"""
Request-scoped aggregation of query records.
"""

from __future__ import annotations

import datetime as _dt
import logging
import random
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from threading import RLock
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

import psutil

from ..backtrace import BacktraceCollector, application_layer
from ..config import WatchConfig
from ..records import QueryEvent, QueryRecord, RequestMetadata, copy_bindings
from ..security.redaction import redact_record
from ..sql import format_sql, normalize, query_hash
from ..utils import get_logger
from .tracker import PatternTracker

if TYPE_CHECKING:
    from ..alerts import AlertDispatcher
    from ..plans import PlanProvider
    from ..storage import JsonFileStore


def process_memory_mb() -> Optional[float]:
    try:
        return round(psutil.Process().memory_info().rss / 1024 / 1024, 2)
    except psutil.Error:
        return None


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


@dataclass
class RequestContext:
    request_id: str
    started_at: float
    metadata: RequestMetadata
    tracker: PatternTracker
    queries: List[QueryRecord] = field(default_factory=list)

    @property
    def route(self) -> str:
        return self.metadata.route


class RequestAggregator:
    """
    Owns the state of exactly one logical request at a time.

    The aggregator moves ``idle -> active`` on ``start`` and back to ``idle``
    on ``finish``. Events tracked while idle are dropped with a debug log.
    Each aggregator builds its own ``PatternTracker``; collaborators such as
    the store and the alert dispatcher may be shared between aggregators.
    """

    def __init__(
        self,
        config: WatchConfig,
        *,
        store: Optional["JsonFileStore"] = None,
        alerts: Optional["AlertDispatcher"] = None,
        backtraces: Optional[BacktraceCollector] = None,
        plans: Optional["PlanProvider"] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], _dt.datetime] = _utcnow,
        memory_usage: Callable[[], Optional[float]] = process_memory_mb,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.alerts = alerts
        self.backtraces = backtraces
        self.plans = plans
        self.rng = rng or random.Random()
        self.clock = clock
        self.now = now
        self.memory_usage = memory_usage
        self.logger = logger or get_logger("tracking.aggregator")
        self._lock = RLock()
        self._context: Optional[RequestContext] = None
        self.last_summary: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #
    @property
    def active(self) -> bool:
        return self._context is not None

    @property
    def context(self) -> Optional[RequestContext]:
        return self._context

    def start(
        self,
        request_id: Optional[str] = None,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
    ) -> RequestContext:
        with self._lock:
            if self._context is not None:
                self.logger.warning(
                    "Request %s started while %s was still active; discarding its state",
                    request_id or "<new>",
                    self._context.request_id,
                )
                self._context.tracker.reset()
            tracker = PatternTracker(
                self.config,
                alerts=self.alerts,
                plans=self.plans,
                origin_predicate=self.backtraces.origin_predicate if self.backtraces else application_layer,
                clock=self.clock,
                defer_alerts=True,
            )
            self._context = RequestContext(
                request_id=request_id or str(uuid.uuid4()),
                started_at=self.clock(),
                metadata=self._build_metadata(metadata),
                tracker=tracker,
            )
            return self._context

    def track(self, event: QueryEvent) -> Optional[QueryRecord]:
        """
        Classify, persist and alert on one query event.

        Returns the stored record, or ``None`` when the event was dropped
        (inactive, sampled out, untracked connection or excluded SQL).
        """

        if not self.config.enabled:
            return None
        context = self._context
        if context is None:
            self.logger.debug("Ignoring query outside an active request", extra={"sql": event.sql})
            return None
        if not self._sampled():
            return None
        if not self.config.tracks_connection(event.connection):
            return None
        if self.config.is_excluded(event.sql):
            return None

        backtrace = self.backtraces.collect() if self.backtraces is not None else []
        source = self.backtraces.find_origin_class(backtrace) if self.backtraces is not None else None
        record = QueryRecord(
            timestamp=self.now().isoformat(),
            request_id=context.request_id,
            connection=event.connection,
            sql=event.sql,
            bindings=copy_bindings(event.bindings),
            time_ms=float(event.time_ms),
            normalized_sql=normalize(event.sql),
            query_hash=query_hash(event.sql),
            formatted_sql=format_sql(event.sql, event.bindings),
            backtrace=backtrace,
            source=source,
            route=context.route,
            metadata={key: value for key, value in context.metadata.to_dict().items() if key != "route"},
        )

        with self._lock:
            if self._context is not context:
                self.logger.debug("Request %s finished while tracking a query", context.request_id)
                return None
            record = context.tracker.observe(record)
            if self.config.redact_bindings:
                record = redact_record(record)
            context.queries.append(record)
            pending = context.tracker.take_pending()

        if self.store is not None:
            self.store.append(record)
        if self.alerts is not None:
            for pattern in pending:
                self.alerts.alert_n_plus_one(pattern)
            if record.is_slow:
                self.alerts.alert_slow_query(record)
        return record

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            context = self._context
            if context is None:
                return self.empty_summary()
            queries = list(context.queries)
            detected = context.tracker.summary()
            threshold = self.config.n_plus_one.threshold
            detected = [entry for entry in detected if entry["count"] >= threshold]

        patterns: Dict[str, Dict[str, Any]] = {}
        for record in queries:
            if record.n_plus_one is not None:
                patterns[record.n_plus_one.query_pattern] = record.n_plus_one.to_dict()
        slow = [record for record in queries if record.is_slow]
        return {
            "request_id": context.request_id,
            "route": context.route,
            "total_queries": len(queries),
            "total_time_ms": round(sum(record.time_ms for record in queries), 2),
            "slow_queries_count": len(slow),
            "n_plus_one_count": len(patterns),
            "slow_queries": [
                {
                    "sql": record.sql,
                    "formatted_sql": record.formatted_sql,
                    "time_ms": record.time_ms,
                    "source": record.source,
                }
                for record in slow
            ],
            "n_plus_one_patterns": list(patterns.values()),
            "detected_patterns": detected,
            "queries": [record.to_dict() for record in queries],
        }

    def finish(self) -> Dict[str, Any]:
        """
        Close the active request and return its final summary.

        The high-query-count condition is evaluated on the final count after
        per-request state has been released.
        """

        with self._lock:
            if self._context is None:
                self.logger.debug("finish() called with no active request")
                return self.empty_summary()
            summary = self.summary()
            self._context.tracker.reset()
            self._context = None
            self.last_summary = summary

        if self.alerts is not None:
            self.alerts.alert_high_query_count(summary["total_queries"], summary["route"])
        return summary

    # ------------------------------------------------------------------ #
    def _sampled(self) -> bool:
        if self.config.sampling >= 100:
            return True
        return self.rng.random() * 100 < self.config.sampling

    def _build_metadata(self, metadata: RequestMetadata | Mapping[str, Any] | None) -> RequestMetadata:
        if metadata is None:
            metadata = RequestMetadata()
        elif not isinstance(metadata, RequestMetadata):
            known = {f.name for f in fields(RequestMetadata)}
            metadata = RequestMetadata(**{key: value for key, value in metadata.items() if key in known})

        toggles = self.config.metadata
        changes: Dict[str, Any] = {}
        if not toggles.user_id:
            changes["user_id"] = None
        if not toggles.tenant_id:
            changes["tenant_id"] = None
        if not toggles.ip:
            changes["ip"] = None
        if not toggles.user_agent:
            changes["user_agent"] = None
        changes["memory_mb"] = self.memory_usage() if toggles.memory_usage else None
        return replace(metadata, **changes)

    @staticmethod
    def empty_summary() -> Dict[str, Any]:
        return {
            "request_id": None,
            "route": "unknown",
            "total_queries": 0,
            "total_time_ms": 0.0,
            "slow_queries_count": 0,
            "n_plus_one_count": 0,
            "slow_queries": [],
            "n_plus_one_patterns": [],
            "detected_patterns": [],
            "queries": [],
        }
