"""
Top-level entry point wiring the shared collaborators to per-request aggregators.
"""

from __future__ import annotations

import random
import time
from contextlib import contextmanager
from contextvars import ContextVar
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from .adapters import DatabaseAdapter
from .alerts import AlertDispatcher
from .backtrace import BacktraceCollector
from .config import WILDCARD, WatchConfig
from .hooks import QueryEventBus
from .plans import AdapterPlanProvider, PlanProvider
from .records import QueryEvent, QueryRecord, RequestMetadata
from .storage import JsonFileStore
from .tracking import RequestAggregator
from .utils import bind_request_id, get_logger, unbind_request_id

# Identifies the subscription that owns queries executed in the current context.
_listener_scope: ContextVar[object | None] = ContextVar("querywatch_listener_scope", default=None)


class QueryWatch:
    """
    Holds the resolved configuration and the collaborators shared by every
    request (store, alert dispatcher, backtrace collector, plan provider).

    Each logical request gets its own ``RequestAggregator``, registered under
    its request id between ``start`` and ``finish``.
    """

    def __init__(
        self,
        config: WatchConfig | None = None,
        *,
        store: JsonFileStore | None = None,
        alerts: AlertDispatcher | None = None,
        backtraces: BacktraceCollector | None = None,
        plans: PlanProvider | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or WatchConfig()
        self.store = store or JsonFileStore(self.config.storage)
        self.alerts = alerts or AlertDispatcher(self.config.alerts, redact=self.config.redact_bindings)
        self.backtraces = backtraces or BacktraceCollector(self.config.backtrace)
        self.plans = plans if plans is not None else AdapterPlanProvider()
        self.rng = rng or random.Random()
        self.clock = clock
        self.logger = get_logger("watch")
        self._requests: Dict[str, RequestAggregator] = {}
        self._lock = RLock()

    @classmethod
    def from_env(cls, prefix: str = "QUERYWATCH_", **kwargs: Any) -> "QueryWatch":
        return cls(WatchConfig.from_env(prefix), **kwargs)

    # ------------------------------------------------------------------ #
    # Request lifecycle
    # ------------------------------------------------------------------ #
    def aggregator(self) -> RequestAggregator:
        return RequestAggregator(
            self.config,
            store=self.store,
            alerts=self.alerts,
            backtraces=self.backtraces,
            plans=self.plans,
            rng=self.rng,
            clock=self.clock,
        )

    def start(
        self,
        request_id: Optional[str] = None,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
    ) -> RequestAggregator:
        aggregator = self.aggregator()
        context = aggregator.start(request_id, metadata)
        with self._lock:
            previous = self._requests.get(context.request_id)
            self._requests[context.request_id] = aggregator
        if previous is not None:
            self.logger.warning(
                "Request id %s reused while still active; finishing the previous request",
                context.request_id,
            )
            previous.finish()
        return aggregator

    def finish(self, request_id: str) -> Dict[str, Any]:
        with self._lock:
            aggregator = self._requests.pop(request_id, None)
        if aggregator is None:
            self.logger.debug("finish() for unknown request %s", request_id)
            return RequestAggregator.empty_summary()
        return aggregator.finish()

    def _release(self, request_id: str, aggregator: RequestAggregator) -> Dict[str, Any]:
        # A reused id may have replaced ``aggregator`` in the registry already.
        with self._lock:
            if self._requests.get(request_id) is aggregator:
                del self._requests[request_id]
        return aggregator.finish()

    @contextmanager
    def request(
        self,
        request_id: Optional[str] = None,
        metadata: RequestMetadata | Mapping[str, Any] | None = None,
        *,
        source: QueryEventBus | None = None,
    ) -> Iterator[RequestAggregator]:
        """
        Scope one request. ``finish`` always runs, even when the body raises.

        When ``source`` is given, its events are tracked for this request
        until the block exits.
        """

        aggregator = self.start(request_id, metadata)
        current_id = aggregator.context.request_id
        token = bind_request_id(current_id)
        unsubscribe = None
        try:
            if source is not None:
                unsubscribe = self.listen(source, current_id)
            yield aggregator
        finally:
            try:
                if unsubscribe is not None:
                    unsubscribe()
                self._release(current_id, aggregator)
            finally:
                unbind_request_id(token)

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #
    def get(self, request_id: str) -> Optional[RequestAggregator]:
        with self._lock:
            return self._requests.get(request_id)

    def active_requests(self) -> List[str]:
        with self._lock:
            return list(self._requests)

    def track(self, request_id: str, event: QueryEvent) -> Optional[QueryRecord]:
        aggregator = self.get(request_id)
        if aggregator is None:
            self.logger.debug("Dropping query for unknown request %s", request_id, extra={"sql": event.sql})
            return None
        return aggregator.track(event)

    def listen(self, source: QueryEventBus, request_id: str) -> Callable[[], None]:
        """
        Track events ``source`` publishes for the configured connections
        under ``request_id``. Returns a callable removing the subscription.

        Only queries executed in the calling context (thread or task) are
        tracked, so requests sharing one bus never see each other's events.
        The most recent subscription in a context owns its queries until it
        is removed. Threads started by the caller get a fresh context and are
        not tracked.
        """

        scope = object()

        def handler(event: QueryEvent) -> None:
            if _listener_scope.get() is scope:
                self.track(request_id, event)

        if WILDCARD in self.config.connections:
            connections: tuple[str, ...] = (WILDCARD,)
        else:
            connections = tuple(dict.fromkeys(self.config.connections))
        token = _listener_scope.set(scope)
        try:
            for connection in connections:
                source.register(connection, handler)
        except Exception:
            for connection in connections:
                source.unregister(connection, handler)
            _listener_scope.reset(token)
            raise

        def unsubscribe() -> None:
            for connection in connections:
                source.unregister(connection, handler)
            try:
                _listener_scope.reset(token)
            except (RuntimeError, ValueError):
                self.logger.debug("Subscription for %s removed from another context", request_id)

        return unsubscribe

    def attach(self, adapter: DatabaseAdapter) -> None:
        """Make ``adapter`` available for plan introspection under its connection name."""
        if isinstance(self.plans, AdapterPlanProvider):
            self.plans.register(adapter.name, adapter)
        else:
            self.logger.debug("Custom plan provider in use; not registering adapter %s", adapter.name)

    def close(self) -> None:
        self.alerts.close()
