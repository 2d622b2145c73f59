"""
Query event bus connecting adapters to query listeners.
"""

from __future__ import annotations

from collections import defaultdict
from threading import RLock
from typing import Callable, Dict, List

from .config import WILDCARD
from .records import QueryEvent
from .utils import get_logger

QueryListener = Callable[[QueryEvent], None]


class QueryEventBus:
    """
    Maintains per-connection and wildcard query listeners.

    Listener failures are logged and swallowed; they never reach the code
    that executed the query.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[QueryListener]] = defaultdict(list)
        self._lock = RLock()
        self.logger = get_logger("hooks")

    def register(self, connection: str, handler: QueryListener) -> None:
        with self._lock:
            self._handlers[connection].append(handler)

    def unregister(self, connection: str, handler: QueryListener) -> None:
        with self._lock:
            handlers = self._handlers.get(connection, [])
            if handler in handlers:
                handlers.remove(handler)

    def fire(self, event: QueryEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(WILDCARD, []))
            if event.connection != WILDCARD:
                handlers.extend(self._handlers.get(event.connection, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    "Query listener %r failed",
                    handler,
                    extra={"connection": event.connection, "sql": event.sql},
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


bus = QueryEventBus()
