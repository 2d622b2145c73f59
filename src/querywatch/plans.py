"""
Execution-plan providers used to enrich slow queries.
"""

from __future__ import annotations

from threading import RLock
from typing import TYPE_CHECKING, Any, Dict, Protocol, Sequence

from .errors import PlanError
from .sql import is_plan_query
from .utils import get_logger

if TYPE_CHECKING:
    from .adapters.base import DatabaseAdapter


class PlanProvider(Protocol):
    def explain(self, sql: str, bindings: Sequence[Any], connection: str, *, analyze: bool = False) -> Any:
        """
        Return a structured plan, ``None`` when the statement is not explainable,
        or ``{"error": ...}`` when introspection failed.
        """


class AdapterPlanProvider:
    """
    Runs plan statements through registered adapters, keyed by connection name.
    """

    def __init__(self, adapters: Dict[str, "DatabaseAdapter"] | None = None) -> None:
        self._adapters: Dict[str, "DatabaseAdapter"] = dict(adapters or {})
        self._lock = RLock()
        self.logger = get_logger("plans")

    def register(self, name: str, adapter: "DatabaseAdapter") -> None:
        with self._lock:
            self._adapters[name] = adapter

    def unregister(self, name: str) -> None:
        with self._lock:
            self._adapters.pop(name, None)

    def explain(self, sql: str, bindings: Sequence[Any], connection: str, *, analyze: bool = False) -> Any:
        if is_plan_query(sql):
            return None
        with self._lock:
            adapter = self._adapters.get(connection)
        if adapter is None:
            return {"error": f"No adapter registered for connection '{connection}'"}
        try:
            return adapter.explain(sql, bindings, analyze=analyze)
        except PlanError as exc:
            return {"error": str(exc)}
        except Exception as exc:
            self.logger.warning(
                "Plan introspection failed on %s: %s",
                connection,
                exc,
                extra={"sql": sql, "connection": connection},
            )
            return {"error": str(exc)}
