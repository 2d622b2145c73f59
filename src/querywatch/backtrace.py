"""
Call-stack capture identifying where a query originated in application code.
"""

from __future__ import annotations

import os
import re
import sys
from typing import Callable, Iterable, List, Optional

from .config import BacktraceConfig
from .records import Frame
from .utils import get_logger

OriginPredicate = Callable[[Frame], bool]

_OWN_PACKAGE = __name__.split(".")[0] + "."
_APP_LAYER_CLASS_RE = re.compile(r"(Repository|Service)$")
_APP_LAYER_MODULE_RE = re.compile(r"(^|[./])(repositories|services)([./]|$)")


def application_layer(frame: Frame) -> bool:
    """
    Default origin heuristic: repository or service classes.

    Matches classes named ``*Repository``/``*Service`` or defined in files under
    ``repositories``/``services`` packages.
    """

    if not frame.cls:
        return False
    if _APP_LAYER_CLASS_RE.search(frame.cls):
        return True
    return bool(_APP_LAYER_MODULE_RE.search(frame.file.replace(os.sep, "/")))


def _first_origin(frames: Iterable[Frame], predicate: OriginPredicate) -> Optional[Frame]:
    for frame in frames:
        if frame.cls and predicate(frame):
            return frame
    return None


def find_origin_class(frames: Iterable[Frame], predicate: OriginPredicate = application_layer) -> Optional[str]:
    """Return ``Class::method`` of the first application-layer frame, if any."""
    frame = _first_origin(frames, predicate)
    if frame is None:
        return None
    return f"{frame.cls}::{frame.function}"


def find_origin_location(frames: Iterable[Frame], predicate: OriginPredicate = application_layer) -> Optional[str]:
    frame = _first_origin(frames, predicate)
    if frame is None:
        return None
    return f"{frame.cls}::{frame.function} ({frame.file}:{frame.line})"


class BacktraceCollector:
    """
    Captures filtered stack snapshots at the point a query is recorded.
    """

    def __init__(
        self,
        config: BacktraceConfig | None = None,
        *,
        origin_predicate: OriginPredicate = application_layer,
    ) -> None:
        self.config = config or BacktraceConfig()
        self.origin_predicate = origin_predicate
        self.base_path = os.path.abspath(self.config.base_path or os.getcwd())
        self.logger = get_logger("backtrace")

    def collect(self, limit: Optional[int] = None) -> List[Frame]:
        if not self.config.enabled:
            return []
        limit = limit or self.config.limit
        try:
            return self._collect(sys._getframe(1), limit)
        except Exception:  # pragma: no cover - interpreter specific
            self.logger.debug("Backtrace capture failed", exc_info=True)
            return []

    def find_origin_class(self, frames: Iterable[Frame]) -> Optional[str]:
        return find_origin_class(frames, self.origin_predicate)

    def find_origin_location(self, frames: Iterable[Frame]) -> Optional[str]:
        return find_origin_location(frames, self.origin_predicate)

    # ------------------------------------------------------------------ #
    def _collect(self, frame, limit: int) -> List[Frame]:
        collected: List[Frame] = []
        while frame is not None and len(collected) < limit:
            code = frame.f_code
            filename = code.co_filename
            module = frame.f_globals.get("__name__", "")
            if (
                filename
                and not filename.startswith("<")
                and not module.startswith(_OWN_PACKAGE)
                and not self._is_excluded(filename)
            ):
                cls, function = _split_qualname(code.co_qualname)
                collected.append(
                    Frame(
                        file=self._relative_path(filename),
                        line=frame.f_lineno or 0,
                        cls=cls,
                        function=function,
                    )
                )
            frame = frame.f_back
        return collected

    def _is_excluded(self, filename: str) -> bool:
        normalized = filename.replace(os.sep, "/")
        return any(path in normalized for path in self.config.exclude_paths)

    def _relative_path(self, filename: str) -> str:
        absolute = os.path.abspath(filename)
        if absolute.startswith(self.base_path + os.sep):
            return absolute[len(self.base_path) + 1 :].replace(os.sep, "/")
        return absolute.replace(os.sep, "/")


def _split_qualname(qualname: str) -> tuple[Optional[str], str]:
    parts = qualname.split(".")
    if len(parts) < 2 or parts[-2] == "<locals>":
        return None, parts[-1]
    return parts[-2], parts[-1]
