"""
Date-partitioned JSON log store with size rotation and retention cleanup.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import re
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import Any, Callable, List, Optional

from filelock import FileLock

from ..config import StorageConfig
from ..records import QueryRecord
from ..utils import get_logger, time_call

FILE_PREFIX = "queries-"
LOCK_FILE = ".queries.lock"

_DATE_RE = re.compile(r"^queries-(\d{4}-\d{2}-\d{2})")
_ROTATED_SUFFIX_RE = re.compile(r"^queries-\d{4}-\d{2}-\d{2}-(\d+)(?:-(\d+))?\.json$")

DateLike = _dt.date | str | None


def _json_default(value: Any) -> Any:
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (set, frozenset)):
        return list(value)
    return str(value)


def _now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class JsonFileStore:
    """
    Persists query records as one pretty-printed JSON array per day.

    Every append is a read-modify-write of the whole array, performed under an
    in-process ``RLock`` and a cross-process ``FileLock``. Oversized files are
    renamed to a timestamped sibling, never truncated. I/O failures are logged
    and swallowed so the instrumented application is never affected.
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        *,
        today: Callable[[], _dt.date] = _dt.date.today,
        now: Callable[[], _dt.datetime] = _now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or StorageConfig()
        self.base_path = Path(self.config.path)
        self.today = today
        self.now = now
        self.logger = logger or get_logger("storage")
        self._lock = RLock()
        self._file_lock = FileLock(str(self.base_path / LOCK_FILE), timeout=self.config.lock_timeout_s)

    # ------------------------------------------------------------------ #
    # Paths
    # ------------------------------------------------------------------ #
    def log_path(self, date: DateLike = None) -> Path:
        return self.base_path / f"{FILE_PREFIX}{self._date_key(date)}.json"

    def log_files(self) -> List[Path]:
        if not self.base_path.is_dir():
            return []
        return sorted(self.base_path.glob(f"{FILE_PREFIX}*.json"))

    def rotated_files(self, date: DateLike = None) -> List[Path]:
        key = self._date_key(date)
        files = self.base_path.glob(f"{FILE_PREFIX}{key}-*.json") if self.base_path.is_dir() else []
        return sorted(files, key=self._rotation_order)

    # ------------------------------------------------------------------ #
    # Writing
    # ------------------------------------------------------------------ #
    def append(self, record: QueryRecord) -> bool:
        """
        Append ``record`` to today's log. Returns ``False`` when the write failed.
        """

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            with self._lock, self._file_lock:
                with time_call("store.append", self.logger, threshold_ms=250):
                    path = self.log_path()
                    entries = self._load_for_append(path)
                    entries.append(record.to_dict())
                    self._write(path, entries)
                    self.rotate_if_oversized(path)
            return True
        except (OSError, TypeError, ValueError) as exc:
            self.logger.error(
                "Failed to persist query record: %s",
                exc,
                extra={"query_hash": record.query_hash, "storage_path": str(self.base_path)},
            )
            return False

    def rotate_if_oversized(self, path: Path) -> Optional[Path]:
        """
        Rename ``path`` to a timestamped sibling once it exceeds the size limit.

        The next append recreates the original path.
        """

        with self._lock, self._file_lock:
            if not path.exists() or path.stat().st_size <= self.config.max_file_size_bytes:
                return None
            target = self._rotation_target(path)
            os.rename(path, target)
        self.logger.info("Rotated query log %s -> %s", path.name, target.name)
        return target

    # ------------------------------------------------------------------ #
    # Reading
    # ------------------------------------------------------------------ #
    def read(self, date: DateLike = None, limit: Optional[int] = None) -> List[QueryRecord]:
        records = self._read_file(self.log_path(date))
        if limit is not None:
            records = records[:limit]
        return records

    def read_all(self, date: DateLike = None, limit: Optional[int] = None) -> List[QueryRecord]:
        """
        Read a day's records including rotated siblings, oldest first.
        """

        records: List[QueryRecord] = []
        for path in [*self.rotated_files(date), self.log_path(date)]:
            records.extend(self._read_file(path))
        if limit is not None:
            records = records[:limit]
        return records

    # ------------------------------------------------------------------ #
    # Retention
    # ------------------------------------------------------------------ #
    def cleanup(self, retention_days: Optional[int] = None) -> int:
        """
        Delete log files whose embedded date is strictly older than the
        retention window. Files without a parsable date are left untouched.
        """

        days = self.config.retention_days if retention_days is None else retention_days
        cutoff = self.today() - _dt.timedelta(days=days)
        deleted = 0
        with self._lock:
            for path in self.log_files():
                file_date = self.extract_date(path.name)
                if file_date is None or file_date >= cutoff:
                    continue
                try:
                    path.unlink()
                except OSError as exc:
                    self.logger.error("Failed to delete query log %s: %s", path.name, exc)
                    continue
                deleted += 1
        if deleted:
            self.logger.info("Removed %s query log file(s) older than %s", deleted, cutoff.isoformat())
        return deleted

    @staticmethod
    def extract_date(filename: str) -> Optional[_dt.date]:
        match = _DATE_RE.match(os.path.basename(filename))
        if not match:
            return None
        try:
            return _dt.date.fromisoformat(match.group(1))
        except ValueError:
            return None

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _date_key(self, date: DateLike) -> str:
        if date is None:
            return self.today().isoformat()
        if isinstance(date, str):
            return _dt.date.fromisoformat(date).isoformat()
        return date.isoformat()

    def _load_for_append(self, path: Path) -> List[Any]:
        if not path.exists():
            return []
        content = path.read_text(encoding="utf-8")
        if not content.strip():
            return []
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            return data
        quarantine = path.with_name(f"{path.stem}.corrupt-{int(self.now().timestamp())}.json")
        os.rename(path, quarantine)
        self.logger.warning("Query log %s was unreadable; moved aside to %s", path.name, quarantine.name)
        return []

    def _write(self, path: Path, entries: List[Any]) -> None:
        payload = json.dumps(entries, indent=4, ensure_ascii=False, default=_json_default)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)

    def _read_file(self, path: Path) -> List[QueryRecord]:
        try:
            if not path.exists():
                return []
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            self.logger.error("Failed to read query log %s: %s", path.name, exc)
            return []
        if not content.strip():
            return []
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            self.logger.warning("Query log %s is not valid JSON; ignoring it", path.name)
            return []
        if not isinstance(data, list):
            return []
        records = []
        for entry in data:
            try:
                records.append(QueryRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                self.logger.debug("Skipping malformed entry in %s", path.name)
        return records

    def _rotation_target(self, path: Path) -> Path:
        stamp = int(self.now().timestamp())
        target = path.with_name(f"{path.stem}-{stamp}.json")
        counter = 1
        while target.exists():
            target = path.with_name(f"{path.stem}-{stamp}-{counter}.json")
            counter += 1
        return target

    @staticmethod
    def _rotation_order(path: Path) -> tuple[int, int]:
        match = _ROTATED_SUFFIX_RE.match(path.name)
        if not match:
            return (0, 0)
        return (int(match.group(1)), int(match.group(2) or 0))
