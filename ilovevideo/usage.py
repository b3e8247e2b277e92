# ilovevideo/usage.py
"""Per-key, per-day usage counters.

Every read-modify-write goes through the store's lock, so concurrent
commits for the same key never lose an update. The JSON file store is
durable across restarts but is not shared between instances; running
several replicas gives each its own counters.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class UsageRecord:
    count: int
    date: str


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class UsageStore(ABC):
    """Base store: subclasses provide ``_load``/``_save`` of the raw table."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @abstractmethod
    def _load(self) -> Dict[str, dict]: ...

    @abstractmethod
    def _save(self, data: Dict[str, dict]) -> None: ...

    @staticmethod
    def _record(data: Dict[str, dict], key: str, day: str) -> UsageRecord:
        entry = data.get(key)
        if not isinstance(entry, dict) or entry.get("date") != day:
            return UsageRecord(count=0, date=day)
        try:
            count = int(entry.get("count", 0))
        except (TypeError, ValueError):
            # hand-edited entry; start the day over
            logger.warning("malformed usage entry for %s, resetting", key)
            count = 0
        return UsageRecord(count=max(count, 0), date=day)

    def peek(self, key: str, day: str) -> int:
        with self._lock:
            return self._record(self._load(), key, day).count

    def commit(self, key: str, day: str) -> int:
        with self._lock:
            data = self._load()
            rec = self._record(data, key, day)
            rec.count += 1
            data[key] = {"count": rec.count, "date": rec.date}
            self._save(data)
            return rec.count

    def claim(self, key: str, day: str, limit: Optional[int]) -> Tuple[bool, int]:
        with self._lock:
            data = self._load()
            rec = self._record(data, key, day)
            if limit is not None and rec.count >= limit:
                return False, rec.count
            rec.count += 1
            data[key] = {"count": rec.count, "date": rec.date}
            self._save(data)
            return True, rec.count


class MemoryUsageStore(UsageStore):
    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[str, dict] = {}

    def _load(self) -> Dict[str, dict]:
        return self._data

    def _save(self, data: Dict[str, dict]) -> None:
        self._data = data


class JsonFileUsageStore(UsageStore):
    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text("utf-8") or "{}")
        except (OSError, ValueError) as e:
            logger.warning("usage file %s unreadable, starting empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, dict]) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".usage-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


class UsageLedger:
    """Daily quota bookkeeping on top of a :class:`UsageStore`."""

    def __init__(self, store: UsageStore, today: Callable[[], str] = utc_today) -> None:
        self.store = store
        self.today = today

    def peek(self, key: str) -> int:
        return self.store.peek(key, self.today())

    def admit(self, key: str, limit: Optional[int]) -> bool:
        return limit is None or self.peek(key) < limit

    def commit(self, key: str) -> int:
        return self.store.commit(key, self.today())

    def claim(self, key: str, limit: Optional[int]) -> Tuple[bool, int]:
        """Admit and commit in one step; returns ``(admitted, count)``."""
        return self.store.claim(key, self.today(), limit)
