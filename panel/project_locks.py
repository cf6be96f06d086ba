# panel/project_locks.py

import threading
import time
from contextlib import contextmanager
from typing import Iterator


class ProjectLockRegistry:
    """
    Process-local, per-project mutual exclusion for schema read-modify-write.

    - One lock per project id, created on first use.
    - Every `sweep_every` releases, locks nobody holds or waits on and nobody
      touched for `max_idle_seconds` are dropped.
    - Only serializes writers inside this process; writers in other processes
      are caught by the schema_version compare-and-swap on save.
    """

    def __init__(self, max_idle_seconds: float = 3600.0, sweep_every: int = 256) -> None:
        self.max_idle_seconds = max_idle_seconds
        self.sweep_every = max(1, int(sweep_every))
        self._lock = threading.Lock()
        # project_id -> {"lock": threading.Lock, "holders": int, "last_used": float}
        self._items: dict[str, dict[str, object]] = {}
        self._releases = 0

    @contextmanager
    def hold(self, project_id: str) -> Iterator[None]:
        pid = str(project_id)
        with self._lock:
            item = self._items.get(pid)
            if item is None:
                item = {"lock": threading.Lock(), "holders": 0, "last_used": time.time()}
                self._items[pid] = item
            # counted before acquiring; sweeps skip entries with holders
            item["holders"] = int(item["holders"]) + 1
            project_lock: threading.Lock = item["lock"]  # type: ignore[assignment]

        try:
            with project_lock:
                yield
        finally:
            with self._lock:
                item["holders"] = int(item["holders"]) - 1
                item["last_used"] = time.time()
                self._releases += 1
                if self._releases % self.sweep_every == 0:
                    self._sweep_unlocked(self.max_idle_seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _sweep_unlocked(self, max_idle_seconds: float) -> int:
        now = time.time()
        removed = 0
        for pid in list(self._items.keys()):
            item = self._items[pid]
            if int(item["holders"]) > 0:
                continue
            if now - float(item["last_used"]) >= max_idle_seconds:
                del self._items[pid]
                removed += 1
        return removed

    def sweep_idle(self, max_idle_seconds: float | None = None) -> int:
        """
        Drop locks nobody holds and nobody touched recently.
        Returns how many entries were removed.
        """
        with self._lock:
            return self._sweep_unlocked(self.max_idle_seconds if max_idle_seconds is None else max_idle_seconds)


# Global, process-local singleton
PROJECT_LOCKS = ProjectLockRegistry()
