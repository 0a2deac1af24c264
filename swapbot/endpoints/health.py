from __future__ import annotations

import threading
import time
from typing import Callable

DEFAULT_FAILURE_COOLDOWN_SECONDS = 1200.0


class EndpointHealthStore:
    """Soft failure marks per endpoint name.

    A mark expires on read once ``cooldown_seconds`` have passed since it was
    set. All access goes through one lock so the pool and monitor can share
    the store across tasks and threads.
    """

    def __init__(
        self,
        *,
        cooldown_seconds: float = DEFAULT_FAILURE_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self._failed_at: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def _expire_locked(self, now: float) -> None:
        expired = [name for name, failed_at in self._failed_at.items() if now - failed_at >= self._cooldown_seconds]
        for name in expired:
            self._failed_at.pop(name, None)

    def mark_failed(self, name: str) -> None:
        with self._lock:
            self._failed_at[name] = self._clock()

    def mark_healthy(self, name: str) -> None:
        with self._lock:
            self._failed_at.pop(name, None)

    def is_failed(self, name: str) -> bool:
        with self._lock:
            self._expire_locked(self._clock())
            return name in self._failed_at

    def failed_names(self) -> set[str]:
        with self._lock:
            self._expire_locked(self._clock())
            return set(self._failed_at)

    def clear(self) -> None:
        with self._lock:
            self._failed_at.clear()
