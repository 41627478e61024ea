import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, NamedTuple


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


class RateLimitDecision(NamedTuple):
    allowed: bool
    count: int
    reset_at: float
    remaining: int


class RateLimiter:
    """Fixed-window request counter keyed by client identity.

    A key's window starts with its first request and lasts ``window_seconds``;
    within it at most ``max_requests`` calls are allowed. Expired entries are
    dropped by ``evict_expired``.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 15 * 60,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._max = max(max_requests, 1)
        self._window = max(window_seconds, 1)
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max

    @property
    def window_seconds(self) -> float:
        return self._window

    def check_and_increment(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now > entry.reset_at:
                entry = RateLimitEntry(count=1, reset_at=now + self._window)
                self._entries[key] = entry
                return RateLimitDecision(True, entry.count, entry.reset_at, self._max - entry.count)
            if entry.count >= self._max:
                return RateLimitDecision(False, entry.count, entry.reset_at, 0)
            entry.count += 1
            return RateLimitDecision(True, entry.count, entry.reset_at, self._max - entry.count)

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if now > entry.reset_at]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
