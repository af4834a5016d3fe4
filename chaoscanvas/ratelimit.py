# chaoscanvas/ratelimit.py
import time
import threading
from typing import Any, Callable, Dict, Optional, Tuple


def actor_key(user_id: str, ip_address: Optional[str]) -> str:
    return f"{user_id}:{ip_address or 'unknown'}"


class WindowRateLimiter:
    """
    Per-key fixed-window counter.

    Each key holds ``(count, window_expiry_ms)``. A check opens a fresh window
    when none exists or the old one has expired, otherwise it admits the
    request while ``count < max_requests``. Rejections do not touch state.

    Counters live in process memory only; they are advisory and reset on
    restart.
    """

    def __init__(
        self,
        max_requests: int = 20,
        window_ms: int = 300_000,
        *,
        clock: Optional[Callable[[], float]] = None,
        max_keys: int = 100_000,
    ):
        self.max_requests = int(max_requests)
        self.window_ms = int(window_ms)
        # seconds, monotonic
        self._clock = clock or time.monotonic
        self._max_keys = int(max_keys)
        self._windows: Dict[Any, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def check(
        self,
        key: Any,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> bool:
        limit = self.max_requests if max_requests is None else int(max_requests)
        window = self.window_ms if window_ms is None else int(window_ms)
        now = self._now_ms()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now > entry[1]:
                if entry is None and len(self._windows) >= self._max_keys:
                    self._evict_expired(now)
                self._windows[key] = (1, now + window)
                return True
            count, expiry = entry
            if count < limit:
                self._windows[key] = (count + 1, expiry)
                return True
            return False

    def _evict_expired(self, now: float) -> None:
        for k, (_, expiry) in list(self._windows.items()):
            if now > expiry:
                del self._windows[k]

    def reset(self, key: Any = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
