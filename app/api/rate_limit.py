"""
Per-client request limiting for the public API
"""
import threading
import time
from typing import Dict, Optional, Tuple


class FixedWindowRateLimiter:
    """
    Counts requests per key in fixed windows of window_seconds

    State is in-process only; a restart resets every window.
    """

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        """
        Record one request for key

        Returns:
            False if the key is over its limit for the current window
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            if len(self._windows) > 10000:
                self._prune(now)
        return count <= self.max_requests

    def retry_after(self, key: str, now: Optional[float] = None) -> int:
        """Seconds until the key's current window resets"""
        now = time.monotonic() if now is None else now
        started, _ = self._windows.get(key, (now, 0))
        return max(0, int(self.window_seconds - (now - started)))

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _prune(self, now: float) -> None:
        expired = [key for key, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._windows[key]
