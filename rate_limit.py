"""In-memory sliding-window rate limiting.

Counters live in this process only. When the app runs as several workers each
one enforces its own limit, and everything is forgotten on restart.
"""
import logging
import threading
import time

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60.0
RETENTION = 120.0


class RateLimiter:
    """Per-key sliding window over recent allowed attempts."""

    def __init__(self, clock=time.monotonic, sweep_interval=SWEEP_INTERVAL, retention=RETENTION):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._retention = retention
        self._requests: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    def allow(self, key: str, limit: int, window_ms: int) -> bool:
        """Record an attempt for ``key`` and return False if it is over the limit."""
        now = self._clock()
        window_start = now - window_ms / 1000.0
        with self._lock:
            recent = [t for t in self._requests.get(key, []) if t >= window_start]
            if len(recent) >= limit:
                self._requests[key] = recent
                return False
            recent.append(now)
            self._requests[key] = recent
            return True

    def sweep(self):
        """Drop keys with no attempt inside the retention window."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._requests):
                fresh = [t for t in self._requests[key] if now - t < self._retention]
                if fresh:
                    self._requests[key] = fresh
                else:
                    del self._requests[key]
                    removed += 1
        if removed:
            logger.debug("Rate limiter swept %d idle keys", removed)
        return removed

    def reset(self):
        with self._lock:
            self._requests.clear()

    def __len__(self):
        with self._lock:
            return len(self._requests)

    def start(self):
        """Start the background sweep thread. Calling twice is a no-op."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rate-limit-sweep", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._sweep_interval)
            self._thread = None

    def _run(self):
        while not self._stop.wait(self._sweep_interval):
            self.sweep()


def client_ip(request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"
