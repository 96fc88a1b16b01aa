"""
Health and metrics surface.

Every contained failure in the pipeline increments a counter here, so no
error disappears without a trace. Gauges hold the latest observed value of
queue depth, cache size and transport state.
"""

import threading
import time
from collections import defaultdict
from typing import Any, Dict, Optional


class HealthMonitor:
    """
    Thread-safe counters and gauges shared by all agent tasks.

    Usage:
        health = HealthMonitor()
        health.increment("inference_errors")
        health.set_gauge("queue_depth", 12)
        report = health.snapshot()
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, Any] = {}
        self._last_errors: Dict[str, str] = {}
        self.started_at = time.time()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def set_gauge(self, name: str, value: Any) -> None:
        with self._lock:
            self._gauges[name] = value

    def record_error(self, name: str, error: BaseException) -> None:
        """Count an error and remember its latest message."""
        with self._lock:
            self._counters[name] += 1
            self._last_errors[name] = f"{type(error).__name__}: {error}"

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def gauge(self, name: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            return self._gauges.get(name, default)

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time copy for logging and the heartbeat."""
        with self._lock:
            return {
                "uptime_seconds": int(time.time() - self.started_at),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "last_errors": dict(self._last_errors),
            }
