"""Per-experiment reallocation gate.

``try_acquire`` returns True at most once per interval for an experiment, so
only one caller (across threads, or across instances with Redis) recomputes
weights in each window.
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis
import structlog

from abengine.services.randomness import Clock, SystemClock

logger = structlog.get_logger()


class IntervalGate(ABC):

    @abstractmethod
    def try_acquire(self, experiment_id: str, interval_seconds: int) -> bool:
        ...

    @abstractmethod
    def reset(self, experiment_id: str) -> None:
        ...


class RedisIntervalGate(IntervalGate):
    """
    Gate backed by a Redis key with a TTL.

    ``SET key 1 NX EX interval`` succeeds for exactly one caller until the
    key expires.

    Example:
        >>> gate = RedisIntervalGate(redis_client)
        >>> if gate.try_acquire("exp_123", 3600):
        >>>     optimizer.recalculate("exp_123")
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def try_acquire(self, experiment_id: str, interval_seconds: int) -> bool:
        """Stays closed while Redis is unreachable; the next cycle tries again."""
        try:
            acquired = self.redis.set(
                self._get_key(experiment_id),
                "1",
                nx=True,
                ex=max(1, int(interval_seconds))
            )
        except redis.RedisError as e:
            logger.warning("allocation_gate_unavailable", experiment_id=experiment_id, error=str(e))
            return False
        return bool(acquired)

    def reset(self, experiment_id: str) -> None:
        """Reopen the gate (useful for testing)."""
        self.redis.delete(self._get_key(experiment_id))

    def _get_key(self, experiment_id: str) -> str:
        return f"allocation:gate:{experiment_id}"


class LocalIntervalGate(IntervalGate):
    """In-process gate on the monotonic clock."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._last_acquired: Dict[str, float] = {}
        self._lock = threading.Lock()

    def try_acquire(self, experiment_id: str, interval_seconds: int) -> bool:
        with self._lock:
            now = self.clock.monotonic()
            last = self._last_acquired.get(experiment_id)
            if last is not None and now - last < interval_seconds:
                return False
            self._last_acquired[experiment_id] = now
            return True

    def reset(self, experiment_id: str) -> None:
        with self._lock:
            self._last_acquired.pop(experiment_id, None)
