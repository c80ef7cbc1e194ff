"""Read-through cache of experiment configurations for the assignment hot path."""
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import redis
import structlog

from abengine.schemas.experiment import Experiment
from abengine.services.randomness import Clock, SystemClock

logger = structlog.get_logger()


class ExperimentCache(ABC):
    """TTL cache keyed by experiment id. Writers must call ``invalidate``."""

    @abstractmethod
    def get(self, experiment_id: str) -> Optional[Experiment]:
        ...

    @abstractmethod
    def set(self, experiment: Experiment) -> None:
        ...

    @abstractmethod
    def invalidate(self, experiment_id: str) -> None:
        ...


class RedisExperimentCache(ExperimentCache):
    """
    Redis-backed cache shared by every API instance.

    Entries are JSON dumps of the experiment with a TTL, so a missed
    invalidation is bounded by ``ttl`` seconds. Redis failures fall back to
    the store.
    """

    def __init__(self, redis_client: redis.Redis, ttl: int = 60):
        self.redis = redis_client
        self.ttl = ttl

    def get(self, experiment_id: str) -> Optional[Experiment]:
        try:
            raw = self.redis.get(self._get_key(experiment_id))
        except redis.RedisError as e:
            logger.warning("experiment_cache_unavailable", experiment_id=experiment_id, error=str(e))
            return None

        if not raw:
            return None
        return Experiment.model_validate_json(raw)

    def set(self, experiment: Experiment) -> None:
        try:
            self.redis.setex(self._get_key(experiment.id), self.ttl, experiment.model_dump_json())
        except redis.RedisError as e:
            logger.warning("experiment_cache_unavailable", experiment_id=experiment.id, error=str(e))

    def invalidate(self, experiment_id: str) -> None:
        try:
            self.redis.delete(self._get_key(experiment_id))
        except redis.RedisError as e:
            logger.warning(
                "experiment_cache_invalidation_failed",
                experiment_id=experiment_id,
                ttl=self.ttl,
                error=str(e)
            )

    def _get_key(self, experiment_id: str) -> str:
        return f"experiment:config:{experiment_id}"


class LocalExperimentCache(ExperimentCache):
    """In-process cache for single-instance deployments and tests."""

    def __init__(self, clock: Optional[Clock] = None, ttl: int = 60):
        self.clock = clock or SystemClock()
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, Experiment]] = {}
        self._lock = threading.Lock()

    def get(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            entry = self._entries.get(experiment_id)
            if entry is None:
                return None

            expires_at, experiment = entry
            if self.clock.monotonic() >= expires_at:
                del self._entries[experiment_id]
                return None
            return experiment

    def set(self, experiment: Experiment) -> None:
        with self._lock:
            self._entries[experiment.id] = (self.clock.monotonic() + self.ttl, experiment)

    def invalidate(self, experiment_id: str) -> None:
        with self._lock:
            self._entries.pop(experiment_id, None)
