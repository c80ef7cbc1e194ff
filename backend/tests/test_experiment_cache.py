"""Tests for experiment configuration caches."""
from unittest.mock import MagicMock

import pytest
import redis

from abengine.schemas.experiment import (
    AllocationStrategy,
    Experiment,
    ExperimentStatus,
    ExperimentType,
    MetricName,
    Variant,
)
from abengine.services.experiment_cache import LocalExperimentCache, RedisExperimentCache

from conftest import FakeClock


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis_mock = MagicMock()
    redis_mock.get.return_value = None
    return redis_mock


@pytest.fixture
def experiment():
    return Experiment(
        id="exp_cached",
        name="cached",
        type=ExperimentType.SINGLE_FACTOR,
        status=ExperimentStatus.RUNNING,
        variants=[
            Variant(id="control", name="Control", weight=50, is_control=True),
            Variant(id="variant_a", name="A", weight=50)
        ],
        metrics=[MetricName.CONVERSION_RATE],
        confidence_level=0.95,
        sample_size=1000,
        allocation=AllocationStrategy()
    )


def test_redis_cache_set_uses_ttl(mock_redis, experiment):
    """Test that entries are written with an expiry."""
    cache = RedisExperimentCache(mock_redis, ttl=60)
    cache.set(experiment)

    key, ttl, payload = mock_redis.setex.call_args[0]
    assert key == "experiment:config:exp_cached"
    assert ttl == 60
    assert Experiment.model_validate_json(payload) == experiment


def test_redis_cache_get_round_trips(mock_redis, experiment):
    """Test that cached JSON is parsed back into an experiment."""
    mock_redis.get.return_value = experiment.model_dump_json().encode()
    cache = RedisExperimentCache(mock_redis)

    assert cache.get("exp_cached") == experiment


def test_redis_cache_miss_returns_none(mock_redis):
    """Test that a missing key is a cache miss."""
    assert RedisExperimentCache(mock_redis).get("exp_missing") is None


def test_redis_cache_invalidate_deletes_key(mock_redis):
    """Test that invalidation removes the entry."""
    RedisExperimentCache(mock_redis).invalidate("exp_cached")

    mock_redis.delete.assert_called_once_with("experiment:config:exp_cached")


def test_redis_errors_fall_back_to_miss(mock_redis, experiment):
    """Test that an unavailable Redis behaves like an empty cache."""
    mock_redis.get.side_effect = redis.ConnectionError("down")
    mock_redis.setex.side_effect = redis.ConnectionError("down")
    cache = RedisExperimentCache(mock_redis)

    assert cache.get("exp_cached") is None
    cache.set(experiment)


def test_local_cache_expires_after_ttl(experiment):
    """Test TTL expiry of the in-process cache."""
    clock = FakeClock()
    cache = LocalExperimentCache(clock, ttl=60)
    cache.set(experiment)

    clock.advance(59)
    assert cache.get("exp_cached") == experiment

    clock.advance(1)
    assert cache.get("exp_cached") is None


def test_local_cache_invalidate(experiment):
    """Test explicit invalidation."""
    cache = LocalExperimentCache(FakeClock())
    cache.set(experiment)
    cache.invalidate("exp_cached")
    cache.invalidate("never_cached")

    assert cache.get("exp_cached") is None
