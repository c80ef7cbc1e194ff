"""Tests for the reallocation interval gate."""
from unittest.mock import MagicMock

import pytest
import redis

from abengine.services.interval_gate import LocalIntervalGate, RedisIntervalGate

from conftest import FakeClock


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    return MagicMock()


def test_redis_gate_acquires_with_set_nx(mock_redis):
    """Test that the gate uses SET NX EX."""
    mock_redis.set.return_value = True
    gate = RedisIntervalGate(mock_redis)

    assert gate.try_acquire("exp_123", 3600) is True
    mock_redis.set.assert_called_once_with("allocation:gate:exp_123", "1", nx=True, ex=3600)


def test_redis_gate_closed_while_key_exists(mock_redis):
    """Test that an existing key keeps the gate closed."""
    mock_redis.set.return_value = None
    gate = RedisIntervalGate(mock_redis)

    assert gate.try_acquire("exp_123", 3600) is False


def test_redis_gate_stays_closed_when_redis_is_down(mock_redis):
    """Test that a Redis outage skips the window instead of raising."""
    mock_redis.set.side_effect = redis.ConnectionError("down")
    gate = RedisIntervalGate(mock_redis)

    assert gate.try_acquire("exp_123", 3600) is False


def test_redis_gate_reset_deletes_key(mock_redis):
    """Test that reset reopens the gate."""
    RedisIntervalGate(mock_redis).reset("exp_123")

    mock_redis.delete.assert_called_once_with("allocation:gate:exp_123")


def test_local_gate_opens_once_per_interval():
    """Test the in-process gate timing."""
    clock = FakeClock()
    gate = LocalIntervalGate(clock)

    assert gate.try_acquire("exp_123", 60) is True
    assert gate.try_acquire("exp_123", 60) is False
    assert gate.try_acquire("exp_456", 60) is True

    clock.advance(30)
    assert gate.try_acquire("exp_123", 60) is False

    clock.advance(30)
    assert gate.try_acquire("exp_123", 60) is True


def test_local_gate_reset():
    """Test that reset reopens the gate immediately."""
    gate = LocalIntervalGate(FakeClock())
    gate.try_acquire("exp_123", 60)
    gate.reset("exp_123")

    assert gate.try_acquire("exp_123", 60) is True
