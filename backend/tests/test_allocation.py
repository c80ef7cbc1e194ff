"""Tests for adaptive allocation strategies."""
import random
from unittest.mock import MagicMock

import pytest

from abengine.schemas.events import EventType
from abengine.schemas.experiment import AllocationStrategy, AllocationType, BanditAlgorithm, VariantTracking
from abengine.services.errors import AllocationError, ConcurrencyError, ExperimentNotFoundError, InvalidStateError

from conftest import make_config


def _bandit(algorithm, **kwargs):
    return AllocationStrategy(type=AllocationType.BANDIT, algorithm=algorithm, **kwargs)


def _start(service, experiment_id, weights=(50, 50), allocation=None):
    service.create_experiment(make_config(experiment_id=experiment_id, weights=weights, allocation=allocation))
    return service.start_experiment(experiment_id)


def _record(service, experiment_id, variant_id, impressions, conversions):
    service.record_exposure(experiment_id, variant_id, count=impressions)
    if conversions:
        service.record_event(experiment_id, variant_id, EventType.CONVERSION, count=conversions)


def _row(variant_id, impressions, conversions):
    return VariantTracking(experiment_id="exp", variant_id=variant_id, impressions=impressions, conversions=conversions)


def test_epsilon_greedy_worked_example(service):
    """Test that the best of three variants gets 90% and the others 5% each."""
    experiment = _start(service, "exp_eps", weights=(34, 33, 33), allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))

    weights = service.optimizer.compute_weights(experiment, [
        _row("control", 1000, 50),
        _row("variant_a", 1000, 80),
        _row("variant_b", 1000, 60)
    ])

    assert weights == pytest.approx([5.0, 90.0, 5.0])


def test_epsilon_greedy_persists_weights_and_history(service):
    """Test the full recalculation path."""
    _start(service, "exp_eps", weights=(34, 33, 33), allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))
    _record(service, "exp_eps", "control", 1000, 50)
    _record(service, "exp_eps", "variant_a", 1000, 80)
    _record(service, "exp_eps", "variant_b", 1000, 60)

    variants = service.recalculate_allocation("exp_eps")

    assert [v.weight for v in variants] == pytest.approx([5.0, 90.0, 5.0])
    assert [v.weight for v in service.get_experiment("exp_eps").variants] == pytest.approx([5.0, 90.0, 5.0])
    history = service.allocation_history("exp_eps")
    assert [h.strategy for h in history] == ["initial", "epsilon_greedy"]


def test_interval_gate_limits_reallocation(service, clock):
    """Test that recalculation runs at most once per interval unless forced."""
    _start(service, "exp_gate", allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))
    _record(service, "exp_gate", "control", 100, 5)
    _record(service, "exp_gate", "variant_a", 100, 10)

    assert service.recalculate_allocation("exp_gate") is not None
    assert service.recalculate_allocation("exp_gate") is None
    assert service.recalculate_allocation("exp_gate", force=True) is not None

    clock.advance(3600)
    assert service.recalculate_allocation("exp_gate") is not None


def test_noop_cases(service):
    """Test that fixed, idle and unexposed experiments are left alone."""
    _start(service, "exp_fixed")
    _record(service, "exp_fixed", "control", 100, 5)
    _start(service, "exp_empty", allocation=_bandit(BanditAlgorithm.THOMPSON))
    service.create_experiment(make_config(experiment_id="exp_planned", allocation=_bandit(BanditAlgorithm.UCB)))

    assert service.recalculate_allocation("exp_fixed", force=True) is None
    assert service.recalculate_allocation("exp_empty", force=True) is None
    assert service.recalculate_allocation("exp_planned", force=True) is None
    assert len(service.allocation_history("exp_fixed")) == 1

    with pytest.raises(ExperimentNotFoundError):
        service.recalculate_allocation("missing")


def test_thompson_weights_are_valid_and_reproducible(service):
    """Test that Thompson weights sum to 100 and replay under a seed."""
    experiment = _start(service, "exp_ts", weights=(34, 33, 33), allocation=_bandit(BanditAlgorithm.THOMPSON))
    tracking = [_row("control", 500, 25), _row("variant_a", 500, 40), _row("variant_b", 10, 0)]

    service.optimizer.rng = random.Random(5)
    first = service.optimizer.compute_weights(experiment, tracking)
    service.optimizer.rng = random.Random(5)
    second = service.optimizer.compute_weights(experiment, tracking)

    assert first == second
    assert sum(first) == pytest.approx(100.0)
    assert all(0 <= w <= 100 for w in first)


def test_thompson_shifts_traffic_to_better_variant(service):
    """Test that simulated rounds move traffic toward the stronger variant."""
    _start(service, "exp_sim", allocation=_bandit(BanditAlgorithm.THOMPSON))
    true_rates = {"control": 0.02, "variant_a": 0.10}
    world = random.Random(2024)
    service.optimizer.rng = random.Random(99)

    variant_a_weights = []
    for _ in range(20):
        experiment = service.get_experiment("exp_sim")
        for variant in experiment.variants:
            impressions = int(500 * variant.weight / 100)
            conversions = sum(1 for _ in range(impressions) if world.random() < true_rates[variant.id])
            _record(service, "exp_sim", variant.id, impressions, conversions)

        variants = service.recalculate_allocation("exp_sim", force=True)
        variant_a_weights.append(next(v.weight for v in variants if v.id == "variant_a"))

    late = variant_a_weights[10:]
    assert sum(late) / len(late) > 70
    assert late[-1] > 60


def test_thompson_uses_injected_sampler(service):
    """Test that the Beta sampler can be replaced."""
    experiment = _start(service, "exp_inj", allocation=_bandit(BanditAlgorithm.THOMPSON))
    calls = []

    def fake_sampler(alpha, beta, rng):
        calls.append((alpha, beta))
        return alpha / (alpha + beta)

    service.optimizer.beta_sampler = fake_sampler
    weights = service.optimizer.compute_weights(experiment, [_row("control", 100, 9), _row("variant_a", 100, 29)])

    assert calls == [(10, 92), (30, 72)]
    assert weights[1] > weights[0]


def test_ucb_favors_best_arm(service):
    """Test that the UCB argmax gets 40-60% and the rest is split evenly."""
    experiment = _start(service, "exp_ucb", weights=(34, 33, 33), allocation=_bandit(BanditAlgorithm.UCB))

    weights = service.optimizer.compute_weights(experiment, [
        _row("control", 1000, 50),
        _row("variant_a", 1000, 200),
        _row("variant_b", 1000, 60)
    ])

    assert 40 <= weights[1] <= 60
    assert weights[0] == pytest.approx(weights[2], abs=0.011)
    assert sum(weights) == pytest.approx(100.0)


def test_ucb_explores_unexposed_arm(service):
    """Test that an arm without impressions scores infinitely high."""
    experiment = _start(service, "exp_ucb0", weights=(34, 33, 33), allocation=_bandit(BanditAlgorithm.UCB))

    weights = service.optimizer.compute_weights(experiment, [
        _row("control", 1000, 50),
        _row("variant_a", 1000, 200)
    ])

    assert weights[2] == max(weights)


def test_dynamic_allocation_smooths_and_floors(service):
    """Test dynamic allocation on a clear winner."""
    experiment = _start(service, "exp_dyn", allocation=AllocationStrategy(type=AllocationType.DYNAMIC))

    weights = service.optimizer.compute_weights(experiment, [
        _row("control", 1000, 100),
        _row("variant_a", 1000, 150)
    ])

    # control score 0.1 * 0.5, variant 0.15 * 0.975 -> proposed ~25.5 / 74.5
    assert weights[1] > 50
    assert weights[1] < 70
    assert weights[0] >= 5.0
    assert sum(weights) == pytest.approx(100.0)


def test_dynamic_allocation_without_signal_keeps_weights(service):
    """Test that all-zero scores leave weights unchanged."""
    experiment = _start(service, "exp_dyn0", weights=(70, 30), allocation=AllocationStrategy(type=AllocationType.DYNAMIC))

    weights = service.optimizer.compute_weights(experiment, [_row("control", 100, 0), _row("variant_a", 100, 0)])

    assert weights == pytest.approx([70.0, 30.0])


def test_dynamic_allocation_respects_floor(service):
    """Test that no variant drops below the minimum weight."""
    experiment = _start(service, "exp_floor", weights=(6, 94), allocation=AllocationStrategy(type=AllocationType.DYNAMIC))

    weights = service.optimizer.compute_weights(experiment, [_row("control", 1000, 0), _row("variant_a", 1000, 300)])

    assert weights[0] >= 5.0
    assert sum(weights) == pytest.approx(100.0)


def test_failed_commit_keeps_previous_weights(service, store, monkeypatch):
    """Test that a lost race raises AllocationError and changes nothing."""
    _start(service, "exp_race", allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))
    _record(service, "exp_race", "control", 100, 1)
    _record(service, "exp_race", "variant_a", 100, 10)

    monkeypatch.setattr(store, "put_variant_weights", MagicMock(side_effect=ConcurrencyError("stale")))

    with pytest.raises(AllocationError):
        service.recalculate_allocation("exp_race", force=True)

    assert [v.weight for v in service.get_experiment("exp_race").variants] == [50.0, 50.0]


def test_rollback_restores_snapshot(service):
    """Test that a historical allocation can be re-applied."""
    _start(service, "exp_rb", allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))
    _record(service, "exp_rb", "control", 100, 1)
    _record(service, "exp_rb", "variant_a", 100, 10)
    service.recalculate_allocation("exp_rb", force=True)

    initial = service.allocation_history("exp_rb")[0]
    variants = service.rollback_allocation("exp_rb", initial.id)

    assert [v.weight for v in variants] == [50.0, 50.0]
    assert [h.strategy for h in service.allocation_history("exp_rb")] == ["initial", "epsilon_greedy", "rollback"]


def test_rollback_requires_running_and_known_snapshot(service):
    """Test rollback preconditions."""
    _start(service, "exp_rb2", allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))
    service.create_experiment(make_config(experiment_id="exp_rb_planned"))

    with pytest.raises(ExperimentNotFoundError):
        service.rollback_allocation("exp_rb2", 9999)
    with pytest.raises(InvalidStateError):
        service.rollback_allocation("exp_rb_planned", 1)


def test_reallocation_invalidates_assignment_cache(service):
    """Test that new weights are visible to the assignment engine immediately."""
    _start(service, "exp_cache", allocation=_bandit(BanditAlgorithm.EPSILON_GREEDY))
    service.assign("exp_cache", "warmup_user")
    _record(service, "exp_cache", "control", 100, 1)
    _record(service, "exp_cache", "variant_a", 100, 10)

    service.recalculate_allocation("exp_cache", force=True)
    cached = service.assignments.get_experiment("exp_cache")

    assert [v.weight for v in cached.variants] == pytest.approx([10.0, 90.0])
