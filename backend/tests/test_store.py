"""Tests for the SQL experiment store."""
import pytest
from sqlalchemy.exc import OperationalError

from abengine.models import AssignmentRecord, VariantTrackingRecord
from abengine.schemas.experiment import ExperimentStatus
from abengine.services.errors import (
    ConcurrencyError,
    InvalidStateError,
    StatisticalError,
    ValidationError,
)

from conftest import make_config


def test_create_and_read_back(service, store):
    """Test that an experiment round-trips through the database."""
    created = service.create_experiment(make_config(experiment_id="exp_1", weights=(40, 60)))
    loaded = store.get_experiment("exp_1")

    assert loaded.id == created.id
    assert loaded.status == ExperimentStatus.PLANNING
    assert [v.weight for v in loaded.variants] == [40.0, 60.0]
    assert loaded.control.id == "control"
    assert loaded.version == 1


def test_duplicate_id_rejected(service):
    """Test that experiment ids are unique."""
    service.create_experiment(make_config(experiment_id="exp_dup"))

    with pytest.raises(ValidationError):
        service.create_experiment(make_config(experiment_id="exp_dup"))


def test_stale_version_raises_concurrency_error(service, store):
    """Test optimistic concurrency on experiment updates."""
    experiment = service.create_experiment(make_config(experiment_id="exp_cas"))
    renamed = experiment.model_copy(update={"name": "renamed"})

    store.put_experiment(renamed, expected_version=1)
    with pytest.raises(ConcurrencyError):
        store.put_experiment(renamed, expected_version=1)

    assert store.get_experiment("exp_cas").version == 2


def test_increment_is_atomic_sql_update(running_experiment, store):
    """Test that increments accumulate in the tracking row."""
    for _ in range(5):
        store.increment_variant_counter("exp_running", "control", "impressions", 1)
    store.increment_variant_counter("exp_running", "control", "revenue", 12.5)

    control = next(t for t in store.get_tracking("exp_running") if t.variant_id == "control")
    assert control.impressions == 5
    assert control.revenue == pytest.approx(12.5)


def test_duplicate_event_id_is_noop(running_experiment, store):
    """Test idempotent increments keyed by event id."""
    assert store.increment_variant_counter("exp_running", "control", "conversions", 1, event_id="evt-1") is True
    assert store.increment_variant_counter("exp_running", "control", "conversions", 1, event_id="evt-1") is False

    control = next(t for t in store.get_tracking("exp_running") if t.variant_id == "control")
    assert control.conversions == 1


def test_increment_unknown_counter_raises(running_experiment, store):
    """Test that only tracking counters can be incremented."""
    with pytest.raises(StatisticalError):
        store.increment_variant_counter("exp_running", "control", "version", 1)


def test_increment_requires_running_experiment(service, store):
    """Test that experiments that are not running reject increments."""
    experiment = service.create_experiment(make_config(experiment_id="exp_done"))
    store.init_tracking(experiment.id, ["control", "variant_a"])

    with pytest.raises(InvalidStateError):
        store.increment_variant_counter(experiment.id, "control", "impressions", 1)


def test_get_or_create_assignment_keeps_first_writer(running_experiment, store, db):
    """Test that an existing assignment wins over a new candidate."""
    first = store.get_or_create_assignment("exp_running", "user_1", "variant_a")
    second = store.get_or_create_assignment("exp_running", "user_1", "control")

    assert first.variant_id == "variant_a"
    assert second.variant_id == "variant_a"
    assert db.query(AssignmentRecord).filter(AssignmentRecord.user_id == "user_1").count() == 1


def test_put_variant_weights_appends_history(running_experiment, store):
    """Test that weight updates and history commit together."""
    variants = [v.model_copy(update={"weight": w}) for v, w in zip(running_experiment.variants, (30.0, 70.0))]

    updated = store.put_variant_weights("exp_running", variants, running_experiment.version, "thompson")
    history = store.list_allocation_history("exp_running")

    assert [v.weight for v in updated.variants] == [30.0, 70.0]
    assert updated.version == running_experiment.version + 1
    assert [h.strategy for h in history] == ["initial", "thompson"]
    assert history[-1].version == updated.version
    assert store.get_allocation_snapshot("exp_running", history[-1].id).allocation[1].weight == 70.0


def test_put_variant_weights_stale_token_leaves_weights(running_experiment, store):
    """Test that a stale version token changes nothing."""
    variants = [v.model_copy(update={"weight": w}) for v, w in zip(running_experiment.variants, (30.0, 70.0))]

    with pytest.raises(ConcurrencyError):
        store.put_variant_weights("exp_running", variants, running_experiment.version - 1, "thompson")

    assert [v.weight for v in store.get_experiment("exp_running").variants] == [50.0, 50.0]
    assert len(store.list_allocation_history("exp_running")) == 1


def test_init_tracking_is_idempotent(running_experiment, store, db):
    """Test that seeding twice keeps one row per variant."""
    store.init_tracking("exp_running", ["control", "variant_a"])

    assert db.query(VariantTrackingRecord).filter(
        VariantTrackingRecord.experiment_id == "exp_running"
    ).count() == 2


def test_list_experiments_filters_by_status(service, store, running_experiment):
    """Test status filtering."""
    service.create_experiment(make_config(experiment_id="exp_planned"))

    assert [e.id for e in store.list_experiments(ExperimentStatus.RUNNING)] == ["exp_running"]
    assert {e.id for e in store.list_experiments()} == {"exp_running", "exp_planned"}


def test_create_commits_baseline_snapshot(service, store):
    """Test that a new experiment starts with an initial allocation snapshot."""
    created = service.create_experiment(make_config(experiment_id="exp_baseline", weights=(40, 60)))
    history = store.list_allocation_history("exp_baseline")

    assert [h.strategy for h in history] == ["initial"]
    assert history[0].version == created.version
    assert [entry.weight for entry in history[0].allocation] == [40.0, 60.0]


def test_create_rolls_back_when_snapshot_fails(service, store, monkeypatch):
    """Test that the experiment is not stored without its baseline snapshot."""
    def broken_history(*args, **kwargs):
        raise OperationalError("INSERT INTO allocation_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "_history_record", broken_history)

    with pytest.raises(OperationalError):
        service.create_experiment(make_config(experiment_id="exp_half"))

    assert store.get_experiment("exp_half") is None
    assert store.list_allocation_history("exp_half") == []


def test_append_allocation_history(running_experiment, store):
    """Test appending a standalone snapshot."""
    snapshot = store.append_allocation_history(
        "exp_running", "manual", running_experiment.variants, running_experiment.version
    )

    assert snapshot.id is not None
    assert snapshot.strategy == "manual"
    assert [h.id for h in store.list_allocation_history("exp_running")][-1] == snapshot.id
