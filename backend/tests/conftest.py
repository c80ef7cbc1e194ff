"""Shared test fixtures."""
import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from abengine import models  # noqa: F401  registers tables on Base
from abengine.config import Settings
from abengine.database import Base
from abengine.schemas.experiment import (
    AllocationStrategy,
    ExperimentCreate,
    MetricName,
    Variant,
)
from abengine.services.experiment_cache import LocalExperimentCache
from abengine.services.experiments import ExperimentService
from abengine.services.interval_gate import LocalIntervalGate
from abengine.services.store import SQLExperimentStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 0)):
        self.current = start
        self.elapsed = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.elapsed += seconds


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(_env_file=None, min_sample_size=100, reallocation_interval_seconds=3600)


@pytest.fixture
def store(session_factory, clock):
    return SQLExperimentStore(session_factory, clock)


@pytest.fixture
def service(store, clock, settings):
    return ExperimentService(
        store,
        LocalExperimentCache(clock, ttl=60),
        LocalIntervalGate(clock),
        random.Random(42),
        clock=clock,
        settings=settings
    )


def make_config(
    weights=(50.0, 50.0),
    allocation=None,
    metrics=None,
    experiment_id=None,
    sample_size=1000,
    **kwargs
) -> ExperimentCreate:
    """Experiment config with ``control`` followed by ``variant_a``, ``variant_b``..."""
    variants = []
    for i, weight in enumerate(weights):
        if i == 0:
            variants.append(Variant(id="control", name="Control", weight=weight, is_control=True))
        else:
            letter = chr(ord("a") + i - 1)
            variants.append(Variant(id=f"variant_{letter}", name=f"Variant {letter.upper()}", weight=weight))

    return ExperimentCreate(
        id=experiment_id,
        name="checkout_test",
        variants=variants,
        metrics=metrics or [MetricName.CONVERSION_RATE],
        sample_size=sample_size,
        allocation=allocation or AllocationStrategy(),
        **kwargs
    )


@pytest.fixture
def running_experiment(service):
    """Started two-arm fixed experiment."""
    experiment = service.create_experiment(make_config(experiment_id="exp_running"))
    return service.start_experiment(experiment.id)
