"""Experiment persistence.

``ExperimentStore`` is the contract the engine relies on; every method that
writes shared state is atomic on its own:

- assignments are created with get-or-create on a composite primary key,
- counters change through single-statement increments,
- experiment and weight updates are guarded by the ``version`` column.

``SQLExperimentStore`` implements it with SQLAlchemy sessions.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

import structlog
from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from abengine.models import (
    AllocationHistoryRecord,
    AssignmentRecord,
    ExperimentRecord,
    ProcessedEventRecord,
    VariantTrackingRecord,
)
from abengine.schemas.experiment import (
    AllocationSnapshot,
    Assignment,
    Experiment,
    ExperimentStatus,
    Variant,
    VariantTracking,
)
from abengine.services.errors import (
    AllocationError,
    ConcurrencyError,
    ExperimentNotFoundError,
    InvalidStateError,
    StatisticalError,
    ValidationError,
)
from abengine.services.randomness import Clock, SystemClock

logger = structlog.get_logger()

TRACKING_COUNTERS = ("impressions", "clicks", "conversions", "revenue")


class ExperimentStore(ABC):
    """Persistence contract for experiments, tracking, assignments and history."""

    @abstractmethod
    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        ...

    @abstractmethod
    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        ...

    @abstractmethod
    def put_experiment(
        self,
        experiment: Experiment,
        expected_version: Optional[int] = None,
        history_strategy: Optional[str] = None
    ) -> Experiment:
        """
        Insert (``expected_version`` None) or compare-and-swap update an experiment.

        With ``history_strategy`` an allocation snapshot of the stored variants
        commits in the same transaction.
        """

    @abstractmethod
    def put_variant_weights(
        self,
        experiment_id: str,
        variants: Sequence[Variant],
        version_token: int,
        strategy: str
    ) -> Experiment:
        """Replace the variant set of a running experiment and append history in one commit."""

    @abstractmethod
    def init_tracking(self, experiment_id: str, variant_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    def get_tracking(self, experiment_id: str) -> List[VariantTracking]:
        ...

    @abstractmethod
    def increment_variant_counter(
        self,
        experiment_id: str,
        variant_id: str,
        counter: str,
        delta: float,
        event_id: Optional[str] = None
    ) -> bool:
        """Atomically add ``delta``; False when ``event_id`` was already processed."""

    @abstractmethod
    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        ...

    @abstractmethod
    def get_or_create_assignment(
        self,
        experiment_id: str,
        user_id: str,
        candidate_variant_id: str
    ) -> Assignment:
        """Store ``candidate_variant_id`` unless an assignment exists; return the stored one."""

    @abstractmethod
    def append_allocation_history(
        self,
        experiment_id: str,
        strategy: str,
        variants: Sequence[Variant],
        version: int
    ) -> AllocationSnapshot:
        ...

    @abstractmethod
    def list_allocation_history(self, experiment_id: str) -> List[AllocationSnapshot]:
        ...

    @abstractmethod
    def get_allocation_snapshot(self, experiment_id: str, snapshot_id: int) -> Optional[AllocationSnapshot]:
        ...


class SQLExperimentStore(ExperimentStore):
    """SQLAlchemy-backed store. One short-lived session per operation."""

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # Experiments

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._session() as db:
            record = db.get(ExperimentRecord, experiment_id)
            return self._to_experiment(record) if record else None

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._session() as db:
            query = db.query(ExperimentRecord)
            if status is not None:
                query = query.filter(ExperimentRecord.status == status.value)
            records = query.order_by(ExperimentRecord.created_at.asc(), ExperimentRecord.id.asc()).all()
            return [self._to_experiment(r) for r in records]

    def put_experiment(
        self,
        experiment: Experiment,
        expected_version: Optional[int] = None,
        history_strategy: Optional[str] = None
    ) -> Experiment:
        now = self.clock.now()
        values = self._to_values(experiment)
        new_version = 1 if expected_version is None else expected_version + 1

        with self._session() as db:
            if expected_version is None:
                db.add(ExperimentRecord(id=experiment.id, version=1, created_at=now, updated_at=now, **values))
                try:
                    db.flush()
                except IntegrityError as e:
                    db.rollback()
                    raise ValidationError(f"Experiment {experiment.id} already exists") from e

                if history_strategy:
                    db.add(self._history_record(experiment.id, history_strategy, experiment.variants, 1, now))
                db.commit()
                return experiment.model_copy(update={"version": 1, "created_at": now, "updated_at": now})

            values.update(version=new_version, updated_at=now)
            updated = db.query(ExperimentRecord).filter(
                ExperimentRecord.id == experiment.id,
                ExperimentRecord.version == expected_version
            ).update(values, synchronize_session=False)

            if not updated:
                db.rollback()
                if db.get(ExperimentRecord, experiment.id) is None:
                    raise ExperimentNotFoundError(f"Experiment {experiment.id} not found")
                raise ConcurrencyError(
                    f"Experiment {experiment.id} was modified concurrently (expected version {expected_version})"
                )

            if history_strategy:
                db.add(self._history_record(experiment.id, history_strategy, experiment.variants, new_version, now))
            db.commit()
            return experiment.model_copy(update={"version": new_version, "updated_at": now})

    def put_variant_weights(
        self,
        experiment_id: str,
        variants: Sequence[Variant],
        version_token: int,
        strategy: str
    ) -> Experiment:
        now = self.clock.now()
        new_version = version_token + 1

        try:
            with self._session() as db:
                updated = db.query(ExperimentRecord).filter(
                    ExperimentRecord.id == experiment_id,
                    ExperimentRecord.version == version_token,
                    ExperimentRecord.status == ExperimentStatus.RUNNING.value
                ).update(
                    {
                        "variants": [v.model_dump(mode="json") for v in variants],
                        "version": new_version,
                        "updated_at": now
                    },
                    synchronize_session=False
                )

                if not updated:
                    db.rollback()
                    raise ConcurrencyError(
                        f"Experiment {experiment_id} is no longer running at version {version_token}"
                    )

                # History row commits together with the weights
                db.add(self._history_record(experiment_id, strategy, variants, new_version, now))
                db.commit()

                return self._to_experiment(db.get(ExperimentRecord, experiment_id))
        except SQLAlchemyError as e:
            raise AllocationError(f"Failed to update variants of {experiment_id}: {e}") from e

    # Tracking

    def init_tracking(self, experiment_id: str, variant_ids: Sequence[str]) -> None:
        now = self.clock.now()
        with self._session() as db:
            for variant_id in variant_ids:
                if db.get(VariantTrackingRecord, (experiment_id, variant_id)) is None:
                    db.add(VariantTrackingRecord(
                        experiment_id=experiment_id,
                        variant_id=variant_id,
                        impressions=0,
                        clicks=0,
                        conversions=0,
                        revenue=0.0,
                        created_at=now
                    ))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent start seeded the same rows
                db.rollback()

    def get_tracking(self, experiment_id: str) -> List[VariantTracking]:
        with self._session() as db:
            records = db.query(VariantTrackingRecord).filter(
                VariantTrackingRecord.experiment_id == experiment_id
            ).order_by(VariantTrackingRecord.created_at.asc(), VariantTrackingRecord.variant_id.asc()).all()

            return [
                VariantTracking(
                    experiment_id=r.experiment_id,
                    variant_id=r.variant_id,
                    impressions=r.impressions,
                    clicks=r.clicks,
                    conversions=r.conversions,
                    revenue=r.revenue
                )
                for r in records
            ]

    def increment_variant_counter(
        self,
        experiment_id: str,
        variant_id: str,
        counter: str,
        delta: float,
        event_id: Optional[str] = None
    ) -> bool:
        if counter not in TRACKING_COUNTERS:
            raise StatisticalError(f"Unknown tracking counter: {counter}")

        column = getattr(VariantTrackingRecord, counter)
        is_running = exists().where(
            ExperimentRecord.id == experiment_id,
            ExperimentRecord.status == ExperimentStatus.RUNNING.value
        )

        with self._session() as db:
            if event_id is not None:
                db.add(ProcessedEventRecord(
                    experiment_id=experiment_id,
                    event_id=event_id,
                    created_at=self.clock.now()
                ))
                try:
                    db.flush()
                except IntegrityError:
                    db.rollback()
                    logger.info(
                        "event_duplicate_ignored",
                        experiment_id=experiment_id,
                        event_id=event_id
                    )
                    return False

            # Single UPDATE ... SET c = c + :delta, never read-modify-write
            updated = db.query(VariantTrackingRecord).filter(
                VariantTrackingRecord.experiment_id == experiment_id,
                VariantTrackingRecord.variant_id == variant_id,
                is_running
            ).update({column: column + delta}, synchronize_session=False)

            if not updated:
                db.rollback()
                raise InvalidStateError(
                    f"Cannot record {counter} for variant {variant_id}: "
                    f"experiment {experiment_id} is not running or the variant is not tracked"
                )

            db.commit()
            return True

    # Assignments

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        with self._session() as db:
            record = db.get(AssignmentRecord, (experiment_id, user_id))
            return self._to_assignment(record) if record else None

    def get_or_create_assignment(
        self,
        experiment_id: str,
        user_id: str,
        candidate_variant_id: str
    ) -> Assignment:
        with self._session() as db:
            existing = db.get(AssignmentRecord, (experiment_id, user_id))
            if existing:
                return self._to_assignment(existing)

            assigned_at = self.clock.now()
            db.add(AssignmentRecord(
                experiment_id=experiment_id,
                user_id=user_id,
                variant_id=candidate_variant_id,
                assigned_at=assigned_at
            ))
            try:
                db.commit()
            except IntegrityError:
                # Lost the race: the first writer's variant is authoritative
                db.rollback()
                winner = db.get(AssignmentRecord, (experiment_id, user_id))
                if winner is None:
                    raise
                return self._to_assignment(winner)

            return Assignment(
                experiment_id=experiment_id,
                user_id=user_id,
                variant_id=candidate_variant_id,
                assigned_at=assigned_at
            )

    # Allocation history

    def append_allocation_history(
        self,
        experiment_id: str,
        strategy: str,
        variants: Sequence[Variant],
        version: int
    ) -> AllocationSnapshot:
        with self._session() as db:
            record = self._history_record(experiment_id, strategy, variants, version, self.clock.now())
            db.add(record)
            db.commit()
            db.refresh(record)
            return self._to_snapshot(record)

    def list_allocation_history(self, experiment_id: str) -> List[AllocationSnapshot]:
        with self._session() as db:
            records = db.query(AllocationHistoryRecord).filter(
                AllocationHistoryRecord.experiment_id == experiment_id
            ).order_by(AllocationHistoryRecord.id.asc()).all()
            return [self._to_snapshot(r) for r in records]

    def get_allocation_snapshot(self, experiment_id: str, snapshot_id: int) -> Optional[AllocationSnapshot]:
        with self._session() as db:
            record = db.query(AllocationHistoryRecord).filter(
                AllocationHistoryRecord.id == snapshot_id,
                AllocationHistoryRecord.experiment_id == experiment_id
            ).first()
            return self._to_snapshot(record) if record else None

    # Mapping

    @staticmethod
    def _to_values(experiment: Experiment) -> dict:
        return {
            "name": experiment.name,
            "type": experiment.type.value,
            "status": experiment.status.value,
            "variants": [v.model_dump(mode="json") for v in experiment.variants],
            "metrics": [m.value for m in experiment.metrics],
            "allocation": experiment.allocation.model_dump(mode="json"),
            "confidence_level": experiment.confidence_level,
            "sample_size": experiment.sample_size,
            "traffic_allocation": experiment.traffic_allocation,
            "scheduled_start": experiment.scheduled_start,
            "scheduled_end": experiment.scheduled_end,
            "started_at": experiment.started_at,
            "ended_at": experiment.ended_at,
            "result": experiment.result.model_dump(mode="json") if experiment.result else None,
        }

    @staticmethod
    def _to_experiment(record: ExperimentRecord) -> Experiment:
        return Experiment.model_validate({
            "id": record.id,
            "name": record.name,
            "type": record.type,
            "status": record.status,
            "variants": record.variants,
            "metrics": record.metrics,
            "allocation": record.allocation,
            "confidence_level": record.confidence_level,
            "sample_size": record.sample_size,
            "traffic_allocation": record.traffic_allocation,
            "scheduled_start": record.scheduled_start,
            "scheduled_end": record.scheduled_end,
            "started_at": record.started_at,
            "ended_at": record.ended_at,
            "result": record.result,
            "version": record.version,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        })

    @staticmethod
    def _to_assignment(record: AssignmentRecord) -> Assignment:
        return Assignment(
            experiment_id=record.experiment_id,
            user_id=record.user_id,
            variant_id=record.variant_id,
            assigned_at=record.assigned_at
        )

    @staticmethod
    def _to_snapshot(record: AllocationHistoryRecord) -> AllocationSnapshot:
        return AllocationSnapshot.model_validate({
            "id": record.id,
            "experiment_id": record.experiment_id,
            "strategy": record.strategy,
            "allocation": record.allocation,
            "version": record.version,
            "created_at": record.created_at,
        })

    @staticmethod
    def _allocation_entries(variants: Sequence[Variant]) -> list:
        return [
            {"variant_id": v.id, "variant_name": v.name, "weight": v.weight}
            for v in variants
        ]

    def _history_record(
        self,
        experiment_id: str,
        strategy: str,
        variants: Sequence[Variant],
        version: int,
        created_at: datetime
    ) -> AllocationHistoryRecord:
        return AllocationHistoryRecord(
            experiment_id=experiment_id,
            strategy=strategy,
            allocation=self._allocation_entries(variants),
            version=version,
            created_at=created_at
        )
