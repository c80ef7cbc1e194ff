"""Experiment endpoints.

Handlers are plain functions so the blocking store calls run in FastAPI's
thread pool. Engine errors are mapped to status codes in ``main.py``.
"""
from fastapi import APIRouter, Depends
from typing import List

from abengine.schemas.events import AssignRequest, AssignResponse, EventRequest, EventResponse
from abengine.schemas.experiment import (
    AllocationSnapshot,
    AllocationUpdate,
    Experiment,
    ExperimentCreate,
    Variant,
    VariantTracking,
)
from abengine.schemas.feature_flag import ExperimentFlags, UserContext
from abengine.schemas.results import ExperimentResult
from abengine.services.experiments import ExperimentService, get_experiment_service
from abengine.middleware.logging import get_logger

router = APIRouter(prefix="/experiments")
logger = get_logger()


@router.post("", response_model=Experiment, status_code=201)
def create_experiment(
    config: ExperimentCreate,
    service: ExperimentService = Depends(get_experiment_service)
):
    """
    Create an experiment in planning.

    - Validates variants (2+, unique, weights sum to 100)
    - Picks the first variant as control when none is flagged
    """
    return service.create_experiment(config)


@router.get("/active", response_model=List[Experiment])
def list_active_experiments(service: ExperimentService = Depends(get_experiment_service)):
    """Running experiments."""
    return service.get_active_experiments()


@router.get("/{experiment_id}", response_model=Experiment)
def get_experiment(experiment_id: str, service: ExperimentService = Depends(get_experiment_service)):
    return service.get_experiment(experiment_id)


@router.post("/{experiment_id}/start", response_model=Experiment)
def start_experiment(experiment_id: str, service: ExperimentService = Depends(get_experiment_service)):
    return service.start_experiment(experiment_id)


@router.post("/{experiment_id}/stop", response_model=ExperimentResult)
def stop_experiment(experiment_id: str, service: ExperimentService = Depends(get_experiment_service)):
    """Complete a running experiment and return its final analysis."""
    return service.stop_experiment(experiment_id)


@router.get("/{experiment_id}/result", response_model=ExperimentResult)
def get_result(experiment_id: str, service: ExperimentService = Depends(get_experiment_service)):
    """Final result when completed, interim analysis while running."""
    return service.get_result(experiment_id)


@router.get("/{experiment_id}/tracking", response_model=List[VariantTracking])
def get_tracking(experiment_id: str, service: ExperimentService = Depends(get_experiment_service)):
    return service.get_tracking(experiment_id)


@router.post("/{experiment_id}/assign", response_model=AssignResponse)
def assign_variant(
    experiment_id: str,
    request: AssignRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """
    Get the user's variant.

    The first call draws and stores a variant; later calls return the same one.
    """
    variant_id = service.assign(experiment_id, request.user_id)
    return AssignResponse(experiment_id=experiment_id, user_id=request.user_id, variant_id=variant_id)


@router.post("/{experiment_id}/events", response_model=EventResponse)
def record_event(
    experiment_id: str,
    request: EventRequest,
    service: ExperimentService = Depends(get_experiment_service)
):
    """
    Record an event for the user's assigned variant.

    Repeated ``event_id``s and users without an assignment are acknowledged
    but not counted.
    """
    recorded = service.record_user_event(
        experiment_id,
        request.user_id,
        request.metric,
        value=request.value,
        count=request.count,
        event_id=request.event_id
    )

    if not recorded:
        return EventResponse(status="ignored", recorded=False)
    return EventResponse()


@router.post("/{experiment_id}/reallocate", response_model=AllocationUpdate)
def reallocate(
    experiment_id: str,
    force: bool = False,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Recalculate weights now. ``force`` ignores the update interval."""
    variants = service.recalculate_allocation(experiment_id, force=force)
    if variants is None:
        return AllocationUpdate(updated=False, variants=service.get_experiment(experiment_id).variants)

    logger.info("allocation_reallocated_via_api", experiment_id=experiment_id, force=force)
    return AllocationUpdate(updated=True, variants=variants)


@router.get("/{experiment_id}/allocation-history", response_model=List[AllocationSnapshot])
def allocation_history(experiment_id: str, service: ExperimentService = Depends(get_experiment_service)):
    return service.allocation_history(experiment_id)


@router.post("/{experiment_id}/allocation-history/{snapshot_id}/rollback", response_model=List[Variant])
def rollback_allocation(
    experiment_id: str,
    snapshot_id: int,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Re-apply a previous allocation snapshot."""
    return service.rollback_allocation(experiment_id, snapshot_id)


@router.post("/{experiment_id}/flags", response_model=ExperimentFlags)
def experiment_flags(
    experiment_id: str,
    context: UserContext,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Flags linked to the experiment, resolved for the user's variant."""
    return service.experiment_flags(experiment_id, context)
