"""Feature flag endpoints."""
from fastapi import APIRouter, Depends, Response
from typing import Any, Dict, List

from abengine.schemas.feature_flag import FeatureFlag, UserContext
from abengine.services.errors import ValidationError
from abengine.services.experiments import ExperimentService, get_experiment_service

router = APIRouter(prefix="/flags")


@router.get("", response_model=List[FeatureFlag])
def list_flags(service: ExperimentService = Depends(get_experiment_service)):
    return service.list_flags()


@router.post("/evaluate", response_model=Dict[str, Any])
def evaluate_flags(context: UserContext, service: ExperimentService = Depends(get_experiment_service)):
    """Evaluate every flag for a user context."""
    return service.evaluate_flags(context)


@router.get("/{flag_id}", response_model=FeatureFlag)
def get_flag(flag_id: str, service: ExperimentService = Depends(get_experiment_service)):
    return service.get_flag(flag_id)


@router.put("/{flag_id}", response_model=FeatureFlag)
def put_flag(
    flag_id: str,
    flag: FeatureFlag,
    service: ExperimentService = Depends(get_experiment_service)
):
    """Create or replace a flag."""
    if flag.id != flag_id:
        raise ValidationError(f"Flag id {flag.id} does not match path {flag_id}")
    return service.put_flag(flag)


@router.delete("/{flag_id}", status_code=204)
def delete_flag(flag_id: str, service: ExperimentService = Depends(get_experiment_service)):
    service.delete_flag(flag_id)
    return Response(status_code=204)
