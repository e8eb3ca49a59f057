"""
Ranking experiment endpoints: lifecycle, assignment, outcomes and reports.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from catalog_search.domain.errors import ExperimentNotFoundError
from catalog_search.domain.services import ExperimentManager
from catalog_search.api.v1 import schemas as api
from catalog_search.api.v1.converters import (
    api_outcome_to_domain,
    api_variant_to_domain,
    domain_assignment_to_api,
    domain_experiment_to_api,
    domain_report_to_api,
)
from catalog_search.api.v1.dependencies import get_experiment_manager

router = APIRouter(prefix="/experiments")


def _not_found(e: ExperimentNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "",
    response_model=api.ApiResponse[api.Experiment],
    status_code=status.HTTP_201_CREATED,
)
def create_experiment(
    request: api.CreateExperimentRequest,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.Experiment]:
    """Register an experiment; it accepts users once started."""
    try:
        experiment = manager.create_experiment(
            name=request.name,
            variants=[api_variant_to_domain(v) for v in request.variants],
            end_date=request.end_date,
            start_date=request.start_date,
            description=request.description,
        )
        return api.ApiResponse(data=domain_experiment_to_api(experiment))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=api.ApiResponse[list[api.Experiment]])
def list_experiments(
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[list[api.Experiment]]:
    manager.expire_due()
    return api.ApiResponse(data=[domain_experiment_to_api(e) for e in manager.list_experiments()])


@router.get("/{experiment_id}", response_model=api.ApiResponse[api.Experiment])
def get_experiment(
    experiment_id: str,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.Experiment]:
    try:
        return api.ApiResponse(data=domain_experiment_to_api(manager.get(experiment_id)))
    except ExperimentNotFoundError as e:
        raise _not_found(e)


@router.post("/{experiment_id}/start", response_model=api.ApiResponse[api.Experiment])
def start_experiment(
    experiment_id: str,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.Experiment]:
    try:
        return api.ApiResponse(data=domain_experiment_to_api(manager.start(experiment_id)))
    except ExperimentNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{experiment_id}/stop", response_model=api.ApiResponse[api.Experiment])
def stop_experiment(
    experiment_id: str,
    request: api.StopExperimentRequest,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.Experiment]:
    try:
        experiment = manager.stop(experiment_id, reason=request.reason)
        return api.ApiResponse(data=domain_experiment_to_api(experiment))
    except ExperimentNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{experiment_id}/assign", response_model=api.ApiResponse[api.Assignment])
def assign_variant(
    experiment_id: str,
    request: api.AssignRequest,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.Assignment]:
    """
    Return the user's variant, assigning one deterministically on first contact.

    A recorded assignment is returned even after the experiment stops.
    """
    try:
        assignment = manager.assign_variant(
            experiment_id, request.user_id, force_variant=request.force_variant
        )
        return api.ApiResponse(data=domain_assignment_to_api(assignment))
    except ExperimentNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{experiment_id}/outcomes", response_model=api.ApiResponse[api.OutcomeRecorded])
def record_outcome(
    experiment_id: str,
    request: api.OutcomeRequest,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.OutcomeRecorded]:
    try:
        recorded = manager.record_outcome(
            experiment_id,
            request.user_id,
            request.session_id,
            api_outcome_to_domain(request),
        )
        return api.ApiResponse(data=api.OutcomeRecorded(recorded=recorded))
    except ExperimentNotFoundError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{experiment_id}/report", response_model=api.ApiResponse[api.ExperimentReport])
def experiment_report(
    experiment_id: str,
    manager: ExperimentManager = Depends(get_experiment_manager),
) -> api.ApiResponse[api.ExperimentReport]:
    """Per-variant aggregates, significance against the control and a recommendation."""
    try:
        return api.ApiResponse(data=domain_report_to_api(manager.report(experiment_id)))
    except ExperimentNotFoundError as e:
        raise _not_found(e)
