"""
Operator endpoints: index lifecycle, queue inspection, resynchronization and
search performance.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from catalog_search.domain.services import IndexAdminService, IndexSyncQueue
from catalog_search.api.v1 import schemas as api
from catalog_search.api.v1.converters import (
    domain_dead_letter_to_api,
    domain_performance_to_api,
    domain_queue_to_api,
    domain_stats_to_api,
)
from catalog_search.api.v1.dependencies import get_admin_service, get_sync_queue

router = APIRouter(prefix="/admin")


@router.post("/index/initialize", response_model=api.ApiResponse[api.IndexStats])
def initialize_index(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.IndexStats]:
    """Create the search index (with its mapping) if it does not exist yet."""
    try:
        return api.ApiResponse(data=domain_stats_to_api(service.initialize_index()))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/index/refresh", response_model=api.ApiResponse[api.IndexStats])
def refresh_index(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.IndexStats]:
    try:
        service.refresh_index()
        return api.ApiResponse(data=domain_stats_to_api(service.get_index_stats()))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/index/optimize", response_model=api.ApiResponse[api.IndexStats])
def optimize_index(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.IndexStats]:
    try:
        service.optimize_index()
        return api.ApiResponse(data=domain_stats_to_api(service.get_index_stats()))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/index/stats", response_model=api.ApiResponse[api.IndexStats])
def index_stats(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.IndexStats]:
    try:
        return api.ApiResponse(data=domain_stats_to_api(service.get_index_stats()))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/queue/status", response_model=api.ApiResponse[api.QueueStatus])
def queue_status(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.QueueStatus]:
    """Queue sizes, the next tasks to run and cumulative processing counters."""
    return api.ApiResponse(
        data=domain_queue_to_api(service.get_queue_status(), service.get_queue_metrics())
    )


@router.get("/queue/dead-letters", response_model=api.ApiResponse[list[api.DeadLetter]])
def dead_letters(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[list[api.DeadLetter]]:
    """Tasks that exhausted their retries, oldest first."""
    return api.ApiResponse(data=[domain_dead_letter_to_api(r) for r in service.dead_letters()])


@router.get("/search/performance", response_model=api.ApiResponse[api.SearchPerformance])
def search_performance(
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.SearchPerformance]:
    """Latency by serving backend, fallback and error rates, and recent slow queries."""
    return api.ApiResponse(data=domain_performance_to_api(service.search_performance()))


@router.post(
    "/sync",
    response_model=api.ApiResponse[api.SyncScheduled],
    status_code=status.HTTP_202_ACCEPTED,
)
def resync(
    request: api.SyncRequest,
    service: IndexAdminService = Depends(get_admin_service),
) -> api.ApiResponse[api.SyncScheduled]:
    """
    Queue re-indexing of the given asset ids, or of the whole catalog
    (non-draft assets) when full_sync is true.
    """
    try:
        task_ids = service.resync(
            asset_ids=request.asset_ids,
            full_sync=request.full_sync,
            priority=request.priority,
        )
        return api.ApiResponse(data=api.SyncScheduled(task_ids=task_ids))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post(
    "/sync/{asset_id}",
    response_model=api.ApiResponse[api.SyncScheduled],
    status_code=status.HTTP_202_ACCEPTED,
)
def sync_asset(
    asset_id: str,
    request: api.SyncAssetRequest,
    queue: IndexSyncQueue = Depends(get_sync_queue),
) -> api.ApiResponse[api.SyncScheduled]:
    """Queue a create, update or delete of one asset's index document."""
    schedule = {
        "create": queue.schedule_create,
        "update": queue.schedule_update,
        "delete": queue.schedule_delete,
    }[request.action]
    try:
        task_id = schedule(asset_id, priority=request.priority)
        return api.ApiResponse(data=api.SyncScheduled(task_ids=[task_id]))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
