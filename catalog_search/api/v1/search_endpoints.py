"""
API endpoints for search, suggestions and health.

This module defines the FastAPI routes callers use to query the catalog.
It handles HTTP concerns and delegates to domain services.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from catalog_search.domain.services import (
    IndexAdminService,
    IntelligentSearchService,
    QueryExecutionService,
    SuggestionService,
)
from catalog_search.domain.value_objects import RankingSort, SearchRequest
from catalog_search.api.v1 import schemas as api
from catalog_search.api.v1.converters import (
    api_context_to_domain,
    api_filters_to_domain,
    api_request_to_domain,
    api_weights_to_domain,
    domain_page_to_api,
    domain_ranked_page_to_api,
    domain_suggestion_to_api,
)
from catalog_search.api.v1.dependencies import (
    get_admin_service,
    get_intelligent_search_service,
    get_query_service,
    get_suggestion_service,
)

router = APIRouter()


@router.post("/search", response_model=api.ApiResponse[api.SearchPage])
def search_assets(
    request: api.SearchRequest,
    service: QueryExecutionService = Depends(get_query_service),
) -> api.ApiResponse[api.SearchPage]:
    """
    Full-text search over the asset catalog.

    Runs against the index engine and transparently falls back to the
    relational catalog when the engine is slow or down; the response then
    carries degraded=true and a degradation_reason.
    """
    try:
        page = service.search(api_request_to_domain(request))
        return api.ApiResponse(data=domain_page_to_api(page))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        )


@router.post("/search/live", response_model=api.ApiResponse[api.SearchPage])
def live_search(
    request: api.LiveSearchRequest,
    service: QueryExecutionService = Depends(get_query_service),
) -> api.ApiResponse[api.SearchPage]:
    """Search-as-you-type over active assets, with a tight timeout."""
    try:
        page = service.live_search(request.query, size=request.size)
        return api.ApiResponse(data=domain_page_to_api(page))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/search/intelligent", response_model=api.ApiResponse[api.IntelligentSearchPage])
def intelligent_search(
    request: api.IntelligentSearchRequest,
    service: IntelligentSearchService = Depends(get_intelligent_search_service),
) -> api.ApiResponse[api.IntelligentSearchPage]:
    """
    Search, then re-rank the page with weighted ranking signals.

    Weights come from custom_weights, the user's experiment variant, the
    user's saved weights or the system defaults, in that order.
    """
    try:
        domain_request = SearchRequest(
            query=request.query,
            filters=api_filters_to_domain(request.filters),
            page=request.page,
            page_size=request.page_size,
        )
        result = service.search(
            domain_request,
            user_id=request.user_id,
            sort=RankingSort(request.sort_option),
            custom_weights=(
                api_weights_to_domain(request.custom_weights)
                if request.custom_weights is not None
                else None
            ),
            experiment_id=request.experiment_id,
            context=api_context_to_domain(request.context, request.user_id),
        )
        return api.ApiResponse(data=domain_ranked_page_to_api(result))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/suggest", response_model=api.ApiResponse[list[api.Suggestion]])
def suggest(
    request: api.SuggestRequest,
    service: SuggestionService = Depends(get_suggestion_service),
) -> api.ApiResponse[list[api.Suggestion]]:
    """Completions for a partial query, best first."""
    try:
        suggestions = service.suggest(request.prefix, size=request.size)
        return api.ApiResponse(data=[domain_suggestion_to_api(s) for s in suggestions])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/suggest/popular", response_model=api.ApiResponse[list[api.Suggestion]])
def popular_suggestions(
    limit: int = Query(default=10, ge=1, le=20),
    service: SuggestionService = Depends(get_suggestion_service),
) -> api.ApiResponse[list[api.Suggestion]]:
    """Names of the most popular active assets, for an empty search box."""
    try:
        suggestions = service.popular_suggestions(limit=limit)
        return api.ApiResponse(data=[domain_suggestion_to_api(s) for s in suggestions])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/health")
def health_check(
    service: IndexAdminService = Depends(get_admin_service),
) -> dict:
    """
    Check system health and component readiness.

    Returns:
    - status: 'ok', or 'degraded' when the index engine is down and searches
      are served by the relational fallback
    - components: index engine, sync worker, queue and catalog figures
    """
    health = service.health()
    return {
        "success": True,
        "data": {
            "status": health["status"],
            "components": {key: value for key, value in health.items() if key != "status"},
        },
    }
