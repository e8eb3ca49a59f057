"""
Converters between domain entities/value objects and API schemas.

This module centralizes all conversion logic between the domain layer
and the API layer, so routers never touch dataclass fields directly.
"""

from dataclasses import asdict
from typing import Optional

from catalog_search.domain import entities as domain
from catalog_search.domain import value_objects as domain_vo
from catalog_search.domain.services import RankedSearchPage
from catalog_search.api.v1 import schemas as api


def domain_document_to_api(document: domain.IndexDocument) -> api.Asset:
    """
    Convert an IndexDocument projection to an API Asset model.

    Args:
        document: Domain IndexDocument

    Returns:
        API Asset model
    """
    data = asdict(document)
    data.pop("search_text")
    data["tags"] = list(document.tags)
    return api.Asset(**data)


def highlights_to_api(highlights) -> dict[str, list[str]]:
    return {field: list(fragments) for field, fragments in highlights.items()}


def domain_hit_to_api(hit: domain.SearchHit) -> api.SearchHit:
    return api.SearchHit(
        asset=domain_document_to_api(hit.document),
        score=hit.score,
        rank=hit.rank,
        highlights=highlights_to_api(hit.highlights),
    )


def domain_page_to_api(page: domain_vo.SearchPage) -> api.SearchPage:
    """
    Convert a domain SearchPage to its API model.

    Args:
        page: Domain SearchPage value object

    Returns:
        API SearchPage model
    """
    return api.SearchPage(
        items=[domain_hit_to_api(hit) for hit in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
        total_pages=page.total_pages,
        source=page.source,
        degraded=page.degraded,
        degradation_reason=page.degradation_reason,
        latency_ms=page.latency_ms,
    )


def domain_weights_to_api(weights: domain_vo.RankingWeights) -> api.RankingWeights:
    return api.RankingWeights(**asdict(weights))


def domain_ranked_page_to_api(result: RankedSearchPage) -> api.IntelligentSearchPage:
    """
    Convert a re-ranked page to the intelligent search response model.

    Args:
        result: RankedSearchPage from the intelligent search service

    Returns:
        API IntelligentSearchPage model
    """
    page = result.page
    return api.IntelligentSearchPage(
        results=[
            api.RankedHit(
                asset=domain_document_to_api(ranked.document),
                score=ranked.hit.score,
                position=ranked.position,
                signals=api.SignalScores(**asdict(ranked.signals)),
                explanation=ranked.explanation,
                highlights=highlights_to_api(ranked.hit.highlights),
            )
            for ranked in result.ranked
        ],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
        total_pages=page.total_pages,
        source=page.source,
        degraded=page.degraded,
        degradation_reason=page.degradation_reason,
        latency_ms=page.latency_ms,
        weights=domain_weights_to_api(result.weights),
        sort_option=result.sort.value,
        variant=result.variant,
    )


def domain_suggestion_to_api(suggestion: domain_vo.Suggestion) -> api.Suggestion:
    return api.Suggestion(**asdict(suggestion))


def domain_stats_to_api(stats: domain_vo.IndexStats) -> api.IndexStats:
    return api.IndexStats(**asdict(stats))


def domain_performance_to_api(stats: domain_vo.SearchPerformanceStats) -> api.SearchPerformance:
    return api.SearchPerformance(**asdict(stats))


def domain_task_to_api(task: domain.SyncTask) -> api.SyncTask:
    return api.SyncTask(
        id=task.id,
        type=task.type.value,
        target_ids=list(task.target_ids),
        priority=task.priority,
        attempt=task.attempt,
        max_attempts=task.max_attempts,
        status=task.status.value,
        last_error=task.last_error,
    )


def domain_queue_to_api(
    status: domain_vo.QueueStatus,
    metrics: Optional[domain_vo.QueueMetrics] = None,
) -> api.QueueStatus:
    """
    Merge the queue snapshot and its cumulative counters into one model.

    Args:
        status: Current queue sizes and upcoming tasks
        metrics: Optional processing counters

    Returns:
        API QueueStatus model
    """
    metrics = metrics or domain_vo.QueueMetrics()
    return api.QueueStatus(
        ready=status.ready,
        delayed=status.delayed,
        queue_length=status.queue_length,
        processing=status.processing,
        dead_letters=status.dead_letters,
        upcoming=[domain_task_to_api(task) for task in status.upcoming],
        total_batches=metrics.total_batches,
        total_tasks=metrics.total_tasks,
        average_batch_ms=metrics.average_batch_ms,
        max_queue_length=metrics.max_queue_length,
    )


def domain_dead_letter_to_api(record: domain.DeadLetterRecord) -> api.DeadLetter:
    return api.DeadLetter(
        task=domain_task_to_api(record.task),
        error=record.error,
        failed_at=record.failed_at,
    )


def api_filters_to_domain(filters: api.SearchFilters) -> domain_vo.SearchFilters:
    """
    Convert API SearchFilters to the domain SearchFilters value object.

    Args:
        filters: API SearchFilters model

    Returns:
        Domain SearchFilters value object
    """
    return domain_vo.SearchFilters(
        statuses=tuple(filters.statuses),
        types=tuple(filters.types),
        category_id=filters.category_id,
        quality_score_min=filters.quality_score_min,
        quality_score_max=filters.quality_score_max,
    )


def api_request_to_domain(request: api.SearchRequest) -> domain_vo.SearchRequest:
    """
    Convert an API SearchRequest to the domain SearchRequest value object.

    Args:
        request: API SearchRequest model

    Returns:
        Domain SearchRequest value object
    """
    return domain_vo.SearchRequest(
        query=request.query,
        filters=api_filters_to_domain(request.filters),
        page=request.page,
        page_size=request.page_size,
        sort=domain_vo.SearchSort(request.sort),
    )


def api_weights_to_domain(weights: api.RankingWeights) -> domain_vo.RankingWeights:
    return domain_vo.RankingWeights(
        relevance=weights.relevance,
        popularity=weights.popularity,
        recency=weights.recency,
        personalization=weights.personalization,
        name=weights.name,
        version=weights.version,
    )


def api_context_to_domain(
    context: Optional[api.PersonalizationContext],
    user_id: Optional[str],
) -> Optional[domain_vo.PersonalizationContext]:
    if context is None:
        return None
    return domain_vo.PersonalizationContext(
        user_id=user_id,
        category_interactions=dict(context.category_interactions),
        tag_interactions=dict(context.tag_interactions),
    )


def api_variant_to_domain(variant: api.VariantIn) -> domain.Variant:
    return domain.Variant(
        name=variant.name,
        weights=api_weights_to_domain(variant.weights),
        traffic=variant.traffic,
    )


def domain_experiment_to_api(experiment: domain.Experiment) -> api.Experiment:
    return api.Experiment(
        id=experiment.id,
        name=experiment.name,
        description=experiment.description,
        status=experiment.status.value,
        variants=[
            api.VariantIn(
                name=v.name,
                traffic=v.traffic,
                weights=domain_weights_to_api(v.weights),
            )
            for v in experiment.variants
        ],
        start_date=experiment.start_date,
        end_date=experiment.end_date,
        stopped_at=experiment.stopped_at,
        stop_reason=experiment.stop_reason,
    )


def domain_assignment_to_api(assignment: domain.ExperimentAssignment) -> api.Assignment:
    return api.Assignment(
        experiment_id=assignment.experiment_id,
        user_id=assignment.user_id,
        variant=assignment.variant,
        weights=domain_weights_to_api(assignment.weights),
        assigned_at=assignment.assigned_at,
        forced=assignment.forced,
    )


def api_outcome_to_domain(request: api.OutcomeRequest) -> domain_vo.OutcomeMetrics:
    return domain_vo.OutcomeMetrics(
        satisfaction=request.satisfaction,
        click_through_rate=request.click_through_rate,
        response_time_ms=request.response_time_ms,
        converted=request.converted,
    )


def domain_report_to_api(report: domain_vo.ExperimentReport) -> api.ExperimentReport:
    return api.ExperimentReport(
        experiment_id=report.experiment_id,
        status=report.status,
        variants=[api.VariantStats(**asdict(v)) for v in report.variants],
        comparisons=[api.VariantComparison(**asdict(c)) for c in report.comparisons],
        winner=report.winner,
        recommendation=report.recommendation,
    )
