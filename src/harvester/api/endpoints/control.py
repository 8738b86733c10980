"""
Control surface endpoints.

Operators trigger seed runs and read pipeline status here. Raw scraping
errors only show up in dead-letter diagnostics, never in status.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from harvester.api.deps import RuntimeDep
from harvester.core.logging import get_logger
from harvester.schemas.common import ErrorResponse
from harvester.schemas.control import (
    AlertResponse,
    DeadLetterResponse,
    RateLimitResponse,
    ResolveDeadLetterRequest,
    SeedRequest,
    SeedResponse,
    SourceStatusResponse,
    StatusResponse,
)

logger = get_logger(__name__)
router = APIRouter()


@router.post(
    "/seed",
    response_model=SeedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse, "description": "Unknown source type"}},
)
async def trigger_seed(request: SeedRequest, runtime: RuntimeDep) -> SeedResponse:
    """
    Queue work items for the requested sources.

    Items already queued, in flight, unsupported or recently completed are
    counted as skipped.
    """
    logger.info("Seed requested", mode=request.mode, sources=request.sources, force=request.force)
    result = await runtime.seeder.seed(
        request.mode,
        sources=request.sources,
        professions=request.professions,
        force=request.force,
    )
    return SeedResponse(**result.as_dict())


@router.get("/status", response_model=StatusResponse)
async def get_status(
    runtime: RuntimeDep,
    source_type: str | None = None,
) -> StatusResponse:
    """Work item counts by status and rate-limit state, per source."""
    summary = await runtime.store.status_summary()
    limits = {limit.source_type: limit for limit in await runtime.store.list_rate_limits()}

    source_types = sorted(set(summary) | set(limits))
    if source_type:
        source_types = [s for s in source_types if s == source_type]

    sources = []
    for name in source_types:
        counts = summary.get(name, {})
        limit = limits.get(name)
        sources.append(
            SourceStatusResponse(
                source_type=name,
                counts=counts,
                total=sum(counts.values()),
                rate_limit=RateLimitResponse.model_validate(limit) if limit else None,
            )
        )

    return StatusResponse(
        sources=sources,
        queue_depth=await runtime.queue.depth(),
        open_dead_letters=await runtime.queue.count_dead_letters(),
    )


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    runtime: RuntimeDep,
    include_resolved: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
) -> list[DeadLetterResponse]:
    entries = await runtime.queue.list_dead_letters(include_resolved=include_resolved, limit=limit)
    return [DeadLetterResponse.model_validate(entry) for entry in entries]


@router.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    runtime: RuntimeDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[AlertResponse]:
    """Most recent coordinator alerts first."""
    return [AlertResponse.model_validate(alert) for alert in await runtime.store.list_alerts(limit)]


@router.post(
    "/dead-letters/{dead_letter_id}/resolve",
    response_model=DeadLetterResponse,
    responses={404: {"model": ErrorResponse, "description": "Dead letter not found"}},
)
async def resolve_dead_letter(
    dead_letter_id: UUID,
    request: ResolveDeadLetterRequest,
    runtime: RuntimeDep,
) -> DeadLetterResponse:
    """Close a dead letter once an operator has dealt with it."""
    entry = await runtime.queue.resolve_dead_letter(dead_letter_id, request.resolved_by, request.notes)
    return DeadLetterResponse.model_validate(entry)
