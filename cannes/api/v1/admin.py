"""Admin endpoints for aggregate repair and outbox maintenance."""

from fastapi import APIRouter, Depends

from cannes.core.auth import require_admin
from cannes.core.tasks import TaskManager
from cannes.db import schemas
from cannes.services.ranking_service import RankingService, get_ranking_service

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/aggregates/recompute", response_model=schemas.RecomputeAllResponse)
async def recompute_all(service: RankingService = Depends(get_ranking_service)):
    """Rebuild every aggregate from the current rankings."""
    count = await service.aggregates.recompute_all()
    return schemas.RecomputeAllResponse(titles_recomputed=count)


@router.post("/aggregates/{title_id}/recompute", response_model=schemas.RecomputeResponse)
async def recompute_aggregate(
    title_id: str,
    service: RankingService = Depends(get_ranking_service),
):
    """Rebuild one title's aggregate from the current rankings. Idempotent."""
    aggregate = await service.recompute_aggregate(title_id)
    return schemas.RecomputeResponse(
        title_id=title_id,
        aggregate=schemas.AggregateRatingResponse.model_validate(aggregate) if aggregate else None,
    )


@router.post("/outbox/drain", response_model=schemas.DrainResponse)
async def drain_outbox(service: RankingService = Depends(get_ranking_service)):
    """Apply every pending aggregate delta now."""
    applied = await service.aggregates.drain_pending()
    pending = await service.aggregates.pending_count()
    return schemas.DrainResponse(applied=applied, pending=pending)


@router.get("/status")
async def admin_status(service: RankingService = Depends(get_ranking_service)):
    """Pending deltas and background task state."""
    return {
        "pending_deltas": await service.aggregates.pending_count(),
        "tasks": TaskManager.get_instance().get_task_stats(),
    }
