"""Community rating endpoints (aggregates, leaderboards, friends)."""

from fastapi import APIRouter, Depends, HTTPException, Query

from cannes.db import schemas
from cannes.services.ranking_service import RankingService, get_ranking_service
from cannes.services.tiers import MediaType

MAX_FRIEND_IDS = 200

router = APIRouter()


@router.get("/global", response_model=schemas.GlobalRatingsResponse)
async def global_ratings(
    media_type: MediaType = Query(default=MediaType.MOVIE),
    limit: int = Query(default=50, ge=1, le=500),
    service: RankingService = Depends(get_ranking_service),
):
    """Titles ranked by confidence-adjusted community score."""
    board = await service.aggregates.global_ratings(media_type, limit=limit)
    return schemas.GlobalRatingsResponse(
        media_type=board.media_type,
        global_mean=board.global_mean,
        prior_strength=board.prior_strength,
        total_ratings=board.total_ratings,
        total_titles=board.total_titles,
        ratings=[schemas.GlobalRatingItem.model_validate(r) for r in board.ratings],
    )


@router.get("/{title_id}/aggregate", response_model=schemas.AggregateRatingResponse)
async def get_aggregate(
    title_id: str,
    service: RankingService = Depends(get_ranking_service),
):
    aggregate = await service.aggregates.get(title_id)
    if aggregate is None:
        raise HTTPException(status_code=404, detail=f"No ratings for title {title_id}")
    return aggregate


@router.get("/{title_id}/friends", response_model=schemas.FriendRatingsResponse)
async def friend_ratings(
    title_id: str,
    friend_ids: list[str] = Query(default=[], description="User ids to look up"),
    service: RankingService = Depends(get_ranking_service),
):
    """How the given users (typically the caller's friends) ranked a title."""
    if len(friend_ids) > MAX_FRIEND_IDS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_FRIEND_IDS} friend_ids")
    entries = await service.friend_ratings(title_id, friend_ids)
    average = round(sum(e.score for e in entries) / len(entries), 3) if entries else None
    return schemas.FriendRatingsResponse(
        title_id=title_id,
        ratings=[schemas.RankedEntryResponse.model_validate(e) for e in entries],
        average_score=average,
    )
