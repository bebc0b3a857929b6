"""
Personal ranking endpoints.

A ranking is built interactively: POST /sessions opens a comparison
session for a title inside the chosen tier, then each answer narrows the
position until the entry is committed. The user is identified by the
X-User-ID header set by the gateway.
"""

from fastapi import APIRouter, Depends, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from cannes.core.auth import get_current_user_id
from cannes.db import schemas
from cannes.services.ranking_service import RankingService, RankingStep, get_ranking_service
from cannes.services.tiers import MediaType

# Starting sessions hits the store and the tier; keep it bounded per client
limiter = Limiter(key_func=get_remote_address)

router = APIRouter()


def _step_response(step: RankingStep) -> schemas.RankingStepResponse:
    session = step.session
    if step.done:
        status_label = "committed"
    elif step.prompt is None:
        status_label = "awaiting_commit"
    else:
        status_label = "awaiting_answer"

    prompt = None
    if step.prompt is not None:
        prompt = schemas.ComparisonPrompt(
            candidate_title_id=step.prompt.candidate_title_id,
            existing_title_id=step.prompt.existing_title_id,
            existing_rank_index=step.prompt.existing_rank_index,
            comparison_number=step.prompt.comparison_number,
        )

    return schemas.RankingStepResponse(
        session_id=session.session_id,
        title_id=session.title_id,
        media_type=session.media_type.value,
        tier=session.tier.value,
        status=status_label,
        prompt=prompt,
        entry=schemas.RankedEntryResponse.model_validate(step.entry) if step.entry else None,
        comparisons=len(session.log),
        tied_with=session.result.tied_with if session.result else None,
    )


@router.post("/sessions", response_model=schemas.RankingStepResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def start_ranking(
    request: Request,
    body: schemas.StartRankingRequest,
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    """Open a comparison session (or commit at once if the tier is empty)."""
    step = await service.start_ranking(user_id, body.title_id, body.media_type, body.tier)
    return _step_response(step)


@router.get("/sessions/current", response_model=schemas.RankingStepResponse)
async def current_prompt(
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    return _step_response(await service.current_prompt(user_id))


@router.post("/sessions/current/answer", response_model=schemas.RankingStepResponse)
async def answer_prompt(
    body: schemas.AnswerRequest,
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    """Answer the pending comparison; commits the entry once the position is known."""
    return _step_response(await service.answer(user_id, body.answer))


@router.post("/sessions/current/commit", response_model=schemas.RankingStepResponse)
async def commit_session(
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    """Retry writing a finished session after a failed commit."""
    return _step_response(await service.commit_pending(user_id))


@router.delete("/sessions/current", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_session(
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    await service.cancel(user_id)


@router.get("", response_model=schemas.RankingListResponse)
async def list_rankings(
    media_type: MediaType | None = Query(default=None, description="Only this media type"),
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    """The user's rankings: Liked, then Neutral, then Disliked, each best first."""
    entries = await service.list_rankings(user_id, media_type)
    return schemas.RankingListResponse(
        user_id=user_id,
        media_type=media_type.value if media_type else None,
        entries=[schemas.RankedEntryResponse.model_validate(e) for e in entries],
    )


@router.delete("/{title_id}", response_model=schemas.EntryRemovedResponse)
async def delete_entry(
    title_id: str,
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    mutation = await service.delete_entry(user_id, title_id)
    removed = next((d for d in mutation.deltas if d.title_id == title_id), None)
    return schemas.EntryRemovedResponse(
        title_id=title_id,
        removed_score=removed.old_score if removed else None,
        shifted=sum(1 for d in mutation.deltas if d.title_id != title_id),
    )


@router.delete("", response_model=schemas.AccountDeletionResponse)
async def delete_account(
    user_id: str = Depends(get_current_user_id),
    service: RankingService = Depends(get_ranking_service),
):
    """Delete every ranking of the user and finalize account removal."""
    deletion = await service.delete_account(user_id)
    return schemas.AccountDeletionResponse(
        user_id=deletion.user_id,
        removed_title_ids=deletion.removed_title_ids,
        identity_notified=deletion.identity_notified,
    )
