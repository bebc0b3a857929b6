"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from cannes.services.comparison_engine import Answer
from cannes.services.tiers import MediaType, SentimentTier


# ============ Ranking Schemas ============

class StartRankingRequest(BaseModel):
    """Rank a title: the user picked a sentiment tier, comparisons place it inside."""
    title_id: str = Field(min_length=1, max_length=64)
    media_type: MediaType = MediaType.MOVIE
    tier: SentimentTier

    @field_validator("tier", mode="before")
    @classmethod
    def parse_tier(cls, v):
        # Also accepts the labels shown in the app ("I liked it!", "It was fine", ...)
        return SentimentTier.parse(v)


class AnswerRequest(BaseModel):
    answer: Answer


class ComparisonPrompt(BaseModel):
    """Is the candidate better than the existing entry?"""
    candidate_title_id: str
    existing_title_id: str
    existing_rank_index: int
    comparison_number: int


class RankedEntryResponse(BaseModel):
    user_id: str
    title_id: str
    media_type: str
    tier: str
    rank_index: int
    score: float
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class RankingStepResponse(BaseModel):
    """Either the next prompt to answer or the committed entry."""
    session_id: str
    title_id: str
    media_type: str
    tier: str
    status: str  # "awaiting_answer", "awaiting_commit" or "committed"
    prompt: ComparisonPrompt | None = None
    entry: RankedEntryResponse | None = None
    comparisons: int = 0
    tied_with: str | None = None


class RankingListResponse(BaseModel):
    user_id: str
    media_type: str | None = None
    entries: list[RankedEntryResponse]


class EntryRemovedResponse(BaseModel):
    title_id: str
    removed_score: float | None
    shifted: int  # Entries whose score changed because of the removal


class AccountDeletionResponse(BaseModel):
    user_id: str
    removed_title_ids: list[str]
    identity_notified: bool


# ============ Aggregate Schemas ============

class AggregateRatingResponse(BaseModel):
    title_id: str
    media_type: str
    sum_of_scores: float
    rating_count: int
    average_rating: float
    last_updated: datetime | None = None

    class Config:
        from_attributes = True


class GlobalRatingItem(BaseModel):
    title_id: str
    media_type: str
    average_rating: float
    rating_count: int
    confidence_adjusted_score: float

    class Config:
        from_attributes = True


class GlobalRatingsResponse(BaseModel):
    media_type: str
    global_mean: float
    prior_strength: float
    total_ratings: int
    total_titles: int
    ratings: list[GlobalRatingItem]


class FriendRatingsResponse(BaseModel):
    title_id: str
    ratings: list[RankedEntryResponse]
    average_score: float | None = None


# ============ Admin Schemas ============

class RecomputeResponse(BaseModel):
    title_id: str
    aggregate: AggregateRatingResponse | None


class RecomputeAllResponse(BaseModel):
    titles_recomputed: int


class DrainResponse(BaseModel):
    applied: int
    pending: int
