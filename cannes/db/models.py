"""
SQLAlchemy ORM models for rankings and community aggregates.

============================================================================
WHO WRITES WHAT
============================================================================
- RankedEntry / RankingList: written ONLY by RankingRepository, one list
  (user, media type, tier) per transaction. rank_index is dense 0..N-1
  within a list and score is derived from it; never edit either by hand.
- AggregateDeltaOutbox: written in the same transaction as the entries it
  describes; drained (row deleted + increment applied) by
  AggregateRatingService.
- AggregateRating: mutated ONLY through atomic increments or a full
  recompute. Rows with rating_count 0 are deleted, never kept at 0/0.
============================================================================
"""

from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Float, DateTime, Index

from cannes.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RankedEntry(Base):
    """One title in one user's personal ranking."""

    __tablename__ = "ranked_entries"

    user_id = Column(String(128), primary_key=True)
    title_id = Column(String(64), primary_key=True)  # External metadata id, e.g. TMDB "27205"
    media_type = Column(String(10), nullable=False)  # "movie" or "tv"
    tier = Column(String(10), nullable=False)  # "liked", "neutral", "disliked"
    rank_index = Column(Integer, nullable=False)  # 0 = best within the list
    score = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_ranked_entries_list", "user_id", "media_type", "tier", "rank_index"),
        Index("idx_ranked_entries_title", "title_id"),
    )


class RankingList(Base):
    """Optimistic-concurrency version for one (user, media type, tier) list.

    Every mutation of the list bumps version with a conditional UPDATE; a
    writer that loses the race sees rowcount 0 and retries from scratch.
    """

    __tablename__ = "ranking_lists"

    user_id = Column(String(128), primary_key=True)
    media_type = Column(String(10), primary_key=True)
    tier = Column(String(10), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AggregateRating(Base):
    """Community rating for a title, derived from all users' current scores."""

    __tablename__ = "aggregate_ratings"

    title_id = Column(String(64), primary_key=True)
    media_type = Column(String(10), nullable=False)
    sum_of_scores = Column(Float, nullable=False, default=0.0)
    rating_count = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_aggregate_ratings_media", "media_type"),
    )


class AggregateDeltaOutbox(Base):
    """A score delta recorded with its tier mutation and not yet applied."""

    __tablename__ = "aggregate_delta_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    title_id = Column(String(64), nullable=False)
    media_type = Column(String(10), nullable=False)
    old_score = Column(Float)  # None = new contributor
    new_score = Column(Float)  # None = contributor removed
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_delta_outbox_user", "user_id"),
    )
