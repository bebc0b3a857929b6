"""
Community aggregate ratings.

Each title with at least one contributor has one aggregate_ratings row
holding sum_of_scores, rating_count and average_rating = sum / count.

Rows change only through:
- atomic increments (apply_delta / drain_pending), written as a single
  UPDATE ... SET sum = sum + :d so concurrent contributors never overwrite
  each other, or an upsert when the first contributor arrives;
- recompute_aggregate, which rebuilds a row from ranked_entries.

A row whose count drops to 0 is deleted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cannes.config import Settings, get_settings
from cannes.core.errors import AggregateWriteConflict
from cannes.core.retry import RetryConfig, retry_async
from cannes.db.models import AggregateDeltaOutbox, AggregateRating, RankedEntry
from cannes.services.tiers import MediaType

logger = logging.getLogger(__name__)


@dataclass
class GlobalRating:
    title_id: str
    media_type: str
    average_rating: float
    rating_count: int
    sum_of_scores: float
    confidence_adjusted_score: float


@dataclass
class GlobalRatings:
    """Confidence-adjusted leaderboard for one media type."""

    media_type: str
    global_mean: float
    prior_strength: float
    total_ratings: int
    total_titles: int
    ratings: list[GlobalRating]


def confidence_adjusted(sum_of_scores: float, count: int, mean: float, prior: float) -> float:
    """Average pulled towards ``mean`` as if ``prior`` extra ratings of ``mean`` existed."""
    return round((prior * mean + sum_of_scores) / (prior + count), 1)


def _upsert(db: AsyncSession):
    """Dialect ``insert`` supporting ON CONFLICT."""
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class AggregateRatingService:
    """Maintains aggregate_ratings from score deltas."""

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        retry_config: RetryConfig | None = None,
        settings: Settings | None = None,
    ):
        if session_factory is None:
            from cannes.db.database import async_session
            session_factory = async_session
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.retry_config = retry_config or RetryConfig.for_storage()

    # ==================== Reads ====================

    async def get(self, title_id: str) -> AggregateRating | None:
        async with self.session_factory() as db:
            return await db.get(AggregateRating, title_id)

    async def pending_count(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(select(func.count()).select_from(AggregateDeltaOutbox))
            return result.scalar_one()

    async def global_ratings(self, media_type: MediaType | str, limit: int = 50) -> GlobalRatings:
        """Titles of ``media_type`` ranked by confidence-adjusted score.

        The mean and the prior strength (median rating count) are taken over
        all aggregates of both media types.
        """
        media_type = MediaType(media_type).value
        async with self.session_factory() as db:
            result = await db.execute(
                select(AggregateRating).where(AggregateRating.rating_count > 0)
            )
            rows = list(result.scalars().all())

        total_score = sum(row.sum_of_scores for row in rows)
        total_ratings = sum(row.rating_count for row in rows)
        mean = total_score / total_ratings if total_ratings else self.settings.global_mean_fallback
        counts = sorted(row.rating_count for row in rows)
        prior = float(counts[len(counts) // 2]) if counts else self.settings.global_prior_fallback

        ratings = [
            GlobalRating(
                title_id=row.title_id,
                media_type=row.media_type,
                average_rating=row.average_rating,
                rating_count=row.rating_count,
                sum_of_scores=row.sum_of_scores,
                confidence_adjusted_score=confidence_adjusted(
                    row.sum_of_scores, row.rating_count, mean, prior
                ),
            )
            for row in rows
            if row.media_type == media_type
        ]
        ratings.sort(key=lambda r: (-r.confidence_adjusted_score, -r.rating_count, r.title_id))

        return GlobalRatings(
            media_type=media_type,
            global_mean=mean,
            prior_strength=prior,
            total_ratings=total_ratings,
            total_titles=len(rows),
            ratings=ratings[:limit],
        )

    # ==================== Increments ====================

    async def apply_delta(
        self,
        title_id: str,
        media_type: MediaType | str,
        old_score: float | None,
        new_score: float | None,
    ) -> None:
        """Apply one contributor change: (None, s) adds, (s, None) removes, (a, b) updates."""
        media_type = MediaType(media_type).value

        async def attempt():
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        await self._increment(db, title_id, media_type, old_score, new_score)
            except OperationalError as e:
                raise AggregateWriteConflict(title_id, str(e.orig)) from e

        await retry_async(attempt, config=self.retry_config)

    async def drain_pending(self, user_id: str | None = None) -> int:
        """Apply pending outbox deltas (optionally only one user's); returns how many.

        Each delta is claimed by deleting its outbox row in the same
        transaction that applies it, so concurrent drainers never apply a
        delta twice.
        """
        applied = 0
        batch_size = self.settings.outbox_batch_size
        while True:
            async with self.session_factory() as db:
                query = select(AggregateDeltaOutbox.id).order_by(AggregateDeltaOutbox.id).limit(batch_size)
                if user_id is not None:
                    query = query.where(AggregateDeltaOutbox.user_id == user_id)
                result = await db.execute(query)
                ids = list(result.scalars().all())

            for outbox_id in ids:
                if await retry_async(self._drain_one, outbox_id, config=self.retry_config):
                    applied += 1

            if len(ids) < batch_size:
                break

        if applied:
            logger.info(f"Applied {applied} pending aggregate deltas")
        return applied

    async def _drain_one(self, outbox_id: int) -> bool:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        delete(AggregateDeltaOutbox)
                        .where(AggregateDeltaOutbox.id == outbox_id)
                        .returning(
                            AggregateDeltaOutbox.title_id,
                            AggregateDeltaOutbox.media_type,
                            AggregateDeltaOutbox.old_score,
                            AggregateDeltaOutbox.new_score,
                        )
                    )
                    row = result.first()
                    if row is None:
                        # Claimed by another drainer
                        return False
                    await self._increment(db, row.title_id, row.media_type, row.old_score, row.new_score)
                    return True
        except OperationalError as e:
            raise AggregateWriteConflict(f"outbox#{outbox_id}", str(e.orig)) from e

    async def _increment(
        self,
        db: AsyncSession,
        title_id: str,
        media_type: str,
        old_score: float | None,
        new_score: float | None,
    ) -> None:
        d_sum = (new_score or 0.0) - (old_score or 0.0)
        d_count = (new_score is not None) - (old_score is not None)
        if d_count == 0 and d_sum == 0:
            return

        now = datetime.now(timezone.utc)
        new_sum = AggregateRating.sum_of_scores + d_sum
        new_count = AggregateRating.rating_count + d_count

        if d_count > 0:
            insert = _upsert(db)
            stmt = insert(AggregateRating).values(
                title_id=title_id,
                media_type=media_type,
                sum_of_scores=d_sum,
                rating_count=d_count,
                average_rating=d_sum / d_count,
                last_updated=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[AggregateRating.title_id],
                set_={
                    "sum_of_scores": new_sum,
                    "rating_count": new_count,
                    "average_rating": new_sum / new_count,
                    "last_updated": now,
                },
            )
            await db.execute(stmt)
            return

        result = await db.execute(
            update(AggregateRating)
            .where(AggregateRating.title_id == title_id)
            .values(
                sum_of_scores=new_sum,
                rating_count=new_count,
                average_rating=case((new_count > 0, new_sum / new_count), else_=0.0),
                last_updated=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                f"No aggregate for title {title_id} to apply delta "
                f"{old_score} -> {new_score}; run a recompute to repair"
            )
            return

        if d_count < 0:
            await db.execute(
                delete(AggregateRating).where(
                    AggregateRating.title_id == title_id,
                    AggregateRating.rating_count <= 0,
                )
            )

    # ==================== Repair ====================

    async def recompute_aggregate(self, title_id: str) -> AggregateRating | None:
        """Rebuild one title's row from ranked_entries. Idempotent.

        Deltas still waiting in the outbox are subtracted, so draining them
        afterwards lands exactly on the current entries.
        """

        async def attempt():
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        return await self._recompute(db, title_id)
            except OperationalError as e:
                raise AggregateWriteConflict(title_id, str(e.orig)) from e

        return await retry_async(attempt, config=self.retry_config)

    async def _recompute(self, db: AsyncSession, title_id: str) -> AggregateRating | None:
        # Wait for in-flight drains of this title before reading
        await db.execute(
            select(AggregateRating.title_id)
            .where(AggregateRating.title_id == title_id)
            .with_for_update()
        )

        entries = (
            select(
                func.coalesce(func.sum(RankedEntry.score), 0.0).label("entry_sum"),
                func.count(RankedEntry.title_id).label("entry_count"),
                func.min(RankedEntry.media_type).label("entry_media"),
            )
            .where(RankedEntry.title_id == title_id)
            .subquery()
        )
        pending = (
            select(
                func.coalesce(
                    func.sum(
                        func.coalesce(AggregateDeltaOutbox.new_score, 0.0)
                        - func.coalesce(AggregateDeltaOutbox.old_score, 0.0)
                    ),
                    0.0,
                ).label("pending_sum"),
                func.coalesce(
                    func.sum(
                        case((AggregateDeltaOutbox.new_score.isnot(None), 1), else_=0)
                        - case((AggregateDeltaOutbox.old_score.isnot(None), 1), else_=0)
                    ),
                    0,
                ).label("pending_count"),
                func.min(AggregateDeltaOutbox.media_type).label("pending_media"),
            )
            .where(AggregateDeltaOutbox.title_id == title_id)
            .subquery()
        )
        result = await db.execute(select(entries, pending))
        entry_sum, entry_count, entry_media, pending_sum, pending_count, pending_media = result.one()

        total = float(entry_sum) - float(pending_sum)
        count = int(entry_count) - int(pending_count)
        media_type = entry_media or pending_media

        if count <= 0:
            await db.execute(delete(AggregateRating).where(AggregateRating.title_id == title_id))
            logger.info(f"Recomputed aggregate for {title_id}: no contributors")
            return None

        row = await db.get(AggregateRating, title_id)
        if row is None:
            row = AggregateRating(title_id=title_id, media_type=media_type)
            db.add(row)
        row.sum_of_scores = total
        row.rating_count = count
        row.average_rating = total / count
        row.last_updated = datetime.now(timezone.utc)
        if media_type:
            row.media_type = media_type
        await db.flush()

        logger.info(f"Recomputed aggregate for {title_id}: {count} ratings, average {row.average_rating:.3f}")
        return row

    async def recompute_all(self) -> int:
        """Recompute every title that has an aggregate row or ranked entries."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(AggregateRating.title_id).union(select(RankedEntry.title_id))
            )
            title_ids = sorted(result.scalars().all())

        logger.info(f"Recomputing {len(title_ids)} aggregates")
        for title_id in title_ids:
            await self.recompute_aggregate(title_id)
        return len(title_ids)
