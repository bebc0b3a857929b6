"""
Per-user ranking lists.

A ranking list is every entry of one (user, media type, tier). Each mutation
runs as one transaction that:

1. claims the list by bumping its RankingList.version with a conditional
   UPDATE (a concurrent writer makes the UPDATE match nothing; the whole
   transaction is then retried with backoff),
2. loads the list, checks that rank indices are dense and re-indexes it if
   they are not,
3. applies the edit, re-indexes 0..N-1 and re-scores every entry,
4. writes one outbox row per score delta for the aggregate service.

Nobody ever observes a list with half-shifted indices or stale scores, and a
delta exists in the outbox exactly when the entry change it describes was
committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, NamedTuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cannes.config import Settings, get_settings
from cannes.core.errors import (
    EntryAlreadyRanked,
    EntryNotFound,
    TierInvariantViolation,
    TierWriteConflict,
)
from cannes.core.retry import RetryConfig, retry_async
from cannes.db.models import AggregateDeltaOutbox, RankedEntry, RankingList
from cannes.services.scoring import ScoreCalculator
from cannes.services.tiers import MediaType, SentimentTier

logger = logging.getLogger(__name__)


class ListKey(NamedTuple):
    media_type: str
    tier: str


@dataclass(frozen=True)
class ScoreDelta:
    """How one user's contribution to a title's aggregate changed."""

    title_id: str
    media_type: str
    old_score: float | None
    new_score: float | None


@dataclass
class TierMutation:
    """Outcome of one committed list mutation."""

    entry: RankedEntry | None
    entries: list[RankedEntry] = field(default_factory=list)
    deltas: list[ScoreDelta] = field(default_factory=list)
    outbox_ids: list[int] = field(default_factory=list)


Lists = dict[ListKey, list[RankedEntry]]
Edit = Callable[[AsyncSession, Lists], Awaitable[RankedEntry | None]]


def check_dense(user_id: str, key: ListKey, entries: list[RankedEntry]) -> None:
    """Raise TierInvariantViolation unless rank indices are exactly 0..N-1 in order."""
    indices = [entry.rank_index for entry in entries]
    if indices != list(range(len(entries))):
        raise TierInvariantViolation(user_id, key.media_type, key.tier, indices)


def list_key(media_type: MediaType | str, tier: SentimentTier | str) -> ListKey:
    return ListKey(MediaType(media_type).value, SentimentTier.parse(tier).value)


class RankingRepository:
    """Owns ranked_entries and the list version rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        calculator: ScoreCalculator | None = None,
        retry_config: RetryConfig | None = None,
        settings: Settings | None = None,
    ):
        if session_factory is None:
            from cannes.db.database import async_session
            session_factory = async_session
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.calculator = calculator or ScoreCalculator(self.settings)
        self.retry_config = retry_config or RetryConfig.for_storage()

    # ==================== Reads ====================

    async def get_entry(self, user_id: str, title_id: str) -> RankedEntry | None:
        async with self.session_factory() as db:
            return await db.get(RankedEntry, (user_id, title_id))

    async def list_tier(
        self,
        user_id: str,
        media_type: MediaType | str,
        tier: SentimentTier | str,
    ) -> list[RankedEntry]:
        """Ordered entries of one list; a non-dense list is repaired first."""
        key = list_key(media_type, tier)
        async with self.session_factory() as db:
            entries = await self._load_list(db, user_id, key)
        try:
            check_dense(user_id, key, entries)
            return entries
        except TierInvariantViolation as e:
            logger.warning(f"{e.message} - repairing before use")

        async def no_edit(db: AsyncSession, lists: Lists) -> None:
            return None

        mutation = await retry_async(
            self._mutate_once, user_id, [key], no_edit, config=self.retry_config,
        )
        return mutation.entries

    async def list_for_user(
        self,
        user_id: str,
        media_type: MediaType | str | None = None,
    ) -> list[RankedEntry]:
        """All entries of a user, Liked before Neutral before Disliked, then by rank."""
        async with self.session_factory() as db:
            query = select(RankedEntry).where(RankedEntry.user_id == user_id)
            if media_type is not None:
                query = query.where(RankedEntry.media_type == MediaType(media_type).value)
            result = await db.execute(query)
            entries = list(result.scalars().all())
        return sorted(
            entries,
            key=lambda e: (e.media_type, -SentimentTier(e.tier).strength, e.rank_index),
        )

    async def entries_for_title(
        self,
        title_id: str,
        user_ids: list[str] | None = None,
    ) -> list[RankedEntry]:
        if user_ids is not None and not user_ids:
            return []
        async with self.session_factory() as db:
            query = select(RankedEntry).where(RankedEntry.title_id == title_id)
            if user_ids is not None:
                query = query.where(RankedEntry.user_id.in_(user_ids))
            result = await db.execute(query.order_by(RankedEntry.score.desc()))
            return list(result.scalars().all())

    # ==================== Mutations ====================

    async def insert(
        self,
        user_id: str,
        tier: SentimentTier | str,
        index: int,
        title_id: str,
        media_type: MediaType | str,
    ) -> TierMutation:
        """Insert a new title at ``index`` (clamped to the list), shifting later entries down."""
        key = list_key(media_type, tier)

        async def edit(db: AsyncSession, lists: Lists) -> RankedEntry:
            entries = lists[key]
            position = max(0, min(index, len(entries)))
            entry = RankedEntry(
                user_id=user_id,
                title_id=title_id,
                media_type=key.media_type,
                tier=key.tier,
                rank_index=position,
                score=0.0,
                created_at=datetime.now(timezone.utc),
            )
            entries.insert(position, entry)
            db.add(entry)
            return entry

        async def attempt() -> TierMutation:
            if await self.get_entry(user_id, title_id) is not None:
                raise EntryAlreadyRanked(user_id, title_id)
            return await self._mutate_once(user_id, [key], edit)

        mutation = await retry_async(attempt, config=self.retry_config)
        logger.debug(f"Inserted {title_id} for {user_id} into {key.media_type}/{key.tier}")
        return mutation

    async def remove(
        self,
        user_id: str,
        tier: SentimentTier | str | None,
        title_id: str,
    ) -> TierMutation:
        """Remove a title, shifting later entries up. ``tier=None`` means wherever it is."""

        async def attempt() -> TierMutation:
            existing = await self.get_entry(user_id, title_id)
            if existing is None or (tier is not None and existing.tier != SentimentTier.parse(tier).value):
                raise EntryNotFound(user_id, title_id)
            key = ListKey(existing.media_type, existing.tier)

            async def edit(db: AsyncSession, lists: Lists) -> RankedEntry:
                entry = _take(lists[key], user_id, title_id)
                await db.delete(entry)
                return entry

            return await self._mutate_once(user_id, [key], edit)

        return await retry_async(attempt, config=self.retry_config)

    async def replace(
        self,
        user_id: str,
        title_id: str,
        media_type: MediaType | str,
        tier: SentimentTier | str,
        index: int,
    ) -> TierMutation:
        """Re-rank: move the title from its current list to ``index`` of the target list.

        ``index`` refers to the target list without the title in it. Both
        lists change in one transaction and the title keeps its created_at.
        """
        target = list_key(media_type, tier)

        async def attempt() -> TierMutation:
            existing = await self.get_entry(user_id, title_id)
            if existing is None:
                raise EntryNotFound(user_id, title_id)
            source = ListKey(existing.media_type, existing.tier)

            async def edit(db: AsyncSession, lists: Lists) -> RankedEntry:
                entry = _take(lists[source], user_id, title_id)
                entries = lists[target]
                position = max(0, min(index, len(entries)))
                entry.media_type = target.media_type
                entry.tier = target.tier
                entries.insert(position, entry)
                return entry

            return await self._mutate_once(user_id, sorted({source, target}), edit)

        return await retry_async(attempt, config=self.retry_config)

    async def remove_all_for_user(self, user_id: str) -> TierMutation:
        """Remove every entry of the user across all lists (account deletion)."""

        async def edit(db: AsyncSession, lists: Lists) -> None:
            for entries in lists.values():
                for entry in entries:
                    await db.delete(entry)
                entries.clear()
            return None

        async def attempt() -> TierMutation:
            keys = await self._user_list_keys(user_id)
            if not keys:
                return TierMutation(entry=None)
            return await self._mutate_once(user_id, keys, edit)

        mutation = await retry_async(attempt, config=self.retry_config)
        logger.info(f"Removed {len(mutation.deltas)} ranked entries of user {user_id}")
        return mutation

    # ==================== Internals ====================

    async def _user_list_keys(self, user_id: str) -> list[ListKey]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RankedEntry.media_type, RankedEntry.tier)
                .where(RankedEntry.user_id == user_id)
                .distinct()
            )
            return sorted(ListKey(media_type, tier) for media_type, tier in result.all())

    async def _mutate_once(self, user_id: str, keys: list[ListKey], edit: Edit) -> TierMutation:
        """One attempt at a list mutation; raises TierWriteConflict on a lost race."""
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    # Claimed in sorted order so two multi-list writers cannot deadlock
                    for key in keys:
                        await self._claim_list(db, user_id, key)

                    lists: Lists = {}
                    for key in keys:
                        entries = await self._load_list(db, user_id, key)
                        try:
                            check_dense(user_id, key, entries)
                        except TierInvariantViolation as e:
                            logger.warning(f"{e.message} - re-indexing")
                        lists[key] = entries

                    before = _scores(lists)
                    entry = await edit(db, lists)
                    for key, entries in lists.items():
                        self._rescore(key, entries)

                    primary = entry.title_id if entry is not None else None
                    deltas = self._deltas(before, _scores(lists), primary)
                    outbox = [
                        AggregateDeltaOutbox(
                            user_id=user_id,
                            title_id=delta.title_id,
                            media_type=delta.media_type,
                            old_score=delta.old_score,
                            new_score=delta.new_score,
                        )
                        for delta in deltas
                    ]
                    db.add_all(outbox)
                    await db.flush()
                    outbox_ids = [row.id for row in outbox]
        except (IntegrityError, OperationalError) as e:
            # Duplicate list row or lock contention from a concurrent writer
            raise TierWriteConflict(f"Concurrent write on lists of user {user_id}: {e.orig}") from e

        return TierMutation(
            entry=entry,
            entries=[e for key in keys for e in lists[key]],
            deltas=deltas,
            outbox_ids=outbox_ids,
        )

    async def _claim_list(self, db: AsyncSession, user_id: str, key: ListKey) -> None:
        """Bump the list version, failing if another writer got there first."""
        row = await db.get(RankingList, (user_id, key.media_type, key.tier))
        if row is None:
            db.add(RankingList(user_id=user_id, media_type=key.media_type, tier=key.tier, version=0))
            await db.flush()
            version = 0
        else:
            version = row.version

        result = await db.execute(
            update(RankingList)
            .where(
                RankingList.user_id == user_id,
                RankingList.media_type == key.media_type,
                RankingList.tier == key.tier,
                RankingList.version == version,
            )
            .values(version=version + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TierWriteConflict(
                f"List {user_id}/{key.media_type}/{key.tier} changed concurrently (version {version})"
            )

    async def _load_list(self, db: AsyncSession, user_id: str, key: ListKey) -> list[RankedEntry]:
        result = await db.execute(
            select(RankedEntry)
            .where(
                RankedEntry.user_id == user_id,
                RankedEntry.media_type == key.media_type,
                RankedEntry.tier == key.tier,
            )
            .order_by(RankedEntry.rank_index, RankedEntry.created_at)
        )
        return list(result.scalars().all())

    def _rescore(self, key: ListKey, entries: list[RankedEntry]) -> None:
        scores = self.calculator.scores_for(SentimentTier(key.tier), len(entries))
        for index, (entry, score) in enumerate(zip(entries, scores)):
            if entry.rank_index != index:
                entry.rank_index = index
            if entry.score != score:
                entry.score = score

    def _deltas(
        self,
        before: dict[str, tuple[float, str]],
        after: dict[str, tuple[float, str]],
        primary: str | None,
    ) -> list[ScoreDelta]:
        """Deltas for every title whose stored score changed, edited title first.

        Scores are already rounded to ``score_precision``, so any difference
        is a real change the aggregate has to follow.
        """
        deltas: list[ScoreDelta] = []
        for title_id in list(before) + [t for t in after if t not in before]:
            old = before.get(title_id)
            new = after.get(title_id)
            if old is not None and new is not None and new[0] == old[0]:
                continue
            media_type = (new or old)[1]
            deltas.append(ScoreDelta(
                title_id=title_id,
                media_type=media_type,
                old_score=old[0] if old else None,
                new_score=new[0] if new else None,
            ))

        deltas.sort(key=lambda d: d.title_id != primary)
        return deltas


def _scores(lists: Lists) -> dict[str, tuple[float, str]]:
    return {
        entry.title_id: (entry.score, entry.media_type)
        for entries in lists.values()
        for entry in entries
    }


def _take(entries: list[RankedEntry], user_id: str, title_id: str) -> RankedEntry:
    for position, entry in enumerate(entries):
        if entry.title_id == title_id:
            return entries.pop(position)
    raise EntryNotFound(user_id, title_id)
