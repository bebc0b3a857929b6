"""
Ranking operations exposed to the API and to collaborators.

RankingService wires the comparison engine, the repository, the aggregate
service and the external collaborators together:

    start_ranking -> prompts ... -> answer -> committed entry
                                              + aggregate deltas applied
                                              + follower notification

Aggregate deltas travel through the outbox written by the repository. After
each operation this user's pending deltas are drained right away; if that
fails they stay in the outbox for the scheduled drain, except on account
deletion, where all deltas must be applied before the identity service is
told to finish removing the user.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from cannes.core.errors import RankingError, SessionNotFound
from cannes.core.session_store import SessionStore
from cannes.db.models import RankedEntry
from cannes.services.aggregate_service import AggregateRatingService
from cannes.services.collaborators import IdentityClient, NotificationDispatcher
from cannes.services.comparison_engine import (
    Answer,
    ComparisonEngine,
    ComparisonRequest,
    ComparisonSession,
)
from cannes.services.ranking_repository import RankingRepository, TierMutation
from cannes.services.tiers import MediaType, SentimentTier

logger = logging.getLogger(__name__)


@dataclass
class RankingStep:
    """Where a ranking stands after a call: a prompt to answer, or the committed entry."""

    session: ComparisonSession
    prompt: ComparisonRequest | None = None
    entry: RankedEntry | None = None
    mutation: TierMutation | None = None

    @property
    def done(self) -> bool:
        return self.entry is not None


@dataclass
class AccountDeletion:
    user_id: str
    removed_title_ids: list[str] = field(default_factory=list)
    identity_notified: bool = False


class RankingService:
    def __init__(
        self,
        repository: RankingRepository | None = None,
        aggregates: AggregateRatingService | None = None,
        store: SessionStore | None = None,
        notifier: NotificationDispatcher | None = None,
        identity: IdentityClient | None = None,
    ):
        self.repository = repository or RankingRepository()
        self.aggregates = aggregates or AggregateRatingService()
        self.engine = ComparisonEngine(self.repository, store)
        self.notifier = notifier or NotificationDispatcher()
        self.identity = identity or IdentityClient()

    # ==================== Comparison flow ====================

    async def start_ranking(
        self,
        user_id: str,
        title_id: str,
        media_type: MediaType | str,
        tier: SentimentTier | str,
    ) -> RankingStep:
        """Open a comparison session; commits at once when the tier has nothing to compare against."""
        session = await self.engine.begin_insertion(
            user_id, title_id, MediaType(media_type), SentimentTier.parse(tier),
        )
        if session.finished:
            return await self._commit(session)
        return RankingStep(session=session, prompt=session.next_prompt())

    async def answer(self, user_id: str, answer: Answer | str) -> RankingStep:
        session = await self.engine.resolve(user_id, answer)
        if session.finished:
            return await self._commit(session)
        return RankingStep(session=session, prompt=session.next_prompt())

    async def current_prompt(self, user_id: str) -> RankingStep:
        """The open session and its pending prompt (none if only the write is outstanding)."""
        session = await self.engine.current(user_id)
        prompt = None if session.finished else session.next_prompt()
        return RankingStep(session=session, prompt=prompt)

    async def commit_pending(self, user_id: str) -> RankingStep:
        """Retry the write of a session whose search finished but whose commit failed."""
        session = await self.engine.current(user_id)
        return await self._commit(session)

    async def cancel(self, user_id: str) -> None:
        await self.engine.cancel(user_id)

    async def _commit(self, session: ComparisonSession) -> RankingStep:
        async def write(position: int) -> TierMutation:
            # Decided at write time: the entry may have been added or removed since the session began
            if await self.repository.get_entry(session.user_id, session.title_id) is not None:
                return await self.repository.replace(
                    session.user_id, session.title_id, session.media_type, session.tier, position,
                )
            return await self.repository.insert(
                session.user_id, session.tier, position, session.title_id, session.media_type,
            )

        mutation = await self.engine.commit(session, write)
        entry = mutation.entry
        await self._settle(session.user_id)
        await self.notifier.title_rated(session.user_id, session.title_id, entry.score)

        logger.info(
            f"{session.user_id} ranked {session.title_id} #{entry.rank_index + 1} in "
            f"{entry.media_type}/{entry.tier} (score {entry.score}, {len(mutation.deltas)} deltas)"
        )
        return RankingStep(session=session, entry=entry, mutation=mutation)

    # ==================== Entries ====================

    async def list_rankings(
        self,
        user_id: str,
        media_type: MediaType | str | None = None,
    ) -> list[RankedEntry]:
        return await self.repository.list_for_user(user_id, media_type)

    async def delete_entry(self, user_id: str, title_id: str) -> TierMutation:
        mutation = await self.repository.remove(user_id, None, title_id)
        await self._settle(user_id)
        await self.notifier.title_removed(user_id, title_id)
        return mutation

    async def delete_account(self, user_id: str) -> AccountDeletion:
        """Remove every ranking of the user, apply all deltas, then finalize with identity.

        Safe to re-run after a partial failure: entries already removed are
        not removed again and leftover deltas are drained on the next run.
        """
        try:
            await self.engine.cancel(user_id)
        except SessionNotFound:
            pass

        mutation = await self.repository.remove_all_for_user(user_id)
        await self.aggregates.drain_pending(user_id)
        identity_notified = await self.identity.remove_user(user_id)

        removed = [delta.title_id for delta in mutation.deltas if delta.new_score is None]
        logger.info(f"Account {user_id} deleted: {len(removed)} rankings removed")
        return AccountDeletion(
            user_id=user_id,
            removed_title_ids=removed,
            identity_notified=identity_notified,
        )

    async def friend_ratings(self, title_id: str, friend_ids: list[str]) -> list[RankedEntry]:
        """Entries of the given users for one title, best score first."""
        return await self.repository.entries_for_title(title_id, user_ids=friend_ids)

    async def recompute_aggregate(self, title_id: str):
        return await self.aggregates.recompute_aggregate(title_id)

    async def _settle(self, user_id: str) -> None:
        try:
            await self.aggregates.drain_pending(user_id)
        except (RankingError, SQLAlchemyError) as e:
            logger.warning(
                f"Deferred aggregate update for {user_id} to the scheduled drain: "
                f"{type(e).__name__}: {e}"
            )


# Singleton service used by the API and scheduled jobs
_service: RankingService | None = None


def get_ranking_service() -> RankingService:
    """Get the shared RankingService (FastAPI dependency; override in tests)."""
    global _service
    if _service is None:
        _service = RankingService()
    return _service
