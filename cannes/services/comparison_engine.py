"""
Interactive binary insertion of a title into one ranking tier.

The engine core (ComparisonSession) is a pure state machine: it holds the
tier snapshot and the search bounds, and it is advanced only by feeding it
answers. It performs no I/O, so the same session can be driven from an HTTP
handler, a test, or a CLI.

Search over the snapshot, bounds [lo, hi) starting at [0, size):

    mid = (lo + hi) // 2, ask "candidate vs snapshot[mid]"
    candidate_better   -> hi = mid
    existing_better    -> lo = mid + 1
    too_close_to_call  -> stop at mid; the candidate goes right after the
                          tied entry (final position mid + 1)

Without ties this needs at most ceil(log2(size + 1)) answers. A tie ends the
search early on purpose: users treat "too close to call" as a real outcome.

ComparisonEngine adds persistence around the state machine: snapshots come
from RankingRepository, live sessions sit in the session store (one per
user), and commit hands the final position back to the repository.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from cannes.core.errors import InvalidComparisonAnswer, RankingError, SessionConflict, SessionNotFound
from cannes.core.session_store import SessionStore, get_session_store
from cannes.services.tiers import MediaType, SentimentTier

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Answer(str, Enum):
    """Three-way answer to a comparison prompt."""

    CANDIDATE_BETTER = "candidate_better"
    EXISTING_BETTER = "existing_better"
    TOO_CLOSE_TO_CALL = "too_close_to_call"

    @classmethod
    def parse(cls, value: Any) -> "Answer":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidComparisonAnswer(value) from None


@dataclass(frozen=True)
class ComparisonRequest:
    """Prompt: is the candidate better than the entry at ``existing_rank_index``?"""

    session_id: str
    candidate_title_id: str
    existing_title_id: str
    existing_rank_index: int
    comparison_number: int
    lo: int
    hi: int


@dataclass(frozen=True)
class Done:
    """Search finished.

    ``index`` is where the search stopped. After a tie the candidate sits
    immediately after the tied entry, so ``position`` is ``index + 1``.
    """

    index: int
    comparisons: int = 0
    tied_with: str | None = None

    @property
    def position(self) -> int:
        return self.index + 1 if self.tied_with else self.index


@dataclass
class ComparisonRecord:
    existing_title_id: str
    existing_rank_index: int
    answer: str


@dataclass
class ComparisonSession:
    """State of one in-progress insertion."""

    user_id: str
    title_id: str
    media_type: MediaType
    tier: SentimentTier
    snapshot: list[str]
    lo: int = 0
    hi: int = 0
    log: list[ComparisonRecord] = field(default_factory=list)
    result: Done | None = None
    is_rerank: bool = False
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def start(
        cls,
        user_id: str,
        title_id: str,
        media_type: MediaType,
        tier: SentimentTier,
        snapshot: list[str],
        is_rerank: bool = False,
    ) -> "ComparisonSession":
        session = cls(
            user_id=user_id,
            title_id=title_id,
            media_type=MediaType(media_type),
            tier=SentimentTier.parse(tier),
            snapshot=list(snapshot),
            lo=0,
            hi=len(snapshot),
            is_rerank=is_rerank,
        )
        if not snapshot:
            session.result = Done(index=0)
        return session

    @property
    def finished(self) -> bool:
        return self.result is not None

    def next_prompt(self) -> ComparisonRequest | Done:
        if self.result is not None:
            return self.result
        mid = (self.lo + self.hi) // 2
        return ComparisonRequest(
            session_id=self.session_id,
            candidate_title_id=self.title_id,
            existing_title_id=self.snapshot[mid],
            existing_rank_index=mid,
            comparison_number=len(self.log) + 1,
            lo=self.lo,
            hi=self.hi,
        )

    def resolve(self, answer: Answer | str) -> ComparisonRequest | Done:
        """Apply one answer to the pending prompt and return the next state."""
        answer = Answer.parse(answer)
        if self.result is not None:
            raise RankingError(f"Comparison session {self.session_id} is already finished")

        mid = (self.lo + self.hi) // 2
        self.log.append(ComparisonRecord(self.snapshot[mid], mid, answer.value))

        if answer is Answer.TOO_CLOSE_TO_CALL:
            self.result = Done(index=mid, comparisons=len(self.log), tied_with=self.snapshot[mid])
            return self.result

        if answer is Answer.CANDIDATE_BETTER:
            self.hi = mid
        else:
            self.lo = mid + 1

        if self.lo >= self.hi:
            self.result = Done(index=self.lo, comparisons=len(self.log))
        return self.next_prompt()

    def require_done(self) -> Done:
        if self.result is None:
            raise RankingError(f"Comparison session {self.session_id} still needs answers")
        return self.result

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["media_type"] = self.media_type.value
        data["tier"] = self.tier.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComparisonSession":
        data = dict(data)
        data["media_type"] = MediaType(data["media_type"])
        data["tier"] = SentimentTier(data["tier"])
        data["log"] = [ComparisonRecord(**record) for record in data.get("log", [])]
        if data.get("result") is not None:
            data["result"] = Done(**data["result"])
        return cls(**data)


class ComparisonEngine:
    """Session lifecycle around ComparisonSession: begin, resolve, commit, cancel."""

    def __init__(self, repository, store: SessionStore | None = None):
        self.repository = repository
        self.store = store or get_session_store()

    async def begin_insertion(
        self,
        user_id: str,
        title_id: str,
        media_type: MediaType,
        tier: SentimentTier,
    ) -> ComparisonSession:
        """Open a session for ranking ``title_id`` inside ``tier``.

        The returned session is already finished (Done at index 0) when the
        tier holds no other titles; such sessions are never stored. A title
        the user ranked before is left out of the snapshot so that it is not
        compared against itself (re-rank).
        """
        tier = SentimentTier.parse(tier)
        media_type = MediaType(media_type)

        if await self.store.get(user_id) is not None:
            raise SessionConflict(user_id, title_id)

        entries = await self.repository.list_tier(user_id, media_type, tier)
        existing = await self.repository.get_entry(user_id, title_id)
        snapshot = [entry.title_id for entry in entries if entry.title_id != title_id]

        session = ComparisonSession.start(
            user_id, title_id, media_type, tier, snapshot, is_rerank=existing is not None,
        )
        if not session.finished:
            await self.store.create(user_id, session.to_dict())
            logger.info(
                f"Comparison session {session.session_id} opened for {user_id}: "
                f"{title_id} into {media_type.value}/{tier.value} ({len(snapshot)} entries)"
            )
        return session

    async def current(self, user_id: str) -> ComparisonSession:
        data = await self.store.get(user_id)
        if data is None:
            raise SessionNotFound(user_id)
        return ComparisonSession.from_dict(data)

    async def resolve(self, user_id: str, answer: Answer | str) -> ComparisonSession:
        """Feed one answer to the user's open session and persist the new state."""
        answer = Answer.parse(answer)
        session = await self.current(user_id)
        session.resolve(answer)
        await self.store.save(user_id, session.to_dict())
        return session

    async def commit(
        self,
        session: ComparisonSession,
        writer: Callable[[int], Awaitable[T]],
    ) -> T:
        """Hand the final position to ``writer`` and discard the session.

        The session is only discarded once the write succeeded; after a
        failed write the finished session stays stored and can be committed
        again.
        """
        done = session.require_done()
        result = await writer(done.position)
        await self.store.delete(session.user_id)
        logger.info(
            f"Comparison session {session.session_id} committed: {session.title_id} "
            f"at position {done.position} after {done.comparisons} comparisons"
        )
        return result

    async def cancel(self, user_id: str) -> None:
        """Discard the user's open session; nothing was persisted for it."""
        if not await self.store.delete(user_id):
            raise SessionNotFound(user_id)
        logger.info(f"Comparison session cancelled for {user_id}")
