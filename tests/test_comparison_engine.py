import math
from dataclasses import dataclass

import pytest

from cannes.core.errors import InvalidComparisonAnswer, RankingError, SessionConflict, SessionNotFound
from cannes.services.comparison_engine import (
    Answer,
    ComparisonEngine,
    ComparisonRequest,
    ComparisonSession,
    Done,
)
from cannes.services.tiers import MediaType, SentimentTier


def start(snapshot):
    return ComparisonSession.start("u1", "candidate", MediaType.MOVIE, SentimentTier.LIKED, snapshot)


def test_empty_tier_finishes_without_comparisons():
    session = start([])
    assert session.finished
    assert session.next_prompt() == Done(index=0)
    assert session.result.position == 0
    assert session.log == []


def test_existing_better_places_candidate_last():
    session = start(["A", "B"])
    prompt = session.next_prompt()
    assert isinstance(prompt, ComparisonRequest)
    assert prompt.existing_title_id == "B"
    assert prompt.existing_rank_index == 1

    result = session.resolve(Answer.EXISTING_BETTER)
    assert isinstance(result, Done)
    assert result.index == 2
    assert result.position == 2
    assert result.comparisons == 1


def test_tie_places_candidate_right_after_tied_entry():
    session = start(["A"])
    result = session.resolve("too_close_to_call")
    assert result.index == 0
    assert result.tied_with == "A"
    assert result.position == 1


def test_tie_ends_search_early():
    session = start([f"t{i}" for i in range(15)])
    session.resolve(Answer.CANDIDATE_BETTER)
    result = session.resolve(Answer.TOO_CLOSE_TO_CALL)
    assert isinstance(result, Done)
    assert result.comparisons == 2
    assert result.position == result.index + 1


def answer_for(target, prompt):
    """Oracle for a candidate that belongs at ``target``."""
    if target <= prompt.existing_rank_index:
        return Answer.CANDIDATE_BETTER
    return Answer.EXISTING_BETTER


@pytest.mark.parametrize("size", [1, 2, 3, 4, 7, 8, 15, 16, 31, 64, 100])
def test_binary_search_finds_every_position_within_log2_bound(size):
    snapshot = [f"t{i}" for i in range(size)]
    bound = math.ceil(math.log2(size + 1))
    for target in range(size + 1):
        session = start(snapshot)
        state = session.next_prompt()
        while isinstance(state, ComparisonRequest):
            state = session.resolve(answer_for(target, state))
        assert state.index == target
        assert state.comparisons <= bound


def test_invalid_answer_is_rejected_and_state_unchanged():
    session = start(["A", "B", "C"])
    with pytest.raises(InvalidComparisonAnswer):
        session.resolve("maybe")
    assert session.log == []
    assert (session.lo, session.hi) == (0, 3)


def test_answer_after_done_is_an_error():
    session = start(["A"])
    session.resolve(Answer.CANDIDATE_BETTER)
    with pytest.raises(RankingError):
        session.resolve(Answer.CANDIDATE_BETTER)


def test_session_survives_serialization_mid_search():
    session = start(["A", "B", "C", "D"])
    session.resolve(Answer.EXISTING_BETTER)

    restored = ComparisonSession.from_dict(session.to_dict())
    assert restored.media_type is MediaType.MOVIE
    assert restored.tier is SentimentTier.LIKED
    assert restored.next_prompt() == session.next_prompt()
    assert restored.log == session.log


@dataclass
class FakeEntry:
    title_id: str


class FakeRepository:
    def __init__(self, titles):
        self.titles = titles

    async def list_tier(self, user_id, media_type, tier):
        return [FakeEntry(t) for t in self.titles]

    async def get_entry(self, user_id, title_id):
        return FakeEntry(title_id) if title_id in self.titles else None


@pytest.fixture
def engine(store):
    return ComparisonEngine(FakeRepository(["A", "B", "C"]), store)


async def test_second_session_for_same_user_conflicts(engine):
    await engine.begin_insertion("u1", "X", MediaType.MOVIE, SentimentTier.LIKED)
    with pytest.raises(SessionConflict):
        await engine.begin_insertion("u1", "Y", MediaType.TV, SentimentTier.DISLIKED)

    # Other users are unaffected
    await engine.begin_insertion("u2", "Y", MediaType.MOVIE, SentimentTier.LIKED)


async def test_rerank_leaves_title_out_of_snapshot(engine):
    session = await engine.begin_insertion("u1", "B", MediaType.MOVIE, SentimentTier.LIKED)
    assert session.is_rerank
    assert session.snapshot == ["A", "C"]


async def test_cancel_discards_session(engine):
    await engine.begin_insertion("u1", "X", MediaType.MOVIE, SentimentTier.LIKED)
    await engine.cancel("u1")
    with pytest.raises(SessionNotFound):
        await engine.current("u1")
    with pytest.raises(SessionNotFound):
        await engine.cancel("u1")


async def test_commit_keeps_session_when_write_fails(engine):
    await engine.begin_insertion("u1", "X", MediaType.MOVIE, SentimentTier.LIKED)
    session = await engine.resolve("u1", Answer.CANDIDATE_BETTER)
    session = await engine.resolve("u1", Answer.CANDIDATE_BETTER)
    assert session.finished
    assert session.result.position == 0

    async def failing_writer(position):
        raise RuntimeError("storage down")

    with pytest.raises(RuntimeError):
        await engine.commit(session, failing_writer)
    assert (await engine.current("u1")).finished

    positions = []

    async def writer(position):
        positions.append(position)
        return "written"

    assert await engine.commit(session, writer) == "written"
    assert positions == [0]
    with pytest.raises(SessionNotFound):
        await engine.current("u1")


async def test_commit_requires_finished_search(engine):
    session = await engine.begin_insertion("u1", "X", MediaType.MOVIE, SentimentTier.LIKED)

    async def writer(position):
        return position

    with pytest.raises(RankingError):
        await engine.commit(session, writer)
