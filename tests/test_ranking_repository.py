import asyncio

import pytest
from sqlalchemy import select, update

from cannes.core.errors import EntryAlreadyRanked, EntryNotFound, TierWriteConflict
from cannes.core.retry import RetryConfig
from cannes.db.models import AggregateDeltaOutbox, RankedEntry, RankingList
from cannes.services.ranking_repository import RankingRepository, ScoreDelta
from cannes.services.tiers import MediaType, SentimentTier

LIKED = SentimentTier.LIKED
NEUTRAL = SentimentTier.NEUTRAL
MOVIE = MediaType.MOVIE


async def fill(repository, user_id, titles, tier=LIKED, media_type=MOVIE):
    for index, title_id in enumerate(titles):
        await repository.insert(user_id, tier, index, title_id, media_type)


def order(entries):
    return [(e.title_id, e.rank_index) for e in entries]


def patient_retry():
    return RetryConfig(
        max_attempts=20,
        base_delay=0.001,
        max_delay=0.01,
        retryable_exceptions=(TierWriteConflict,),
    )


async def test_insert_into_empty_tier(repository):
    mutation = await repository.insert("u1", LIKED, 0, "inception", MOVIE)

    assert mutation.entry.rank_index == 0
    assert mutation.entry.score == 10.0
    assert mutation.deltas == [ScoreDelta("inception", "movie", None, 10.0)]


async def test_insert_shifts_and_rescores_whole_tier(repository):
    await fill(repository, "u1", ["a", "b", "c"])
    mutation = await repository.insert("u1", LIKED, 1, "x", MOVIE)

    entries = await repository.list_tier("u1", MOVIE, LIKED)
    assert order(entries) == [("a", 0), ("x", 1), ("b", 2), ("c", 3)]
    assert [e.score for e in entries] == [10.0, 9.25, 8.5, 7.75]

    # Inserted title first, then every shifted title whose score moved
    assert mutation.deltas[0] == ScoreDelta("x", "movie", None, 9.25)
    assert {d.title_id: (d.old_score, d.new_score) for d in mutation.deltas[1:]} == {
        "b": (9.0, 8.5),
        "c": (8.0, 7.75),
    }


async def test_insert_index_past_end_is_clamped(repository):
    await fill(repository, "u1", ["a"])
    await repository.insert("u1", LIKED, 7, "b", MOVIE)
    assert order(await repository.list_tier("u1", MOVIE, LIKED)) == [("a", 0), ("b", 1)]


async def test_insert_of_ranked_title_is_rejected(repository):
    await fill(repository, "u1", ["a"])
    with pytest.raises(EntryAlreadyRanked):
        await repository.insert("u1", NEUTRAL, 0, "a", MOVIE)


async def test_lists_are_separate_per_media_type(repository):
    await fill(repository, "u1", ["m1", "m2"], media_type=MediaType.MOVIE)
    await fill(repository, "u1", ["s1"], media_type=MediaType.TV)

    assert order(await repository.list_tier("u1", MediaType.TV, LIKED)) == [("s1", 0)]
    assert (await repository.get_entry("u1", "s1")).score == 10.0


async def test_remove_shifts_up_and_reports_removal(repository):
    await fill(repository, "u1", ["a", "b", "c"])
    mutation = await repository.remove("u1", LIKED, "a")

    entries = await repository.list_tier("u1", MOVIE, LIKED)
    assert order(entries) == [("b", 0), ("c", 1)]
    assert [e.score for e in entries] == [10.0, 8.5]
    assert mutation.deltas[0] == ScoreDelta("a", "movie", 10.0, None)
    assert await repository.get_entry("u1", "a") is None


async def test_remove_unknown_or_wrong_tier_raises(repository):
    await fill(repository, "u1", ["a"])
    with pytest.raises(EntryNotFound):
        await repository.remove("u1", LIKED, "zzz")
    with pytest.raises(EntryNotFound):
        await repository.remove("u1", NEUTRAL, "a")


async def test_replace_moves_title_between_tiers_with_single_delta(repository):
    await fill(repository, "u1", ["a", "b"])
    await fill(repository, "u1", ["n1"], tier=NEUTRAL)

    mutation = await repository.replace("u1", "a", MOVIE, NEUTRAL, 1)

    assert order(await repository.list_tier("u1", MOVIE, LIKED)) == [("b", 0)]
    assert order(await repository.list_tier("u1", MOVIE, NEUTRAL)) == [("n1", 0), ("a", 1)]
    title_deltas = [d for d in mutation.deltas if d.title_id == "a"]
    assert title_deltas == [ScoreDelta("a", "movie", 10.0, 5.45)]


async def test_replace_within_same_tier(repository):
    await fill(repository, "u1", ["a", "b", "c"])
    await repository.replace("u1", "c", MOVIE, LIKED, 0)
    assert order(await repository.list_tier("u1", MOVIE, LIKED)) == [("c", 0), ("a", 1), ("b", 2)]


async def test_every_mutation_writes_its_deltas_to_the_outbox(repository, session_factory):
    first = await repository.insert("u1", LIKED, 0, "a", MOVIE)
    second = await repository.insert("u1", LIKED, 0, "b", MOVIE)

    async with session_factory() as db:
        rows = (await db.execute(select(AggregateDeltaOutbox).order_by(AggregateDeltaOutbox.id))).scalars().all()

    assert [row.id for row in rows] == first.outbox_ids + second.outbox_ids
    assert [(r.title_id, r.old_score, r.new_score) for r in rows] == [
        ("a", None, 10.0),
        ("b", None, 10.0),
        ("a", 10.0, 8.5),
    ]


async def test_each_mutation_bumps_list_version(repository, session_factory):
    await fill(repository, "u1", ["a", "b"])
    await repository.remove("u1", LIKED, "a")

    async with session_factory() as db:
        row = await db.get(RankingList, ("u1", "movie", "liked"))
    assert row.version == 3


async def test_non_dense_list_is_repaired_on_load(repository, session_factory):
    await fill(repository, "u1", ["a", "b", "c"])
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(RankedEntry).where(RankedEntry.title_id == "b").values(rank_index=5)
            )
            await db.execute(
                update(RankedEntry).where(RankedEntry.title_id == "c").values(rank_index=9)
            )

    entries = await repository.list_tier("u1", MOVIE, LIKED)
    assert order(entries) == [("a", 0), ("b", 1), ("c", 2)]

    async with session_factory() as db:
        stored = (await db.execute(
            select(RankedEntry.title_id, RankedEntry.rank_index).order_by(RankedEntry.rank_index)
        )).all()
    assert [tuple(row) for row in stored] == [("a", 0), ("b", 1), ("c", 2)]


async def test_gap_is_closed_before_an_insert(repository, session_factory):
    await fill(repository, "u1", ["a", "b"])
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(RankedEntry).where(RankedEntry.title_id == "b").values(rank_index=4)
            )

    await repository.insert("u1", LIKED, 2, "c", MOVIE)
    assert order(await repository.list_tier("u1", MOVIE, LIKED)) == [("a", 0), ("b", 1), ("c", 2)]


async def bump_version(session_factory, user_id, tier=LIKED, media_type=MOVIE):
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(RankingList)
                .where(
                    RankingList.user_id == user_id,
                    RankingList.media_type == media_type.value,
                    RankingList.tier == tier.value,
                )
                .values(version=RankingList.version + 1)
            )


async def test_lost_version_race_is_retried(repository, session_factory, monkeypatch):
    await repository.insert("u1", LIKED, 0, "a", MOVIE)
    original = repository._claim_list
    claims = []

    async def claim_after_concurrent_writer(db, user_id, key):
        claims.append(key)
        if len(claims) == 1:
            # This attempt reads the version, then another writer commits first
            await db.get(RankingList, (user_id, key.media_type, key.tier))
            await bump_version(session_factory, user_id)
        return await original(db, user_id, key)

    monkeypatch.setattr(repository, "_claim_list", claim_after_concurrent_writer)
    mutation = await repository.insert("u1", LIKED, 1, "b", MOVIE)

    assert len(claims) == 2
    assert order(mutation.entries) == [("a", 0), ("b", 1)]
    async with session_factory() as db:
        version = await db.scalar(select(RankingList.version).where(RankingList.user_id == "u1"))
        outbox = (await db.execute(select(AggregateDeltaOutbox.title_id))).scalars().all()
    assert version == 3
    # Nothing from the losing attempt reached the outbox
    assert sorted(outbox) == ["a", "b"]


async def test_concurrent_inserts_into_one_list(session_factory):
    repository = RankingRepository(session_factory=session_factory, retry_config=patient_retry())
    await repository.insert("u1", LIKED, 0, "first", MOVIE)

    titles = [f"t{i}" for i in range(6)]
    await asyncio.gather(*(repository.insert("u1", LIKED, 0, t, MOVIE) for t in titles))

    entries = await repository.list_tier("u1", MOVIE, LIKED)
    assert sorted(e.title_id for e in entries) == sorted(titles + ["first"])
    assert [e.rank_index for e in entries] == list(range(7))
    assert entries[-1].title_id == "first"
    assert [e.score for e in entries] == sorted((e.score for e in entries), reverse=True)


async def test_cross_tier_ordering_holds(repository):
    await fill(repository, "u1", [f"l{i}" for i in range(9)], tier=LIKED)
    await fill(repository, "u1", ["n0"], tier=NEUTRAL)
    await fill(repository, "u1", [f"d{i}" for i in range(4)], tier=SentimentTier.DISLIKED)

    entries = await repository.list_for_user("u1")
    scores = [e.score for e in entries]
    assert [e.tier for e in entries] == ["liked"] * 9 + ["neutral"] + ["disliked"] * 4
    assert scores == sorted(scores, reverse=True)
    assert len(set(scores)) == len(scores)


async def test_remove_all_for_user(repository):
    await fill(repository, "u1", ["a", "b"])
    await fill(repository, "u1", ["c"], tier=NEUTRAL)
    await fill(repository, "u2", ["a"])

    mutation = await repository.remove_all_for_user("u1")

    assert sorted((d.title_id, d.new_score) for d in mutation.deltas) == [
        ("a", None), ("b", None), ("c", None),
    ]
    assert await repository.list_for_user("u1") == []
    assert len(await repository.list_for_user("u2")) == 1

    again = await repository.remove_all_for_user("u1")
    assert again.deltas == []
