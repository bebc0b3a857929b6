import pytest

from cannes.services.scoring import ScoreCalculator
from cannes.services.tiers import SentimentTier


@pytest.fixture
def calculator():
    return ScoreCalculator(boundary_inclusive=False)


def test_single_entry_gets_top_of_band(calculator):
    assert calculator.score(SentimentTier.LIKED, 0, 1) == 10.0
    assert calculator.score(SentimentTier.NEUTRAL, 0, 1) == 6.9
    assert calculator.score(SentimentTier.DISLIKED, 0, 1) == 3.9


def test_inclusive_bounds_use_the_bound_itself():
    calculator = ScoreCalculator(boundary_inclusive=True)
    assert calculator.score(SentimentTier.LIKED, 0, 1) == 10.0
    assert calculator.score(SentimentTier.NEUTRAL, 0, 1) == 7.0
    assert calculator.score(SentimentTier.DISLIKED, 0, 1) == 4.0


def test_linear_spread_uses_tier_size_as_denominator(calculator):
    assert calculator.scores_for(SentimentTier.LIKED, 4) == [10.0, 9.25, 8.5, 7.75]
    assert calculator.scores_for(SentimentTier.LIKED, 2) == [10.0, 8.5]


def test_scores_rounded_to_three_decimals(calculator):
    scores = calculator.scores_for(SentimentTier.NEUTRAL, 3)
    assert scores == [6.9, 5.933, 4.967]


def test_bottom_of_band_is_never_reached(calculator):
    for size in (1, 2, 7, 100):
        assert min(calculator.scores_for(SentimentTier.DISLIKED, size)) > 0.0
        assert min(calculator.scores_for(SentimentTier.NEUTRAL, size)) > 4.0
        assert min(calculator.scores_for(SentimentTier.LIKED, size)) > 7.0


@pytest.mark.parametrize("inclusive", [False, True])
def test_scores_non_increasing_and_bands_never_overlap(inclusive):
    calculator = ScoreCalculator(boundary_inclusive=inclusive)
    for size in range(1, 120):
        liked = calculator.scores_for(SentimentTier.LIKED, size)
        neutral = calculator.scores_for(SentimentTier.NEUTRAL, size)
        disliked = calculator.scores_for(SentimentTier.DISLIKED, size)

        for scores in (liked, neutral, disliked):
            assert all(a >= b for a, b in zip(scores, scores[1:]))

        # Worst Liked beats best Neutral of any size, and so on down
        for other_size in (1, size):
            assert min(liked) > calculator.score(SentimentTier.NEUTRAL, 0, other_size)
            assert min(neutral) > calculator.score(SentimentTier.DISLIKED, 0, other_size)


def test_rejects_out_of_range_positions(calculator):
    with pytest.raises(ValueError):
        calculator.score(SentimentTier.LIKED, 0, 0)
    with pytest.raises(ValueError):
        calculator.score(SentimentTier.LIKED, 3, 3)
    with pytest.raises(ValueError):
        calculator.score(SentimentTier.LIKED, -1, 3)


def test_tier_labels_from_the_app_are_accepted():
    assert SentimentTier.parse("I liked it!") is SentimentTier.LIKED
    assert SentimentTier.parse("It was fine") is SentimentTier.NEUTRAL
    assert SentimentTier.parse("I didn't like it") is SentimentTier.DISLIKED
    assert SentimentTier.parse("neutral") is SentimentTier.NEUTRAL
    with pytest.raises(ValueError):
        SentimentTier.parse("loved it")
