"""Position-to-score conversion.

Each tier owns a slice of the 0-10 scale:

    Disliked [0, 4)    Neutral [4, 7)    Liked [7, 10]

Inside a tier the score falls linearly from the band top (rank 0) towards
the band bottom, using the tier size as the denominator, so the bottom
itself is never reached and adjacent bands cannot overlap. Whether the top
of Disliked/Neutral touches the exclusive bound is configurable
(``score_boundary_inclusive``).
"""

from dataclasses import dataclass

from cannes.config import Settings, get_settings
from cannes.services.tiers import SentimentTier


@dataclass(frozen=True)
class ScoreBand:
    bottom: float
    top: float


class ScoreCalculator:
    """Derive scores from (tier, rank_index, tier_size)."""

    def __init__(
        self,
        settings: Settings | None = None,
        boundary_inclusive: bool | None = None,
    ):
        settings = settings or get_settings()
        if boundary_inclusive is None:
            boundary_inclusive = settings.score_boundary_inclusive
        self.boundary_inclusive = boundary_inclusive
        self.precision = settings.score_precision

        gap = 0.0 if boundary_inclusive else settings.score_boundary_gap
        self.bands: dict[SentimentTier, ScoreBand] = {
            SentimentTier.DISLIKED: ScoreBand(0.0, settings.disliked_upper - gap),
            SentimentTier.NEUTRAL: ScoreBand(settings.disliked_upper, settings.neutral_upper - gap),
            SentimentTier.LIKED: ScoreBand(settings.neutral_upper, settings.max_score),
        }

    def band(self, tier: SentimentTier) -> ScoreBand:
        return self.bands[SentimentTier.parse(tier)]

    def score(self, tier: SentimentTier, rank_index: int, tier_size: int) -> float:
        """Score for the entry at ``rank_index`` in a tier holding ``tier_size`` entries."""
        if tier_size < 1:
            raise ValueError(f"tier_size must be positive, got {tier_size}")
        if not 0 <= rank_index < tier_size:
            raise ValueError(f"rank_index {rank_index} outside tier of size {tier_size}")

        band = self.band(tier)
        raw = band.top - (band.top - band.bottom) * rank_index / tier_size
        return round(raw, self.precision)

    def scores_for(self, tier: SentimentTier, tier_size: int) -> list[float]:
        """Scores for every position of a tier, best first."""
        return [self.score(tier, index, tier_size) for index in range(tier_size)]
