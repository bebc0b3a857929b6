"""Sentiment tiers and media types."""

from enum import Enum


class SentimentTier(str, Enum):
    """Three ordered preference bands: Liked > Neutral > Disliked."""

    LIKED = "liked"
    NEUTRAL = "neutral"
    DISLIKED = "disliked"

    @property
    def strength(self) -> int:
        """Higher is better; compares bands without looking at positions."""
        return _STRENGTH[self]

    @classmethod
    def ordered(cls) -> list["SentimentTier"]:
        """Bands from best to worst."""
        return [cls.LIKED, cls.NEUTRAL, cls.DISLIKED]

    @classmethod
    def parse(cls, value: "str | SentimentTier") -> "SentimentTier":
        """Accept enum values plus the labels shown in the mobile app."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        return cls(key)


_STRENGTH = {
    SentimentTier.LIKED: 2,
    SentimentTier.NEUTRAL: 1,
    SentimentTier.DISLIKED: 0,
}

_ALIASES = {
    "i liked it!": SentimentTier.LIKED,
    "it was fine": SentimentTier.NEUTRAL,
    "fine": SentimentTier.NEUTRAL,
    "i didn't like it": SentimentTier.DISLIKED,
}


class MediaType(str, Enum):
    """Each media type has its own set of ranking lists."""

    MOVIE = "movie"
    TV = "tv"
