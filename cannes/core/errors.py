"""Ranking error hierarchy.

Every error here is recoverable by the caller (retry or a user-facing
message). The API layer maps them to HTTP responses via ``status_code``.
"""


class RankingError(Exception):
    """Base class for ranking and aggregate errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SessionConflict(RankingError):
    """The user already has an open comparison session."""

    status_code = 409

    def __init__(self, user_id: str, title_id: str | None = None):
        detail = f"User {user_id} already has an open comparison session"
        if title_id:
            detail += f" for title {title_id}"
        super().__init__(detail + "; answer or cancel it first")
        self.user_id = user_id
        self.title_id = title_id


class SessionNotFound(RankingError):
    """No open comparison session for the user."""

    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"No open comparison session for user {user_id}")
        self.user_id = user_id


class InvalidComparisonAnswer(RankingError):
    """Answer outside candidate_better / existing_better / too_close_to_call."""

    status_code = 422

    def __init__(self, answer):
        super().__init__(f"Invalid comparison answer: {answer!r}")
        self.answer = answer


class EntryNotFound(RankingError):
    """Remove/update on a title the user has not ranked."""

    status_code = 404

    def __init__(self, user_id: str, title_id: str):
        super().__init__(f"User {user_id} has not ranked title {title_id}")
        self.user_id = user_id
        self.title_id = title_id


class EntryAlreadyRanked(RankingError):
    """Plain insert of a title the user already ranked (use a re-rank instead)."""

    status_code = 409

    def __init__(self, user_id: str, title_id: str):
        super().__init__(f"User {user_id} already ranked title {title_id}")
        self.user_id = user_id
        self.title_id = title_id


class TierInvariantViolation(RankingError):
    """A ranking list's rank indices are not a dense 0..N-1 sequence."""

    status_code = 500

    def __init__(self, user_id: str, media_type: str, tier: str, indices: list[int]):
        super().__init__(
            f"Non-dense rank indices for {user_id}/{media_type}/{tier}: {indices}"
        )
        self.indices = indices


class TierWriteConflict(RankingError):
    """Another writer changed the ranking list first (optimistic version race)."""

    status_code = 503


class AggregateWriteConflict(RankingError):
    """Transient storage contention while incrementing an aggregate."""

    status_code = 503

    def __init__(self, title_id: str, reason: str = ""):
        message = f"Aggregate update for title {title_id} conflicted"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.title_id = title_id
