"""Application middleware."""

from cannes.middleware.correlation import (
    CorrelationIDFilter,
    CorrelationIDMiddleware,
    get_correlation_id,
)

__all__ = ["CorrelationIDFilter", "CorrelationIDMiddleware", "get_correlation_id"]
