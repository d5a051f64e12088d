"""Exceptions raised along the portfolio read path."""

import re

_CLIENT_STATUS_PATTERN = re.compile(r"\b(?:HTTP|status(?: code)?)\s*:?\s*4\d\d\b", re.IGNORECASE)


class PortfolioReadError(Exception):
    """Base exception for read path errors."""


class TierTimeoutError(PortfolioReadError, TimeoutError):
    """A tier did not answer within its bound."""

    def __init__(self, tier: str, timeout: float) -> None:
        self.tier = tier
        self.timeout = timeout
        super().__init__(f"{tier} timed out after {timeout:.1f}s")


class SnapshotValidationError(PortfolioReadError):
    """Remote response is structurally malformed."""


class TransportError(PortfolioReadError):
    """Network failure or non-success HTTP status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class NotFoundError(PortfolioReadError):
    """No usable data in any tier."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No portfolio data available for {key}")


class AllEndpointsFailedError(PortfolioReadError):
    """Every candidate endpoint failed."""

    def __init__(
        self,
        last_error: BaseException | None,
        attempts: list[tuple[str, BaseException]],
    ) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"All {len(attempts)} API endpoints failed; last error: {last_error}")


class QueryFailedError(PortfolioReadError):
    """The query layer exhausted its retries for a key."""

    def __init__(self, key: str, last_error: BaseException, attempts: int) -> None:
        self.key = key
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Failed to fetch portfolio data for {key} after {attempts} attempts: {last_error}")


def is_client_rejection(error: BaseException) -> bool:
    """
    Check whether an error is a client-side (4xx-class) rejection.

    Parameters
    ----------
    error : BaseException
        Error raised by a resolution attempt

    Returns
    -------
    bool
        True if the error carries or mentions a 4xx HTTP status

    """
    if isinstance(error, TransportError) and error.status_code is not None:
        return error.is_client_error
    return bool(_CLIENT_STATUS_PATTERN.search(str(error)))
