"""Bounded retry with exponential backoff for portfolio resolution."""

from lp_portfolio_tracker.remote.exceptions import SnapshotValidationError, is_client_rejection


class RetryConfig:
    """
    Retry policy for failed portfolio resolutions.

    Parameters
    ----------
    max_retries : int
        Attempts allowed after the first failure
    base_delay : float
        Seconds to wait after the first failure
    max_delay : float
        Upper bound on any single wait, in seconds
    exponential_base : float
        Growth factor between consecutive waits

    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, failure_count: int) -> float:
        """
        Backoff before the next attempt.

        Parameters
        ----------
        failure_count : int
            Failures so far (1 after the first failed attempt)

        Returns
        -------
        float
            Seconds to wait: ``base_delay * exponential_base ** (failure_count - 1)``,
            capped at ``max_delay``

        """
        growth = self.exponential_base ** max(failure_count - 1, 0)
        return min(self.base_delay * growth, self.max_delay)

    def should_retry(self, failure_count: int, error: BaseException) -> bool:
        """
        Decide whether another attempt is allowed.

        Client-side rejections (4xx) and malformed responses are terminal;
        network-class failures are retried until ``max_retries`` is reached.

        Parameters
        ----------
        failure_count : int
            Failures so far, including this one
        error : BaseException
            The error that caused this failure

        Returns
        -------
        bool
            True if the caller should try again

        """
        if isinstance(error, SnapshotValidationError) or is_client_rejection(error):
            return False
        return failure_count <= self.max_retries
