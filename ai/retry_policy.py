"""
Retry policy for proposal-source calls.

Max attempts, a backoff function and a retryable-error predicate, with the
sleep function injectable so callers and tests never wait on a real clock.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import openai

from core.exceptions import ProposalSourceError, TransientSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings that mark a network-level failure worth retrying.
RETRYABLE_MESSAGES = (
    "eof",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "temporary failure",
    "no such host",
)


def linear_backoff(step_seconds: float = 2.0) -> Callable[[int], float]:
    """attempt 1 -> step, attempt 2 -> 2*step, ..."""
    return lambda attempt: step_seconds * attempt


def is_transient_error(exc: BaseException) -> bool:
    """
    Network and timeout failures are transient; authentication, bad requests
    and parse errors are not.
    """
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError,
                        openai.BadRequestError, openai.NotFoundError)):
        return False
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError,
                        openai.RateLimitError, openai.InternalServerError)):
        return True

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True

    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGES)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=linear_backoff)
    is_retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], Any] = time.sleep

    def run(self, fn: Callable[[], T], description: str = "proposal source call") -> T:
        """
        Call ``fn`` until it succeeds or the policy gives up.

        Raises TransientSourceError once retryable failures exhaust the
        attempts, ProposalSourceError immediately for anything else.
        """
        last_exc: BaseException = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except ProposalSourceError:
                raise
            except Exception as exc:
                last_exc = exc
                if not self.is_retryable(exc):
                    logger.error(f"{description} failed (not retryable): {exc}")
                    raise ProposalSourceError(f"{description} failed: {exc}", original=exc) from exc
                if attempt >= self.max_attempts:
                    break
                wait = self.backoff(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {exc}; "
                    f"retrying in {wait:.1f}s"
                )
                self.sleep(wait)

        raise TransientSourceError(
            f"{description} failed after {self.max_attempts} attempts: {last_exc}",
            attempts=self.max_attempts,
            original=last_exc,
        ) from last_exc
