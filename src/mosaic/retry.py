"""Bounded retry with exponential backoff for backend calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetrySettings
from .errors import AIError, AIErrorType, TurnCancelled
from .interrupt import CancelToken, run_cancellable
from .logger import get_logger

T = TypeVar("T")


class RetryPolicy:
    """Run an operation until it succeeds, fails for good, or runs out of attempts.

    Only AIError instances with ``retryable=True`` are retried. Each
    attempt gets its own timeout; a timed-out attempt counts as a
    retryable TIMEOUT error unless ``on_timeout`` returns another error
    to use instead. Anything else propagates immediately, and on
    exhaustion the last AIError is re-raised unchanged.
    """

    def __init__(self, settings: Optional[RetrySettings] = None, logger: Optional[logging.Logger] = None):
        self.settings = settings or RetrySettings()
        self.log = logger or get_logger("retry")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-based)."""
        s = self.settings
        return min(s.initial_delay * (s.backoff_multiplier ** (attempt - 1)), s.max_delay)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "operation",
        cancel_token: Optional[CancelToken] = None,
        on_timeout: Optional[Callable[[str], Optional[AIError]]] = None,
    ) -> T:
        attempts = max(1, self.settings.max_attempts)
        last_error: Optional[AIError] = None

        for attempt in range(1, attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                return await run_cancellable(operation(), cancel_token, self.settings.timeout)
            except asyncio.TimeoutError:
                message = f"{label} timed out after {self.settings.timeout:g}s"
                last_error = on_timeout(message) if on_timeout is not None else None
                if last_error is None:
                    last_error = AIError(AIErrorType.TIMEOUT, message, retryable=True)
            except AIError as e:
                last_error = e

            if not last_error.retryable:
                self.log.warning("%s failed (not retryable): %s", label, last_error.message)
                raise last_error
            if attempt == attempts:
                break

            delay = self.delay_for(attempt)
            self.log.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt, attempts, delay, last_error.message,
            )
            if cancel_token is not None:
                if await cancel_token.wait(delay):
                    raise TurnCancelled(cancel_token.reason)
            else:
                await asyncio.sleep(delay)

        self.log.error("%s failed after %d attempts: %s", label, attempts, last_error.message)
        raise last_error
