"""
Bounded retry with exponential backoff and jitter.

One policy object is shared by the metrics gateway, the traffic router and
the run store so that every potentially slow call is retried the same way:
a fixed number of attempts, exponentially growing delays capped at
``max_delay_seconds``, and +/-25% jitter. Each attempt is bounded by a
timeout; a timeout counts as an ``AdapterError``.

Example:
    >>> policy = RetryPolicy(RetrySettings(max_attempts=3), timeout_seconds=5.0)
    >>> ack = await policy.call(router.set_weights, split, operation="set_weights")
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from model_rollout.config.schema import RetrySettings
from model_rollout.rollout.errors import AdapterError, RolloutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry policy for adapter calls.

    Attributes:
        settings: RetrySettings with attempts, delays and jitter.
        timeout_seconds: Per-attempt timeout.
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        timeout_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_failure: Callable[[str, AdapterError], None] | None = None,
    ) -> None:
        """
        Initialize RetryPolicy.

        Args:
            settings: Retry settings. Uses defaults if None.
            timeout_seconds: Timeout applied to every attempt.
            sleep: Coroutine used between attempts (injectable for tests).
            on_failure: Callback invoked with (operation, error) per failed attempt.
        """
        self.settings = settings or RetrySettings()
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._on_failure = on_failure

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay in seconds before the retry following ``attempt`` (0-indexed).

        delay = initial * multiplier ** attempt, capped, with optional jitter.
        """
        delay = min(
            self.settings.initial_delay_seconds * (self.settings.backoff_multiplier**attempt),
            self.settings.max_delay_seconds,
        )
        if self.settings.jitter and delay > 0:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0.0)

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str = "call",
        adapter: str = "unknown",
    ) -> T:
        """
        Await ``func(*args)`` with timeout and retries.

        Raises:
            AdapterError: After the last attempt failed
            RolloutError: Non-transient errors propagate on the first attempt
        """
        attempts = self.settings.max_attempts
        last_error: AdapterError | None = None

        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(func(*args), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                last_error = AdapterError(
                    f"{operation} timed out after {self.timeout_seconds}s", adapter=adapter
                )
            except AdapterError as e:
                last_error = e
            except RolloutError:
                raise
            except Exception as e:  # adapters may raise arbitrary errors
                last_error = AdapterError(f"{operation} failed: {e}", adapter=adapter)
                last_error.__cause__ = e

            if self._on_failure is not None:
                self._on_failure(operation, last_error)

            remaining = attempts - attempt - 1
            if remaining > 0:
                delay = self.calculate_delay(attempt)
                logger.debug(
                    f"{operation} attempt {attempt + 1}/{attempts} failed "
                    f"({last_error}); retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
            else:
                logger.warning(f"{operation} failed after {attempts} attempts: {last_error}")

        assert last_error is not None
        raise last_error
