"""
Backoff Controller - exponential retry delays with an owned attempt counter.

Generic request retries and stream reconnection each get their own
instance, built by ``api_backoff`` and ``stream_backoff``.
"""

import asyncio
import logging
from typing import Any, Optional

from .errors import RetryExhausted

logger = logging.getLogger(__name__)


class BackoffController:
    """
    Computes ``base_delay_ms * multiplier ** attempt`` and counts attempts.

    ``reset()`` must be called once per successful operation.
    """

    def __init__(
        self,
        base_delay_ms: float = 1000.0,
        multiplier: float = 2.0,
        max_retries: Optional[int] = None,
        name: str = "backoff",
    ):
        if base_delay_ms < 0:
            raise ValueError("base_delay_ms must be non-negative")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.base_delay_ms = base_delay_ms
        self.multiplier = multiplier
        self.max_retries = max_retries
        self.name = name
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Number of retries issued since the last reset."""
        return self._attempt

    @property
    def exhausted(self) -> bool:
        return self.max_retries is not None and self._attempt >= self.max_retries

    @property
    def can_retry(self) -> bool:
        return not self.exhausted

    def delay_for(self, attempt: int) -> float:
        """Delay in milliseconds for the given attempt number."""
        return self.base_delay_ms * (self.multiplier ** attempt)

    def next_delay(self) -> float:
        """
        Take the next retry slot.

        Returns:
            Delay in milliseconds for the current attempt

        Raises:
            RetryExhausted: if max_retries attempts were already issued
        """
        if self.exhausted:
            logger.warning(
                f"{self.name}: retries exhausted after {self._attempt} attempts",
                extra={"extra_fields": {"backoff": self.name, "attempts": self._attempt}}
            )
            raise RetryExhausted(self._attempt)
        delay = self.delay_for(self._attempt)
        self._attempt += 1
        return delay

    async def wait(self) -> float:
        """Sleep for the next delay. Cancelling the caller cancels the sleep."""
        delay = self.next_delay()
        logger.info(
            f"{self.name}: retry {self._attempt}"
            f"{'/' + str(self.max_retries) if self.max_retries is not None else ''} "
            f"in {delay:.0f}ms"
        )
        await asyncio.sleep(delay / 1000.0)
        return delay

    def reset(self) -> None:
        if self._attempt:
            logger.debug(f"{self.name}: reset after {self._attempt} attempts")
        self._attempt = 0


def api_backoff(config: Any) -> BackoffController:
    """Backoff for generic backend requests (few retries, short base delay)."""
    return BackoffController(
        base_delay_ms=config.api_retry_delay_ms,
        multiplier=config.api_backoff_multiplier,
        max_retries=config.api_max_retries,
        name="api",
    )


def stream_backoff(config: Any) -> BackoffController:
    """Backoff for stream reconnection (more retries, longer and gentler)."""
    return BackoffController(
        base_delay_ms=config.stream_retry_delay_ms,
        multiplier=config.stream_backoff_multiplier,
        max_retries=config.stream_max_retries,
        name="stream",
    )
