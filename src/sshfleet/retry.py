"""Retry with exponential backoff, shared by every operation type."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from .errors import ErrorKind, classify
from .events import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how patiently, to retry a failing operation.

    Attempt numbers start at 1. After failed attempt ``n`` the wait is
    ``base_delay * 2 ** (n - 1)``, capped at ``max_delay`` when set. Only
    errors whose kind is in ``transient`` are retried.
    """

    max_retry: int = 0
    base_delay: float = 1.0
    max_delay: float | None = None
    transient: frozenset[ErrorKind] = field(
        default_factory=lambda: frozenset({ErrorKind.CONNECTION})
    )

    def __post_init__(self) -> None:
        if self.max_retry < 0:
            raise ValueError(f"max_retry must be >= 0, got {self.max_retry}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    @property
    def max_attempts(self) -> int:
        return self.max_retry + 1

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt``."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def is_transient(self, exc: BaseException) -> bool:
        return classify(exc) in self.transient

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        cancel: CancelToken | None = None,
        sleep: Sleep = asyncio.sleep,
        label: str = "operation",
    ) -> T:
        """Call ``fn`` until it succeeds, fails fatally, or attempts run out.

        The last error is re-raised unchanged.
        """
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if not self.is_transient(e) or attempt >= self.max_attempts:
                    if attempt > 1:
                        logger.error("%s failed after %d attempts: %s", label, attempt, e)
                    raise

                delay = self.delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s, retrying in %.1fs...",
                    label,
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                if cancel is not None:
                    cancel.check()
                await sleep(delay)
                attempt += 1
