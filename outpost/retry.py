"""
Retry policy and the generic retry-until-success-or-exhausted helper.

Only errors listed in :attr:`RetryPolicy.retry_on` are retried (transport
failures by default).  Configuration errors and cancellation are never
retried, whatever the policy says.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Tuple, Type, TypeVar

from outpost.context import ActionContext
from outpost.errors import ActionCancelled, ConfigurationError, TransportError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

EXPONENTIAL = "exponential"
CONSTANT = "constant"
FIBONACCI = "fibonacci"

_NEVER_RETRY: Tuple[Type[BaseException], ...] = (ConfigurationError, ActionCancelled)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: Optional[int] = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (TransportError,)
    )
    interval: str = EXPONENTIAL

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1 (or None for unlimited)")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.interval not in (EXPONENTIAL, CONSTANT, FIBONACCI):
            raise ValueError(f"unknown retry interval {self.interval!r}")

    # ------------------------------------------------------------ builders
    @classmethod
    def constant(
        cls, delay: float, *, max_attempts: Optional[int] = 3, **kwargs
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            base_delay=delay,
            max_delay=delay,
            interval=CONSTANT,
            **kwargs,
        )

    @classmethod
    def fibonacci(
        cls, base: float, *, max_attempts: Optional[int] = None, **kwargs
    ) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay=base, interval=FIBONACCI, **kwargs)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        )

    def with_retry_on(self, *errors: Type[BaseException]) -> "RetryPolicy":
        return replace(self, retry_on=tuple(errors))

    # ---------------------------------------------------------------- math
    def delay(self, attempt: int) -> float:
        """Delay to wait after the ``attempt``-th (1-based) failed attempt."""
        if attempt < 1:
            return 0.0
        if self.interval == CONSTANT:
            raw = self.base_delay
        elif self.interval == FIBONACCI:
            raw = self.base_delay * _fib(attempt)
        else:
            raw = self.base_delay * (self.multiplier ** (attempt - 1))
        return min(self.max_delay, raw)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        if isinstance(exc, _NEVER_RETRY):
            return False
        if not isinstance(exc, self.retry_on):
            return False
        return self.max_attempts is None or attempt < self.max_attempts


def _fib(n: int) -> int:
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a


def retry(
    ctx: ActionContext,
    func: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    description: str = "operation",
) -> T:
    """Call ``func`` until it succeeds or the policy gives up.

    The context is checked before every attempt and waited on between them,
    so a cancelled action stops retrying promptly.  When attempts run out
    the last error is re-raised unchanged.
    """

    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        ctx.check()
        attempt += 1
        try:
            return func()
        except Exception as exc:
            if not policy.should_retry(exc, attempt):
                if attempt > 1:
                    LOGGER.debug(
                        "Giving up on %s after %d attempt(s): %s",
                        description,
                        attempt,
                        exc,
                    )
                raise
            wait = policy.delay(attempt)
            LOGGER.warning(
                "Attempt %d of %s failed, retrying in %.2fs: %s",
                attempt,
                description,
                wait,
                exc,
            )
            ctx.sleep(wait)


__all__ = ["CONSTANT", "EXPONENTIAL", "FIBONACCI", "RetryPolicy", "retry"]
