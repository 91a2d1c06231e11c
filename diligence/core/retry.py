"""
Retry Policy

One retry wrapper for every collaborator call and durable-store write:

    RetryPolicy(max_attempts, backoff, fallback_fn)

Attempts run under tenacity with exponential backoff. Only the exception
types in ``retry_on`` are retried; anything else stops immediately. When
attempts are exhausted the policy calls ``fallback_fn(error)`` and returns
its value, or re-raises the last error if no fallback is configured.

Backoff doubles from ``base`` and is capped at ``maximum``:

    attempt 1 fails -> wait base
    attempt 2 fails -> wait base * 2
    ...             -> never more than maximum
"""

import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tenacity import (
    AsyncRetrying,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from config.logging_config import get_logger
from diligence.core.exceptions import RETRYABLE_ERRORS

logger = get_logger(__name__)


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff window (seconds)."""
    base: float = 1.0
    maximum: float = 30.0
    factor: float = 2.0

    def strategy(self):
        return wait_exponential(multiplier=self.base, exp_base=self.factor, max=self.maximum)

    def delay_for(self, attempt_number: int) -> float:
        """Delay before the retry that follows ``attempt_number`` failed attempts."""
        return min(self.maximum, self.base * self.factor ** (attempt_number - 1))

    @classmethod
    def from_settings(cls) -> "Backoff":
        return cls(base=settings.RETRY_BASE_DELAY, maximum=settings.RETRY_MAX_DELAY)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retries with exponential backoff and an optional fallback.

    Attributes:
        max_attempts: Total attempts, including the first call
        backoff: Delay schedule between attempts
        fallback_fn: Called with the final error once attempts are exhausted
        retry_on: Exception types that are retried
        name: Label used in log events

    Example:
        >>> policy = RetryPolicy(max_attempts=3, fallback_fn=lambda exc: None)
        >>> content = await policy.execute(client.research, request)
    """
    max_attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    fallback_fn: Optional[Callable[[BaseException], Any]] = None
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS
    name: str = "collaborator"

    @classmethod
    def from_settings(cls, **overrides) -> "RetryPolicy":
        """Policy built from the configured attempt count and delays."""
        params = {
            "max_attempts": settings.RETRY_MAX_ATTEMPTS,
            "backoff": Backoff.from_settings(),
        }
        params.update(overrides)
        return cls(**params)

    def with_fallback(self, fallback_fn: Optional[Callable[[BaseException], Any]]) -> "RetryPolicy":
        """Copy of this policy with a different fallback."""
        return replace(self, fallback_fn=fallback_fn)

    def _retry_kwargs(self) -> dict:
        return {
            "stop": stop_after_attempt(max(1, self.max_attempts)),
            "wait": self.backoff.strategy(),
            "retry": retry_if_exception_type(self.retry_on),
            "before_sleep": before_sleep_log(logger, logging.WARNING),
            "reraise": True,
        }

    async def execute(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await ``fn(*args, **kwargs)`` under this policy.

        Returns:
            The call's result, or the fallback's result after exhaustion

        Raises:
            Exception: The last error, when no fallback is configured
        """
        try:
            async for attempt in AsyncRetrying(**self._retry_kwargs()):
                with attempt:
                    result = await fn(*args, **kwargs)
            return result
        except Exception as e:
            return await self._apply_fallback(e)

    def execute_sync(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Synchronous counterpart of ``execute`` (used for durable-store writes)."""
        try:
            for attempt in Retrying(**self._retry_kwargs()):
                with attempt:
                    result = fn(*args, **kwargs)
            return result
        except Exception as e:
            if self.fallback_fn is None:
                raise
            self._log_fallback(e)
            return self.fallback_fn(e)

    async def _apply_fallback(self, error: Exception) -> Any:
        if self.fallback_fn is None:
            raise error
        self._log_fallback(error)
        result = self.fallback_fn(error)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _log_fallback(self, error: Exception) -> None:
        logger.warning(
            "Retry attempts exhausted, applying fallback",
            extra={
                "policy": self.name,
                "max_attempts": self.max_attempts,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )


__all__ = ["Backoff", "RetryPolicy"]
