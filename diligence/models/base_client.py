"""
Base Collaborator Client

Abstract base class for the two external collaborators: the research
service and the synthesis service.
Provides common functionality: retries, circuit breaker, rate limiting,
cost tracking, metrics and logging.

Design Patterns:
- Template Method: ``call`` defines the workflow, subclasses implement
  ``_make_api_call`` and ``_estimate_tokens``
- Circuit Breaker: stop calling a collaborator that keeps failing
- Observer: metrics recorded on every call

Subclasses translate provider errors into the typed collaborator errors of
``diligence.core.exceptions`` so the retry policy knows what to retry.
"""

import asyncio
import hashlib
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional

from config.logging_config import get_logger
from diligence.core.exceptions import CircuitOpenError
from diligence.core.retry import RetryPolicy

logger = get_logger(__name__)

CIRCUIT_ERROR_RATE = 0.5
CIRCUIT_MIN_CALLS = 10
CIRCUIT_RESET_SECONDS = 60
HISTORY_SIZE = 100


class ModelProvider(str, Enum):
    """Supported collaborator providers"""
    RESEARCH = "research"
    ANTHROPIC = "anthropic"


@dataclass
class ModelConfig:
    """
    Configuration for a collaborator client.

    Attributes:
        provider: Collaborator provider
        model_name: Specific model identifier
        api_key: Authentication key (None when not configured)
        max_tokens: Maximum response tokens
        temperature: Randomness (0.0-1.0)
        timeout: Request timeout in seconds
        rate_limit: Requests per minute
        cost_per_1k_input: Input cost (USD per 1K tokens)
        cost_per_1k_output: Output cost (USD per 1K tokens)
    """
    provider: ModelProvider
    model_name: str
    api_key: Optional[str]
    max_tokens: int = 4000
    temperature: float = 0.1
    timeout: int = 60
    rate_limit: int = 50  # requests per minute
    cost_per_1k_input: float = 0.0
    cost_per_1k_output: float = 0.0

    # Runtime state (not in constructor)
    total_calls: int = field(default=0, init=False)
    total_errors: int = field(default=0, init=False)
    total_cost: float = field(default=0.0, init=False)
    circuit_open: bool = field(default=False, init=False)
    last_error_time: Optional[datetime] = field(default=None, init=False)


@dataclass
class ApiResult:
    """Raw result of one provider call, before metrics are attached."""
    content: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """
    Standardized collaborator response.

    Attributes:
        content: The response text
        provider: Which collaborator generated this
        model_name: Specific model used
        tokens_used: Token count (input + output)
        cost: Estimated cost in USD
        latency_ms: Response time in milliseconds
        metadata: Provider-specific data (citations, confidence, ...)
    """
    content: str
    provider: ModelProvider
    model_name: str
    tokens_used: int
    cost: float
    latency_ms: float
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "provider": self.provider.value,
            "model": self.model_name,
            "tokens": self.tokens_used,
            "cost": f"${self.cost:.4f}",
            "latency_ms": round(self.latency_ms, 1),
            "success": self.success,
            "error": self.error,
            "content_length": len(self.content),
        }


class BaseModelClient(ABC):
    """
    Abstract base class for collaborator clients.

    Subclasses must implement:
    - _make_api_call(): Actual API integration, returning ``ApiResult``
    - _estimate_tokens(): Token counting logic

    ``retry_policy`` is optional: the research collector owns its own
    retry/fallback chain and builds its client without one.
    """

    def __init__(self, config: ModelConfig, retry_policy: Optional[RetryPolicy] = None):
        self.config = config
        self.retry_policy = retry_policy
        self.logger = get_logger(f"{__name__}.{config.provider.value}")

        self._call_history: List[Dict[str, Any]] = []
        self._last_call_time: Optional[float] = None
        self._rate_lock = asyncio.Lock()

        self.logger.debug(
            f"Initialized {config.provider.value} client",
            extra={
                "model": config.model_name,
                "rate_limit": config.rate_limit,
                "retries": retry_policy.max_attempts if retry_policy else 1,
            }
        )

    @abstractmethod
    async def _make_api_call(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        **kwargs
    ) -> ApiResult:
        """
        Make the actual call to the provider.

        Raises:
            CollaboratorError: Typed by failure category
        """

    @abstractmethod
    def _estimate_tokens(self, text: str) -> int:
        """Estimate token count for text."""

    async def call(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        **kwargs
    ) -> ModelResponse:
        """
        Call the collaborator with circuit breaker, rate limiting and metrics.

        Retries only when the client was built with a retry policy.

        Raises:
            CollaboratorError: The last error once attempts are exhausted
        """
        if self.config.circuit_open:
            self._check_circuit_breaker()
            if self.config.circuit_open:
                raise CircuitOpenError(
                    f"Circuit breaker open for {self.config.provider.value}",
                    collaborator=self.config.provider.value,
                )

        await self._enforce_rate_limit()

        start_time = time.time()
        self.config.total_calls += 1

        try:
            if self.retry_policy is not None:
                result = await self.retry_policy.execute(self._make_api_call, prompt, system_prompt, **kwargs)
            else:
                result = await self._make_api_call(prompt, system_prompt, **kwargs)
        except Exception as e:
            self._record_failure(e, start_time)
            raise

        latency_ms = (time.time() - start_time) * 1000
        input_tokens = result.input_tokens
        if input_tokens is None:
            input_tokens = self.estimate_tokens_fast((system_prompt or "") + prompt)
        output_tokens = result.output_tokens
        if output_tokens is None:
            output_tokens = self.estimate_tokens_fast(result.content)

        cost = self._calculate_cost(input_tokens, output_tokens)
        self.config.total_cost += cost

        response = ModelResponse(
            content=result.content,
            provider=self.config.provider,
            model_name=self.config.model_name,
            tokens_used=input_tokens + output_tokens,
            cost=cost,
            latency_ms=latency_ms,
            metadata=dict(result.metadata),
        )

        self.logger.info(f"{self.config.provider.value} call successful", extra=response.to_dict())
        self._record_call(response)
        return response

    def _record_failure(self, error: Exception, start_time: float) -> None:
        self.config.total_errors += 1
        self.config.last_error_time = datetime.now()

        error_rate = self.config.total_errors / max(self.config.total_calls, 1)
        if error_rate > CIRCUIT_ERROR_RATE and self.config.total_calls > CIRCUIT_MIN_CALLS:
            self.config.circuit_open = True
            self.logger.error(
                f"Circuit breaker opened for {self.config.provider.value}",
                extra={"error_rate": error_rate, "total_calls": self.config.total_calls}
            )

        response = ModelResponse(
            content="",
            provider=self.config.provider,
            model_name=self.config.model_name,
            tokens_used=0,
            cost=0.0,
            latency_ms=(time.time() - start_time) * 1000,
            success=False,
            error=str(error),
        )
        self.logger.warning(
            f"{self.config.provider.value} call failed",
            extra={**response.to_dict(), "error_type": type(error).__name__}
        )
        self._record_call(response)

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Cost in USD."""
        input_cost = (input_tokens / 1000) * self.config.cost_per_1k_input
        output_cost = (output_tokens / 1000) * self.config.cost_per_1k_output
        return input_cost + output_cost

    async def _enforce_rate_limit(self):
        """
        Space calls at least ``60 / rate_limit`` seconds apart.

        Concurrent jobs share one client, so the check is serialized.
        """
        async with self._rate_lock:
            if self._last_call_time is not None:
                elapsed = time.monotonic() - self._last_call_time
                min_interval = 60 / self.config.rate_limit
                if elapsed < min_interval:
                    await asyncio.sleep(min_interval - elapsed)
            self._last_call_time = time.monotonic()

    def _check_circuit_breaker(self):
        """Reset the circuit breaker after it has been open for a minute."""
        if self.config.last_error_time:
            elapsed = (datetime.now() - self.config.last_error_time).total_seconds()
            if elapsed > CIRCUIT_RESET_SECONDS:
                self.config.circuit_open = False
                self.logger.info(f"Circuit breaker reset for {self.config.provider.value}")

    def _record_call(self, response: ModelResponse):
        self._call_history.append({
            "timestamp": datetime.now().isoformat(),
            "success": response.success,
            "cost": response.cost,
            "latency_ms": response.latency_ms,
            "tokens": response.tokens_used
        })
        if len(self._call_history) > HISTORY_SIZE:
            self._call_history = self._call_history[-HISTORY_SIZE:]

    @lru_cache(maxsize=1000)
    def _estimate_tokens_cached(self, text_hash: str, text: str) -> int:
        return self._estimate_tokens(text)

    def estimate_tokens_fast(self, text: str) -> int:
        """Token estimation cached by content hash."""
        text_hash = hashlib.md5(text.encode()).hexdigest()
        return self._estimate_tokens_cached(text_hash, text)

    def get_metrics(self) -> Dict[str, Any]:
        """
        Get client performance metrics.

        Returns:
            Dictionary with call counts, error rate, cost and recent latency
        """
        recent_calls = self._call_history[-10:]

        return {
            "provider": self.config.provider.value,
            "model": self.config.model_name,
            "total_calls": self.config.total_calls,
            "total_errors": self.config.total_errors,
            "error_rate": self.config.total_errors / max(self.config.total_calls, 1),
            "total_cost": self.config.total_cost,
            "circuit_open": self.config.circuit_open,
            "recent_latency_avg": sum(c["latency_ms"] for c in recent_calls) / max(len(recent_calls), 1),
        }

    def reset_metrics(self):
        """Reset all metrics (for testing)"""
        self.config.total_calls = 0
        self.config.total_errors = 0
        self.config.total_cost = 0.0
        self.config.circuit_open = False
        self._call_history = []


__all__ = [
    "BaseModelClient",
    "ModelConfig",
    "ModelResponse",
    "ModelProvider",
    "ApiResult",
]
