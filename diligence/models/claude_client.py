"""
Claude (Anthropic) Synthesis Client

The synthesis collaborator: turns research text into structured findings
and consolidated findings into report prose.

Model: configured by ``CLAUDE_MODEL``
Context: 200K tokens

Features:
- Fixed analyst-persona system preamble
- Response caching (identical prompt and system -> cached text, 1 hour TTL)
- Retries through the shared RetryPolicy
- Anthropic SDK errors translated into typed collaborator errors
- Cost tracking per request
"""

import hashlib
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import anthropic
import tiktoken
from anthropic import AsyncAnthropic

from config.settings import settings
from config.logging_config import get_logger
from diligence.core.exceptions import (
    AuthenticationError,
    CollaboratorError,
    CollaboratorTimeoutError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from diligence.core.retry import RetryPolicy
from diligence.models.base_client import ApiResult, BaseModelClient, ModelConfig, ModelProvider

logger = get_logger(__name__)

ANALYST_PREAMBLE = (
    "You are a senior credit risk analyst at a financial institution, writing due-diligence "
    "material for a credit committee. Be factual, specific and concise. Cite amounts, dates, "
    "authorities and case references exactly as given. Never invent facts that are not in the "
    "material provided."
)

CACHE_TTL = timedelta(hours=1)
CACHE_SIZE = 100

_encoder = None


def _get_encoder():
    """cl100k_base encoder, loaded on first use."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def translate_anthropic_error(error: Exception) -> CollaboratorError:
    """
    Map an Anthropic SDK exception onto the collaborator error types.

    ``APITimeoutError`` subclasses ``APIConnectionError`` and is checked first.
    """
    message = f"Synthesis service error: {error}"
    collaborator = ModelProvider.ANTHROPIC.value

    if isinstance(error, anthropic.APITimeoutError):
        return CollaboratorTimeoutError(message, collaborator=collaborator)
    if isinstance(error, anthropic.APIConnectionError):
        return NetworkError(message, collaborator=collaborator)

    status = getattr(error, "status_code", None)
    if isinstance(error, anthropic.RateLimitError):
        return RateLimitError(message, status_code=status, collaborator=collaborator)
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return AuthenticationError(message, status_code=status, collaborator=collaborator)
    if status is not None and status >= 500:
        return ServerError(message, status_code=status, collaborator=collaborator)
    return InvalidRequestError(message, status_code=status, collaborator=collaborator)


class ClaudeClient(BaseModelClient):
    """
    Claude synthesis client.

    Usage:
        >>> client = ClaudeClient()
        >>> text = await client.synthesize("Summarize these findings ...")
    """

    def __init__(self, config: Optional[ModelConfig] = None, retry_policy: Optional[RetryPolicy] = None):
        if config is None:
            config = ModelConfig(
                provider=ModelProvider.ANTHROPIC,
                model_name=settings.CLAUDE_MODEL,
                api_key=settings.ANTHROPIC_API_KEY,
                max_tokens=settings.SYNTHESIS_MAX_TOKENS,
                temperature=settings.SYNTHESIS_TEMPERATURE,
                timeout=settings.SYNTHESIS_TIMEOUT,
                rate_limit=settings.CLAUDE_RATE_LIMIT,
                cost_per_1k_input=settings.CLAUDE_INPUT_COST_PER_1M / 1000,
                cost_per_1k_output=settings.CLAUDE_OUTPUT_COST_PER_1M / 1000,
            )
        if retry_policy is None:
            retry_policy = RetryPolicy.from_settings(name="synthesis")

        super().__init__(config, retry_policy)

        self.client = (
            AsyncAnthropic(api_key=config.api_key, timeout=config.timeout, max_retries=0)
            if config.api_key else None
        )
        self._prompt_cache: Dict[str, Dict[str, Any]] = {}

    async def synthesize(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> str:
        """
        Run one synthesis request and return the response text.

        Raises:
            CollaboratorError: Once retries are exhausted
        """
        response = await self.call(prompt, system_prompt or ANALYST_PREAMBLE, **kwargs)
        return response.content

    async def _make_api_call(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        **kwargs
    ) -> ApiResult:
        if self.client is None:
            raise AuthenticationError(
                "Anthropic API key not configured",
                collaborator=ModelProvider.ANTHROPIC.value,
            )

        system = system_prompt or ANALYST_PREAMBLE

        if kwargs.get("use_cache", True):
            cached = self._get_cached_response(prompt, system)
            if cached is not None:
                return ApiResult(content=cached, metadata={"cached": True})

        max_tokens = kwargs.get("max_tokens", self.config.max_tokens)
        temperature = kwargs.get("temperature", self.config.temperature)

        self.logger.debug(
            "Calling Claude API",
            extra={"prompt_length": len(prompt), "max_tokens": max_tokens, "temperature": temperature}
        )

        try:
            response = await self.client.messages.create(
                model=self.config.model_name,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise translate_anthropic_error(e) from e

        content = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )

        if kwargs.get("use_cache", True):
            self._cache_response(prompt, system, content)

        usage = getattr(response, "usage", None)
        return ApiResult(
            content=content,
            input_tokens=getattr(usage, "input_tokens", None),
            output_tokens=getattr(usage, "output_tokens", None),
            metadata={"stop_reason": getattr(response, "stop_reason", None)},
        )

    @staticmethod
    def _cache_key(prompt: str, system_prompt: str) -> str:
        return hashlib.md5(f"{system_prompt}:{prompt}".encode()).hexdigest()

    def _get_cached_response(self, prompt: str, system_prompt: str) -> Optional[str]:
        cache_key = self._cache_key(prompt, system_prompt)
        cached = self._prompt_cache.get(cache_key)
        if cached is None:
            return None

        age = datetime.now() - cached["timestamp"]
        if age < CACHE_TTL:
            self.logger.debug("Cache hit", extra={"cache_key": cache_key[:8], "age_seconds": age.total_seconds()})
            return cached["response"]

        del self._prompt_cache[cache_key]
        return None

    def _cache_response(self, prompt: str, system_prompt: str, response: str):
        """Cache a response, evicting the oldest entry beyond the size limit."""
        cache_key = self._cache_key(prompt, system_prompt)
        self._prompt_cache[cache_key] = {"response": response, "timestamp": datetime.now()}

        if len(self._prompt_cache) > CACHE_SIZE:
            oldest_key = min(self._prompt_cache, key=lambda k: self._prompt_cache[k]["timestamp"])
            del self._prompt_cache[oldest_key]

    def _estimate_tokens(self, text: str) -> int:
        """
        Estimate token count with tiktoken (Claude's tokenizer is close to cl100k).

        Falls back to 4 characters per token if the encoding cannot be loaded.
        """
        try:
            return len(_get_encoder().encode(text))
        except (ValueError, OSError) as e:
            self.logger.warning(f"tiktoken encoding failed: {e}")
            return len(text) // 4


__all__ = ["ClaudeClient", "translate_anthropic_error", "ANALYST_PREAMBLE"]
