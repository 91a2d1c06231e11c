"""
Deep Research Client

Integration with the deep-search research service (an OpenAI-compatible
chat-completions endpoint that searches, reads and reasons before it
answers).

Request:
- system instruction (iteration-specific)
- user prompt (entity-specific query)
- search depth hint, mapped to the service's reasoning effort
- token budget

Response:
- free-text content (reasoning stripped, see ``extract_final_answer``)
- token usage
- citations (optional; ``None`` when the service reports none)
- confidence (optional; ``None`` when the service reports none)

HTTP failures are translated into typed collaborator errors:
429 -> RateLimitError, 401/403 -> AuthenticationError,
408/504 -> CollaboratorTimeoutError, other 5xx -> ServerError,
other 4xx -> InvalidRequestError, connection failures -> NetworkError.
"""

import asyncio
import re
from typing import Any, Dict, Optional

import aiohttp

from config.settings import settings
from config.logging_config import get_logger
from diligence.core.exceptions import (
    AuthenticationError,
    CollaboratorTimeoutError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from diligence.models.base_client import ApiResult, BaseModelClient, ModelConfig, ModelProvider, ModelResponse

logger = get_logger(__name__)

MIN_ANSWER_LENGTH = 50
NO_FINDINGS_PLACEHOLDER = (
    "Research completed but no specific adverse findings identified through public records search."
)

# Search depth hint -> reasoning effort
REASONING_EFFORT = {
    "reduced": "low",
    "standard": "medium",
    "exhaustive": "high",
}

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_UNCLOSED_THINK = re.compile(r"<think>.*", re.IGNORECASE | re.DOTALL)
_REASONING_LINE = re.compile(
    r"^\s*(?:I need to|I must|I will|I'll|Let me|I should|First, I)\b.*$",
    re.IGNORECASE | re.MULTILINE,
)


def extract_final_answer(content: Optional[str]) -> str:
    """
    Strip the service's visible reasoning and keep the answer.

    Removes ``<think>`` blocks and reasoning preamble lines. An answer
    shorter than 50 characters becomes the no-findings placeholder.

    Example:
        >>> extract_final_answer("<think>searching...</think>No matters found.")
        'Research completed but no specific adverse findings identified through public records search.'
    """
    text = _THINK_BLOCK.sub("", content or "")
    text = _UNCLOSED_THINK.sub("", text)
    text = _REASONING_LINE.sub("", text)
    text = re.sub(r"\n{3,}", "\n\n", text).strip()

    if len(text) < MIN_ANSWER_LENGTH:
        return NO_FINDINGS_PLACEHOLDER
    return text


def _count_citations(data: Dict[str, Any], message: Dict[str, Any]) -> Optional[int]:
    annotations = message.get("annotations")
    if isinstance(annotations, list) and annotations:
        return len(annotations)
    for key in ("visitedURLs", "readURLs", "citations"):
        urls = data.get(key)
        if isinstance(urls, list):
            return len(urls)
    return None


def _read_confidence(data: Dict[str, Any], message: Dict[str, Any]) -> Optional[float]:
    for source in (message, data):
        value = source.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = float(value)
            return value / 100 if value > 1 else value
    return None


def raise_for_status(status: int, body: str) -> None:
    """Translate an HTTP error status into a typed collaborator error."""
    if status < 400:
        return
    message = f"Research service returned HTTP {status}: {body[:200]}"
    kwargs = {"status_code": status, "collaborator": ModelProvider.RESEARCH.value}
    if status == 429:
        raise RateLimitError(message, **kwargs)
    if status in (401, 403):
        raise AuthenticationError(message, **kwargs)
    if status in (408, 504):
        raise CollaboratorTimeoutError(message, **kwargs)
    if status >= 500:
        raise ServerError(message, **kwargs)
    raise InvalidRequestError(message, **kwargs)


class DeepResearchClient(BaseModelClient):
    """
    Research service client.

    Usage:
        >>> client = DeepResearchClient()
        >>> response = await client.research(query)
        >>> response.metadata["citations"]
        12
    """

    def __init__(self, config: Optional[ModelConfig] = None, retry_policy=None):
        if config is None:
            config = ModelConfig(
                provider=ModelProvider.RESEARCH,
                model_name=settings.RESEARCH_MODEL,
                api_key=settings.RESEARCH_API_KEY,
                max_tokens=settings.RESEARCH_BUDGET_TOKENS,
                timeout=settings.RESEARCH_TIMEOUT,
                rate_limit=60,
            )
        super().__init__(config, retry_policy)
        self.url = settings.RESEARCH_API_URL

    async def research(self, query) -> ModelResponse:
        """Run one ``ResearchQuery``."""
        return await self.call(
            query.prompt,
            query.system_instruction,
            budget_tokens=query.budget_tokens,
            search_depth=query.search_depth,
        )

    async def _make_api_call(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        **kwargs
    ) -> ApiResult:
        if not self.config.api_key:
            raise AuthenticationError(
                "Research API key not configured",
                collaborator=ModelProvider.RESEARCH.value,
            )

        search_depth = kwargs.get("search_depth", "standard")
        search_depth = getattr(search_depth, "value", search_depth)
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.config.model_name,
            "messages": messages,
            "stream": False,
            "budget_tokens": int(kwargs.get("budget_tokens") or self.config.max_tokens),
            "max_attempts": 2,
            "reasoning_effort": REASONING_EFFORT.get(search_depth, "medium"),
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        self.logger.debug(
            "Calling research service",
            extra={"prompt_length": len(prompt), "budget_tokens": payload["budget_tokens"],
                   "reasoning_effort": payload["reasoning_effort"]}
        )

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    headers=headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout)
                ) as response:
                    if response.status >= 400:
                        raise_for_status(response.status, await response.text())
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise CollaboratorTimeoutError(
                f"Research service timed out after {self.config.timeout}s",
                collaborator=ModelProvider.RESEARCH.value,
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Research service connection failed: {e}",
                collaborator=ModelProvider.RESEARCH.value,
            ) from e

        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        usage = data.get("usage") or {}

        return ApiResult(
            content=extract_final_answer(message.get("content")),
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            metadata={
                "citations": _count_citations(data, message),
                "confidence": _read_confidence(data, message),
                "total_tokens": usage.get("total_tokens"),
            },
        )

    def _estimate_tokens(self, text: str) -> int:
        # The research service bills by its own tokenizer; 4 chars per token is close enough
        return len(text) // 4


def create_research_client() -> DeepResearchClient:
    """Create the research client with default settings."""
    return DeepResearchClient()


__all__ = [
    "DeepResearchClient",
    "create_research_client",
    "extract_final_answer",
    "raise_for_status",
    "NO_FINDINGS_PLACEHOLDER",
]
