"""
LLM provider client with an OpenAI-compatible interface (DeepSeek by default)
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from lessonchat.core.config import settings
from lessonchat.deps.exceptions import (
    InvalidAPIKeyError,
    MissingAPIKeyError,
    ProviderError,
    ProviderTimeoutError,
)
from lessonchat.deps.utils import sanitize_api_key

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    content: str
    input_tokens: int
    output_tokens: int
    model: str
    finish_reason: Optional[str] = None


@dataclass
class StreamChunk:
    """One increment of a streamed completion; the final chunk carries usage and no delta"""
    delta: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    finish_reason: Optional[str] = None

    @property
    def has_usage(self) -> bool:
        return self.input_tokens is not None and self.output_tokens is not None


def _get_api_key(api_key: Optional[str] = None) -> str:
    """
    Get API key from parameter, Settings, or environment variable (in that order).

    Raises:
        MissingAPIKeyError: If no API key is found
    """
    resolved_key = api_key or settings.llm_api_key or os.getenv("DEEPSEEK_API_KEY")

    # Treat empty string as missing
    if not resolved_key or resolved_key.strip() == "":
        raise MissingAPIKeyError()

    return resolved_key.strip()


def translate_provider_error(error: Exception, api_key: Optional[str] = None) -> ProviderError:
    """
    Map an openai SDK exception onto the pipeline's provider errors.

    Connection failures, timeouts, 429 and 5xx responses are retriable;
    authentication, permission and request errors are not. Transport errors
    raised by httpx while a stream is being read count as connection failures.
    """
    message = sanitize_api_key(str(error), api_key)

    if isinstance(error, ProviderError):
        return error
    if isinstance(error, openai.AuthenticationError):
        return InvalidAPIKeyError()
    if isinstance(error, (openai.APITimeoutError, asyncio.TimeoutError)):
        return ProviderTimeoutError(f"LLM provider timed out: {message}")
    if isinstance(error, openai.APIConnectionError):
        return ProviderError(f"LLM provider connection failed: {message}", retriable=True)
    if isinstance(error, openai.RateLimitError):
        return ProviderError(f"LLM provider rate limited the request: {message}", retriable=True)
    if isinstance(error, openai.APIStatusError):
        retriable = error.status_code >= 500
        return ProviderError(f"LLM provider returned {error.status_code}: {message}", retriable=retriable,
                             details={"status_code": error.status_code})
    if isinstance(error, httpx.TimeoutException):
        return ProviderTimeoutError(f"LLM provider timed out: {message}")
    if isinstance(error, httpx.HTTPError):
        return ProviderError(f"LLM provider connection failed: {message}", retriable=True)
    return ProviderError(f"LLM provider error: {message}", retriable=False)


class LLMClient:
    """
    Async chat-completion client. The SDK's own retries are disabled;
    retry policy belongs to the orchestrator.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self._api_key = api_key
        self.base_url = base_url or settings.llm_base_url
        self.model = model or settings.llm_model
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            resolved_api_key = _get_api_key(self._api_key)
            self._api_key = resolved_api_key
            self._client = AsyncOpenAI(
                api_key=resolved_api_key,
                base_url=self.base_url,
                max_retries=0,
                timeout=settings.llm_total_timeout,
            )
        return self._client

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        """
        Send a single (non-streaming) chat completion request.

        Raises:
            MissingAPIKeyError: If API key is missing
            InvalidAPIKeyError: If the provider rejects the key
            ProviderTimeoutError: If no response arrives within ``timeout``
            ProviderError: For any other provider failure
        """
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=settings.llm_temperature if temperature is None else temperature,
                    max_tokens=max_tokens or settings.llm_max_output_tokens,
                    stream=False,
                ),
                timeout=timeout or settings.llm_total_timeout,
            )
        except Exception as e:
            error = translate_provider_error(e, self._api_key)
            logger.error(f"LLM completion failed: {error.message}")
            raise error from e

        if not response.choices:
            raise ProviderError("No response content received from LLM provider", retriable=True)

        choice = response.choices[0]
        usage = response.usage
        return CompletionResult(
            content=choice.message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=response.model or self.model,
            finish_reason=choice.finish_reason,
        )

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat completion as text deltas, terminated by a usage chunk.

        Deadlines are applied by the caller between chunks.
        """
        client = self._get_client()
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=settings.llm_temperature if temperature is None else temperature,
                max_tokens=max_tokens or settings.llm_max_output_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
        except Exception as e:
            raise translate_provider_error(e, self._api_key) from e

        try:
            async for chunk in stream:
                if chunk.choices:
                    choice = chunk.choices[0]
                    delta = choice.delta.content if choice.delta else None
                    if delta or choice.finish_reason:
                        yield StreamChunk(delta=delta or "", finish_reason=choice.finish_reason)
                if chunk.usage:
                    yield StreamChunk(
                        input_tokens=chunk.usage.prompt_tokens,
                        output_tokens=chunk.usage.completion_tokens,
                    )
        except (openai.APIError, httpx.HTTPError, asyncio.TimeoutError) as e:
            raise translate_provider_error(e, self._api_key) from e
        finally:
            await stream.close()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


# Global LLM client instance
llm_client = LLMClient()
