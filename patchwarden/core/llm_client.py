"""LLM gateway: async text completion over Claude with a GPT-4o fallback."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import anthropic
import openai

from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import ErrorCode, TransientServiceError

logger = logging.getLogger(__name__)

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
    asyncio.TimeoutError,
)


class CompletionGateway(Protocol):
    """Anything that turns a prompt into text. Fakes implement this in tests."""

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str: ...


class LLMGateway:
    """Unified async client for fix generation and review prompts.

    Features:
    - Primary (Claude) + fallback (GPT-4o) with automatic failover
    - Exponential backoff retries on rate limits / transient errors
    - Per-call timeout via ``asyncio.wait_for``
    - Token usage tracking

    One instance is bound to one model id. The pipeline builds two: a
    generation gateway and a review gateway.
    """

    def __init__(
        self,
        model: str | None = None,
        temperature: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._anthropic = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self._openai = openai.AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.generation_llm_model
        self._fallback_model = settings.fallback_llm_model
        self._temperature = settings.generation_temperature if temperature is None else temperature
        self._max_tokens = settings.llm_max_tokens
        self._max_retries = settings.llm_max_retries
        self._retry_base_delay = settings.llm_retry_base_delay
        self._timeout = settings.llm_timeout_seconds
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    @classmethod
    def for_generation(cls, settings: Settings | None = None) -> "LLMGateway":
        settings = settings or get_settings()
        return cls(settings.generation_llm_model, settings.generation_temperature, settings)

    @classmethod
    def for_review(cls, settings: Settings | None = None) -> "LLMGateway":
        settings = settings or get_settings()
        return cls(settings.review_llm_model, settings.review_temperature, settings)

    @property
    def token_usage(self) -> dict[str, int]:
        return {
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send a prompt and return the raw response text.

        Tries the bound Claude model first, falls back to GPT-4o on failure.
        Each call is retried with exponential backoff on transient errors.

        Raises:
            TransientServiceError: both providers failed.
        """
        model = model or self.model
        temperature = self._temperature if temperature is None else temperature
        max_tokens = max_tokens or self._max_tokens
        system_prompt = system_prompt or ""
        try:
            return await self._retry(
                self._call_claude, model, system_prompt, prompt, temperature, max_tokens,
            )
        except Exception as e:
            logger.warning("Claude call failed after retries: %s, falling back to %s", e, self._fallback_model)
        try:
            return await self._retry(
                self._call_openai, self._fallback_model, system_prompt, prompt,
                temperature, max_tokens,
            )
        except Exception as e:
            code = (
                ErrorCode.EXTERNAL_SERVICE_TIMEOUT
                if isinstance(e, asyncio.TimeoutError)
                else ErrorCode.EXTERNAL_SERVICE_ERROR
            )
            raise TransientServiceError(
                f"LLM completion failed: {e}", code=code, details={"model": model},
            ) from e

    async def _retry(self, fn, *args: Any) -> str:
        """Retry a provider call with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return await asyncio.wait_for(fn(*args), timeout=self._timeout)
            except _RETRYABLE as e:
                last_error = e
                delay = self._retry_base_delay * (2 ** attempt)
                logger.info("Retry %d/%d after %.1fs: %s", attempt + 1, self._max_retries, delay, e)
                await asyncio.sleep(delay)
        raise last_error or TransientServiceError("LLM retries exhausted")

    async def _call_claude(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        message = await self._anthropic.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        self._total_input_tokens += message.usage.input_tokens
        self._total_output_tokens += message.usage.output_tokens
        return "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )

    async def _call_openai(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        messages = [{"role": "user", "content": user_prompt}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})
        response = await self._openai.chat.completions.create(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=messages,
        )
        usage = response.usage
        if usage:
            self._total_input_tokens += usage.prompt_tokens
            self._total_output_tokens += usage.completion_tokens
        return response.choices[0].message.content or ""
