"""Tests for the LLM gateway failover and retry behaviour."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from patchwarden.core.config import Settings
from patchwarden.core.errors import ErrorCode, TransientServiceError
from patchwarden.core.llm_client import LLMGateway


@pytest.fixture
def gateway() -> LLMGateway:
    settings = Settings(_env_file=None, llm_max_retries=2, llm_retry_base_delay=0.0)
    return LLMGateway.for_generation(settings)


class TestConstruction:
    def test_generation_and_review_models(self):
        settings = Settings(_env_file=None, generation_llm_model="gen-model", review_llm_model="review-model")
        assert LLMGateway.for_generation(settings).model == "gen-model"
        assert LLMGateway.for_review(settings).model == "review-model"

    def test_token_usage_starts_at_zero(self, gateway):
        assert gateway.token_usage == {"input_tokens": 0, "output_tokens": 0}


class TestComplete:
    @pytest.mark.asyncio
    async def test_primary_success(self, gateway):
        with patch.object(gateway, "_call_claude", AsyncMock(return_value="ok")) as claude, \
                patch.object(gateway, "_call_openai", AsyncMock(return_value="fallback")) as gpt:
            assert await gateway.complete("prompt", system_prompt="sys") == "ok"
        claude.assert_awaited_once()
        gpt.assert_not_awaited()
        args = claude.await_args.args
        assert args[0] == gateway.model
        assert args[1] == "sys"
        assert args[2] == "prompt"

    @pytest.mark.asyncio
    async def test_explicit_temperature_wins(self, gateway):
        with patch.object(gateway, "_call_claude", AsyncMock(return_value="ok")) as claude:
            await gateway.complete("prompt", temperature=0.4)
        assert claude.await_args.args[3] == 0.4

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, gateway):
        claude = AsyncMock(side_effect=[asyncio.TimeoutError(), "second try"])
        with patch.object(gateway, "_call_claude", claude):
            assert await gateway.complete("prompt") == "second try"
        assert claude.await_count == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_openai(self, gateway):
        with patch.object(gateway, "_call_claude", AsyncMock(side_effect=RuntimeError("down"))), \
                patch.object(gateway, "_call_openai", AsyncMock(return_value="from gpt")) as gpt:
            assert await gateway.complete("prompt") == "from gpt"
        assert gpt.await_args.args[0] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_both_providers_fail(self, gateway):
        with patch.object(gateway, "_call_claude", AsyncMock(side_effect=RuntimeError("down"))), \
                patch.object(gateway, "_call_openai", AsyncMock(side_effect=RuntimeError("also down"))):
            with pytest.raises(TransientServiceError) as exc_info:
                await gateway.complete("prompt")
        assert exc_info.value.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert exc_info.value.details["model"] == gateway.model

    @pytest.mark.asyncio
    async def test_timeouts_map_to_timeout_code(self, gateway):
        with patch.object(gateway, "_call_claude", AsyncMock(side_effect=asyncio.TimeoutError())), \
                patch.object(gateway, "_call_openai", AsyncMock(side_effect=asyncio.TimeoutError())) as gpt:
            with pytest.raises(TransientServiceError) as exc_info:
                await gateway.complete("prompt")
        assert gpt.await_count == 2
        assert exc_info.value.code == ErrorCode.EXTERNAL_SERVICE_TIMEOUT
