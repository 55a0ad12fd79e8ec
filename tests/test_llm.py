"""Tests for opsdesk.core.llm — provider selection and routing."""

import pytest
from unittest.mock import AsyncMock, patch

from opsdesk.config import settings
from opsdesk.core import llm


@pytest.fixture(autouse=True)
def _fresh_provider():
    llm.reset_provider()
    yield
    llm.reset_provider()


class TestProviderSelection:
    def test_default_model_used_when_unset(self):
        with patch.object(settings, "LLM_PROVIDER", "anthropic"), \
             patch.object(settings, "LLM_MODEL", ""):
            provider = llm._load_provider()
        assert provider.name == "anthropic"
        assert provider.model == llm._DEFAULT_MODELS["anthropic"][1]

    def test_explicit_model_wins(self):
        with patch.object(settings, "LLM_PROVIDER", "OpenAI"), \
             patch.object(settings, "LLM_MODEL", "gpt-4o"):
            provider = llm._load_provider()
        assert provider.name == "openai"
        assert provider.model == "gpt-4o"

    def test_unknown_provider_raises(self):
        with patch.object(settings, "LLM_PROVIDER", "llama"):
            with pytest.raises(ValueError, match="Unknown LLM_PROVIDER"):
                llm._load_provider()


class TestComplete:
    @pytest.mark.asyncio
    async def test_routes_to_provider(self):
        fake = AsyncMock(return_value='{"intent": "unknown"}')
        with patch.dict(llm._DEFAULT_MODELS, {"openai": (fake, "test-model")}), \
             patch.object(settings, "LLM_PROVIDER", "openai"), \
             patch.object(settings, "LLM_MODEL", ""):
            text = await llm.complete("system", "hello", max_tokens=64)

        assert text == '{"intent": "unknown"}'
        fake.assert_awaited_once_with(
            settings.LLM_API_KEY, "test-model", "system", "hello", 64, 0.0,
        )

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self):
        fake = AsyncMock(side_effect=RuntimeError("rate limited"))
        with patch.dict(llm._DEFAULT_MODELS, {"openai": (fake, "test-model")}), \
             patch.object(settings, "LLM_PROVIDER", "openai"):
            with pytest.raises(RuntimeError):
                await llm.complete("system", "hello")
