"""
OpsDesk Assistant — LLM Provider Abstraction.

One public coroutine, `complete()`, routed to the provider named by
LLM_PROVIDER (openai by default; gemini, anthropic and cohere also work).
The classifier is the only caller. Provider SDKs are imported lazily so an
installation only needs the one it uses.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# (api_key, model, system, user_message, max_tokens, temperature) -> text
_CompleteFn = Callable[[str, str, str, str, int, float], Awaitable[str]]


async def _openai(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content or ""


async def _anthropic(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


async def _gemini(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    generative_model = genai.GenerativeModel(model_name=model, system_instruction=system)
    response = await generative_model.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
        ),
    )
    return response.text


async def _cohere(
    api_key: str, model: str, system: str, user_message: str, max_tokens: int, temperature: float,
) -> str:
    import cohere

    client = cohere.AsyncClientV2(api_key=api_key)
    response = await client.chat(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.message.content[0].text


_DEFAULT_MODELS: dict[str, tuple[_CompleteFn, str]] = {
    "openai":    (_openai,    "gpt-4o-mini"),
    "anthropic": (_anthropic, "claude-haiku-4-5-20251001"),
    "gemini":    (_gemini,    "gemini-2.0-flash"),
    "cohere":    (_cohere,    "command-a-03-2025"),
}


@dataclass
class _Provider:
    name: str
    fn: _CompleteFn
    model: str
    api_key: str


_provider: _Provider | None = None


def _load_provider() -> _Provider:
    from opsdesk.config import settings

    name = settings.LLM_PROVIDER.lower()
    if name not in _DEFAULT_MODELS:
        raise ValueError(
            f"Unknown LLM_PROVIDER={name!r}. Supported: {', '.join(_DEFAULT_MODELS)}"
        )
    fn, default_model = _DEFAULT_MODELS[name]
    provider = _Provider(
        name=name,
        fn=fn,
        model=settings.LLM_MODEL or default_model,
        api_key=settings.LLM_API_KEY,
    )
    logger.info("LLM provider: %s, model: %s", provider.name, provider.model)
    return provider


def reset_provider() -> None:
    """Forget the cached provider so the next call re-reads settings."""
    global _provider
    _provider = None


async def complete(
    system: str, user_message: str, max_tokens: int = 256, temperature: float = 0.0,
) -> str:
    """Send one system+user prompt and return the raw response text.

    Raises on provider errors; callers decide how to degrade.
    """
    global _provider

    if _provider is None:
        _provider = _load_provider()

    return await _provider.fn(
        _provider.api_key, _provider.model, system, user_message, max_tokens, temperature,
    )
