from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from .parsing import coerce_anthropic_text, coerce_completion_text, provider_error_message

logger = logging.getLogger(__name__)

_OPENAI_API_BASE = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
_OPENROUTER_API_BASE = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
_ANTHROPIC_API_BASE = os.getenv("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com/v1").rstrip("/")


class ProviderError(RuntimeError):
    pass


class ProviderUnavailableError(ProviderError):
    pass


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.35
    max_output_tokens: int = 700
    timeout_seconds: float = 25.0
    model: str | None = None


def chat_provider_candidates() -> list[dict[str, Any]]:
    provider_preference = (os.getenv("BALLI_CHAT_PROVIDER") or "auto").strip().lower()
    candidates: list[dict[str, Any]] = []

    anthropic_api_key = (os.getenv("ANTHROPIC_API_KEY") or "").strip()
    if anthropic_api_key:
        candidates.append(
            {
                "provider": "anthropic",
                "base_url": _ANTHROPIC_API_BASE,
                "api_key": anthropic_api_key,
                "model": (os.getenv("ANTHROPIC_MODEL") or "claude-3-5-sonnet-latest").strip(),
            }
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            {
                "provider": "openrouter",
                "base_url": _OPENROUTER_API_BASE,
                "api_key": openrouter_api_key,
                "model": (os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            }
        )

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            {
                "provider": "openai",
                "base_url": _OPENAI_API_BASE,
                "api_key": openai_api_key,
                "model": (os.getenv("BALLI_CHAT_MODEL") or "gpt-4o-mini").strip(),
            }
        )

    if provider_preference in {"", "auto"}:
        return candidates

    aliases = {
        "claude": "anthropic",
        "anthropic": "anthropic",
        "openrouter": "openrouter",
        "openai": "openai",
    }
    canonical = aliases.get(provider_preference)
    if not canonical:
        return candidates
    preferred = [candidate for candidate in candidates if candidate["provider"] == canonical]
    others = [candidate for candidate in candidates if candidate["provider"] != canonical]
    return preferred + others


def _openai_headers(provider: dict[str, Any]) -> dict[str, str]:
    headers: dict[str, str] = {
        "Authorization": f"Bearer {provider['api_key']}",
        "Content-Type": "application/json",
    }
    if provider["provider"] == "openrouter":
        site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
        app_name = (os.getenv("OPENROUTER_APP_NAME") or "Balli").strip()
        if site_url:
            headers["HTTP-Referer"] = site_url
        if app_name:
            headers["X-Title"] = app_name
    return headers


def _anthropic_headers(provider: dict[str, Any]) -> dict[str, str]:
    return {
        "x-api-key": str(provider["api_key"]),
        "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
        "Content-Type": "application/json",
    }


def _anthropic_payload(
    provider: dict[str, Any],
    *,
    system_prompt: str,
    messages: list[dict[str, str]],
    config: GenerationConfig,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": config.model or provider["model"],
        "max_tokens": config.max_output_tokens,
        "temperature": config.temperature,
        "messages": messages,
    }
    if system_prompt:
        payload["system"] = system_prompt
    return payload


def _openai_payload(
    provider: dict[str, Any],
    *,
    messages: list[dict[str, str]],
    config: GenerationConfig,
) -> dict[str, Any]:
    return {
        "model": config.model or provider["model"],
        "temperature": config.temperature,
        "max_tokens": config.max_output_tokens,
        "messages": messages,
    }


def _history_messages(history: list[dict[str, Any]]) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for turn in history:
        role = str(turn.get("role") or "").strip().lower()
        if role == "model":
            role = "assistant"
        if role not in {"user", "assistant"}:
            continue
        content = str(turn.get("content") or "").strip()
        if not content:
            continue
        messages.append({"role": role, "content": content[:1200]})
    return messages


def openai_compatible_chat(
    *,
    provider: dict[str, Any],
    messages: list[dict[str, str]],
    config: GenerationConfig,
) -> str | None:
    with httpx.Client(timeout=httpx.Timeout(config.timeout_seconds, connect=8.0)) as client:
        response = client.post(
            f"{provider['base_url']}/chat/completions",
            headers=_openai_headers(provider),
            json=_openai_payload(provider, messages=messages, config=config),
        )
    if response.status_code >= 400:
        raise ProviderError(provider_error_message(response))
    text = coerce_completion_text(response.json()).strip()
    return text or None


def anthropic_chat(
    *,
    provider: dict[str, Any],
    system_prompt: str,
    messages: list[dict[str, str]],
    config: GenerationConfig,
) -> str | None:
    with httpx.Client(timeout=httpx.Timeout(config.timeout_seconds, connect=8.0)) as client:
        response = client.post(
            f"{provider['base_url']}/messages",
            headers=_anthropic_headers(provider),
            json=_anthropic_payload(provider, system_prompt=system_prompt, messages=messages, config=config),
        )
    if response.status_code >= 400:
        raise ProviderError(provider_error_message(response))
    text = coerce_anthropic_text(response.json())
    return text or None


def llm_chat_reply(
    *,
    system_prompt: str,
    message: str,
    history: list[dict[str, Any]],
    fallback_reply: str,
    config: GenerationConfig | None = None,
) -> str:
    providers = chat_provider_candidates()
    if not providers:
        logger.info("chat llm unavailable: no provider key found in runtime env")
        return fallback_reply

    config = config or GenerationConfig(
        timeout_seconds=float(os.getenv("BALLI_CHAT_TIMEOUT_SECONDS", "25")),
    )
    conversation = [*_history_messages(history), {"role": "user", "content": message.strip()[:2000]}]
    for provider in providers:
        provider_name = str(provider.get("provider") or "unknown")
        try:
            if provider_name == "anthropic":
                text = anthropic_chat(
                    provider=provider,
                    system_prompt=system_prompt,
                    messages=conversation,
                    config=config,
                )
            else:
                text = openai_compatible_chat(
                    provider=provider,
                    messages=[{"role": "system", "content": system_prompt}, *conversation],
                    config=config,
                )
            if text:
                logger.info("chat llm provider used (%s)", provider_name)
                return text
            logger.warning("chat llm provider empty response (%s)", provider_name)
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("chat llm call failed (%s): %s", provider_name, exc)
            continue
    return fallback_reply


async def generate_text(prompt: str, config: GenerationConfig) -> str:
    """Single-prompt completion over the first provider that answers.

    Raises ``ProviderUnavailableError`` when no provider key is configured and
    ``ProviderError`` when every configured provider fails.
    """
    providers = chat_provider_candidates()
    if not providers:
        raise ProviderUnavailableError("No generation provider configured.")

    messages = [{"role": "user", "content": prompt}]
    errors: list[str] = []
    async with httpx.AsyncClient(timeout=httpx.Timeout(config.timeout_seconds, connect=8.0)) as client:
        for provider in providers:
            provider_name = str(provider.get("provider") or "unknown")
            try:
                if provider_name == "anthropic":
                    response = await client.post(
                        f"{provider['base_url']}/messages",
                        headers=_anthropic_headers(provider),
                        json=_anthropic_payload(provider, system_prompt="", messages=messages, config=config),
                    )
                else:
                    response = await client.post(
                        f"{provider['base_url']}/chat/completions",
                        headers=_openai_headers(provider),
                        json=_openai_payload(provider, messages=messages, config=config),
                    )
                if response.status_code >= 400:
                    raise ProviderError(provider_error_message(response))
                body = response.json()
                text = coerce_anthropic_text(body) if provider_name == "anthropic" else coerce_completion_text(body)
            except (httpx.HTTPError, ProviderError, ValueError) as exc:
                logger.warning("generation call failed (%s): %s", provider_name, exc)
                errors.append(f"{provider_name}: {exc}")
                continue
            if text.strip():
                return text
            errors.append(f"{provider_name}: empty response")
    raise ProviderError("; ".join(errors) or "No provider produced text.")
