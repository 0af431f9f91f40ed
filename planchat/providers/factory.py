"""
Provider construction from configuration.

Every supported provider id has a default `ProviderConfig`. Settings
from the YAML file override those defaults; API keys are read from the
environment variable named by `api_key_env` unless given inline.
"""

from __future__ import annotations

import os
from dataclasses import replace
from typing import Any, Dict, List, Optional

from planchat.core.errors import UnknownProviderError
from planchat.core.retry import RetryPolicy
from planchat.providers.anthropic_provider import AnthropicProvider
from planchat.providers.base import BaseProvider, ProviderConfig
from planchat.providers.cli_provider import CLIProvider
from planchat.providers.ollama_provider import OllamaProvider
from planchat.providers.openai_provider import OpenAIProvider

# Registration order of the defaults doubles as the fallback priority.
DEFAULT_CONFIGS: Dict[str, ProviderConfig] = {
    "ollama": ProviderConfig(
        id="ollama",
        name="Ollama",
        base_url="http://127.0.0.1:11434",
        model="llama3",
        timeout=30.0,
        max_retries=3,
    ),
    "gemini": ProviderConfig(
        id="gemini",
        name="Google Gemini",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        model="gemini-2.0-flash",
        timeout=60.0,
        max_retries=3,
    ),
    "openrouter": ProviderConfig(
        id="openrouter",
        name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        model="openai/gpt-4o",
        timeout=60.0,
        max_retries=3,
    ),
    "openai": ProviderConfig(
        id="openai",
        name="OpenAI",
        base_url="https://api.openai.com/v1",
        model="gpt-4o-mini",
        timeout=60.0,
        max_retries=3,
    ),
    "anthropic": ProviderConfig(
        id="anthropic",
        name="Anthropic",
        model="claude-3-5-sonnet-latest",
        timeout=60.0,
        max_retries=3,
    ),
    "custom": ProviderConfig(
        id="custom",
        name="Custom OpenAI-Compatible",
        base_url="http://localhost:8080/v1",
        model="gpt-3.5-turbo",
        timeout=60.0,
        max_retries=3,
    ),
    "gemini-cli": ProviderConfig(
        id="gemini-cli",
        name="Gemini CLI",
        model="gemini-cli",
        timeout=0.0,
        max_retries=0,
    ),
}

DEFAULT_API_KEY_ENVS: Dict[str, str] = {
    "gemini": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "custom": "CUSTOM_API_KEY",
}

# Cloud endpoints refuse anonymous calls; self-hosted ones may not.
API_KEY_REQUIRED = {"gemini", "openrouter", "openai", "anthropic"}


def supported_providers() -> List[str]:
    return list(DEFAULT_CONFIGS)


def default_config(provider_id: str) -> ProviderConfig:
    try:
        return DEFAULT_CONFIGS[provider_id]
    except KeyError:
        raise UnknownProviderError(f"Unknown provider: {provider_id}") from None


def build_config(provider_id: str, settings: Optional[Dict[str, Any]] = None) -> ProviderConfig:
    """
    Merge YAML settings for `provider_id` over its defaults.

    Recognised keys: name, base_url, model, timeout, max_retries,
    api_key, api_key_env.
    """
    settings = settings or {}
    defaults = default_config(provider_id)

    api_key = settings.get("api_key")
    if not api_key:
        env_name = settings.get("api_key_env") or DEFAULT_API_KEY_ENVS.get(provider_id)
        api_key = os.getenv(env_name) if env_name else None

    return replace(
        defaults,
        name=settings.get("name") or defaults.name,
        base_url=settings.get("base_url") or defaults.base_url,
        api_key=api_key or None,
        model=settings.get("model") or defaults.model,
        timeout=float(settings.get("timeout", defaults.timeout)),
        max_retries=int(settings.get("max_retries", defaults.max_retries)),
    )


def create_provider(
    provider_id: str,
    settings: Optional[Dict[str, Any]] = None,
    retry_policy: Optional[RetryPolicy] = None,
    max_malformed_lines: Optional[int] = None,
) -> BaseProvider:
    """Build the adapter for `provider_id` from its YAML settings."""
    settings = settings or {}
    config = build_config(provider_id, settings)

    if provider_id == "ollama":
        return OllamaProvider.from_config(
            config, retry_policy=retry_policy, max_malformed_lines=max_malformed_lines
        )
    if provider_id == "anthropic":
        return AnthropicProvider.from_config(config, retry_policy=retry_policy)
    if provider_id == "gemini-cli":
        command = settings.get("command") or ["gemini"]
        if isinstance(command, str):
            command = command.split()
        return CLIProvider.from_config(config, retry_policy=retry_policy, command=command)
    return OpenAIProvider.from_config(
        config,
        retry_policy=retry_policy,
        requires_api_key=provider_id in API_KEY_REQUIRED,
    )
