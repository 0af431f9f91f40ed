"""
Configuration loader for planchat.

The configuration is stored in a YAML file. This module loads that file
into a Python dictionary, validates the sections the rest of the system
relies on, and builds the provider registry from it. Sensitive values
like API keys are not stored in the YAML file; providers name an
environment variable (`api_key_env`) that is read at construction time.
"""

import logging
import os
from typing import Any, Dict, Optional

import yaml

from planchat.core.poller import PollingPolicy
from planchat.core.retry import RetryPolicy
from planchat.providers.factory import create_provider, supported_providers
from planchat.providers.health import DEFAULT_CACHE_TTL, ProviderHealthService
from planchat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


def load_app_config(path: str) -> Dict[str, Any]:
    """
    Load the application configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A dictionary representing the configuration.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the configuration is not a mapping or a section
            has the wrong shape.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found at: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError("Top-level configuration must be a mapping/dictionary.")

    validate_config(data)
    return data


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = cfg.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{key}' section must be a mapping.")
    return value


def validate_config(cfg: Dict[str, Any]) -> None:
    """Check section shapes and provider ids. Raises ValueError."""
    providers_cfg = _section(cfg, "providers")
    known = set(supported_providers())
    for provider_id, settings in providers_cfg.items():
        if provider_id not in known:
            raise ValueError(
                f"Unknown provider '{provider_id}' in config. "
                f"Supported: {', '.join(sorted(known))}."
            )
        if settings is not None and not isinstance(settings, dict):
            raise ValueError(f"Settings for provider '{provider_id}' must be a mapping.")

    for key in ("retry", "polling", "streaming", "logging", "prompts", "health"):
        _section(cfg, key)

    active = cfg.get("active_provider")
    if active is not None:
        settings = providers_cfg.get(active) or {}
        if not settings.get("enabled", False):
            raise ValueError(f"active_provider '{active}' is not an enabled provider.")

    max_malformed = _section(cfg, "streaming").get("max_malformed_lines")
    if max_malformed is not None and int(max_malformed) < 1:
        raise ValueError("streaming.max_malformed_lines must be 1 or greater.")

    health = _section(cfg, "health")
    priority = health.get("priority")
    if priority is not None and (
        not isinstance(priority, list) or not all(isinstance(p, str) for p in priority)
    ):
        raise ValueError("health.priority must be a list of provider ids.")
    if float(health.get("cache_ttl", DEFAULT_CACHE_TTL)) < 0:
        raise ValueError("health.cache_ttl must be 0 or greater.")


def retry_policy(cfg: Dict[str, Any]) -> RetryPolicy:
    return RetryPolicy.from_config(_section(cfg, "retry"))


def polling_policy(cfg: Dict[str, Any]) -> PollingPolicy:
    return PollingPolicy.from_config(_section(cfg, "polling"))


def max_malformed_lines(cfg: Dict[str, Any]) -> Optional[int]:
    value = _section(cfg, "streaming").get("max_malformed_lines")
    return int(value) if value is not None else None


def log_level(cfg: Dict[str, Any]) -> str:
    return str(_section(cfg, "logging").get("level", "WARNING")).upper()


def health_service(cfg: Dict[str, Any], registry: ProviderRegistry) -> ProviderHealthService:
    health = _section(cfg, "health")
    return ProviderHealthService(
        registry,
        cache_ttl=float(health.get("cache_ttl", DEFAULT_CACHE_TTL)),
        priority=health.get("priority"),
    )


def build_registry(cfg: Dict[str, Any]) -> ProviderRegistry:
    """
    Build and register all enabled providers.

    Providers are registered in the order they appear in the file, which
    is also the order fallbacks are suggested in. `active_provider`
    selects the active one; otherwise the first enabled provider is.
    """
    registry = ProviderRegistry()
    policy = retry_policy(cfg)
    malformed = max_malformed_lines(cfg)

    for provider_id, settings in _section(cfg, "providers").items():
        settings = settings or {}
        if not settings.get("enabled", False):
            continue
        registry.register(
            create_provider(
                provider_id,
                settings,
                retry_policy=policy,
                max_malformed_lines=malformed,
            )
        )
        logger.debug("Registered provider '%s'", provider_id)

    active = cfg.get("active_provider")
    if active:
        registry.set_active_provider(active)
    return registry
