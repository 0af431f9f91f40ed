"""
Backend provider implementations.

This package collects the canonical request/response types and
`BaseProvider` in `base.py`, the streaming primitives, concrete
providers for Ollama, OpenAI-compatible endpoints (OpenAI, Gemini,
OpenRouter, custom), Anthropic and the Gemini CLI, the factory that
builds them from configuration, the provider registry, and cached
health checks over it. Adding a new provider involves creating a new
module that subclasses `BaseProvider`.
"""

__all__ = [
    "anthropic_provider",
    "base",
    "cli_provider",
    "factory",
    "health",
    "ollama_provider",
    "openai_provider",
    "registry",
    "streaming",
]
