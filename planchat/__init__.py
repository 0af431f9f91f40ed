"""
Planning chat package root.

This package provides configuration loading, the provider connectivity
core (retry, error classification, availability polling, routing) and
the backend provider adapters. The planning session used by the CLI
lives in `core.session`.
"""

__all__ = [
    "config",
    "core",
    "providers",
]
