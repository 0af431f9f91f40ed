"""
Core connectivity logic.

This subpackage provides cancellation tokens, the retry executor, the
error taxonomy and classifier, the availability poller and its events,
the chat router that dispatches to the active provider, and the
planning session built on top of it.
"""

__all__ = [
    "cancellation",
    "errors",
    "events",
    "poller",
    "prompts",
    "retry",
    "router",
    "session",
]
