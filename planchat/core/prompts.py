"""
Prompt management.

PromptManager reads the planning prompts from the `prompts` section of
the YAML configuration and falls back to built-in defaults.
"""

from typing import Dict, Optional

DEFAULT_PLANNING_PROMPT = (
    "You are a planning assistant. Help the user turn an idea into a concrete, "
    "multi-phase project plan. Ask clarifying questions when the goal is vague. "
    "When you propose a plan, split it into numbered phases, and give each phase "
    "a short title, its goal, and the tasks it contains."
)


class PromptManager:
    """
    Store and access the system prompt used by planning sessions.
    """

    def __init__(self, prompts_cfg: Optional[Dict] = None) -> None:
        self.prompts_cfg = prompts_cfg or {}

    def get_planning_system_prompt(self) -> str:
        prompt = self.prompts_cfg.get("planning_system")
        if isinstance(prompt, str) and prompt.strip():
            return prompt.strip()
        return DEFAULT_PLANNING_PROMPT
