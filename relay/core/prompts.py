"""
Prompt management.

This module provides a PromptManager that reads prompt settings from the
`prompts:` section of the YAML configuration and supplies defaults when
they are not specified. The stateful agent backend gets a fixed base
prompt (optionally extended by an instructions file); stateless backends
get a persona prompt that describes their local tools.
"""

import logging
import os
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class PromptManager:
    """
    Store and access the system prompts handed to the backends.
    """

    def __init__(self, prompts_cfg: Optional[Dict] = None) -> None:
        self.prompts_cfg = prompts_cfg or {}

    def get_persona_prompt(self) -> str:
        """
        Retrieve the persona prompt sent with every query.

        Returns:
            A string containing the system prompt.
        """
        return self.prompts_cfg.get(
            "persona",
            (
                "You are a helpful personal assistant. Answer clearly and concisely, "
                "in the language the user writes in."
            ),
        )

    def get_tools_prompt(self) -> str:
        """
        Retrieve the extra instructions for backends using the local tool catalog.
        """
        return self.prompts_cfg.get(
            "tools",
            (
                "You can call tools to run shell commands, read, write and edit files, "
                "list directories, execute Python, fetch web pages and search the web. "
                "Use them when the task needs real data or actions; report tool errors "
                "honestly instead of guessing."
            ),
        )

    def get_system_prompt(self, stateful: bool, uses_tools: bool = False) -> str:
        if stateful or not uses_tools:
            return self.get_persona_prompt()
        return self.get_persona_prompt() + "\n\n" + self.get_tools_prompt()

    def get_agent_base_prompt(self) -> str:
        """
        Retrieve the fixed prompt for the stateful agent backend.

        `agent_base` is used as is; `agent_instructions_file` is appended
        when it exists.
        """
        base = self.prompts_cfg.get(
            "agent_base",
            (
                "You are running as a long-lived personal agent. Keep durable notes in "
                "docs/memory/ so that context survives session restarts."
            ),
        )
        path = self.prompts_cfg.get("agent_instructions_file")
        if path:
            try:
                with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
                    base = base + "\n\n" + f.read()
            except OSError as exc:
                logger.warning("Agent instructions file %s not loaded: %s", path, exc)
        return base
