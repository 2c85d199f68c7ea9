"""
Base classes for tool plugins.

Tools are self-contained local capabilities a stateless backend can call
through function calling. Each tool validates its input, performs the
action, and returns a `ToolResult`; failures are reported in the result,
never raised. Tools are registered in a `ToolRegistry` for lookup by name.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ToolResult:
    name: str
    result: str
    is_error: bool = False


class ToolInputError(Exception):
    """Raised by a tool when its input is missing or malformed."""


@dataclass
class Tool:
    """
    Represents a tool that a backend can invoke.

    `parameters` is the JSON-Schema object advertised to the model.
    Subclasses implement `run`.
    """

    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        raise NotImplementedError

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "Tool":
        return cls()

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def ok(self, result: str) -> ToolResult:
        return ToolResult(name=self.name, result=result)

    def fail(self, result: str) -> ToolResult:
        return ToolResult(name=self.name, result=result, is_error=True)


class ToolRegistry:
    """
    Registers and retrieves tools by name.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register_tool(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> List[Tool]:
        return list(self._tools.values())


def require(tool_input: Dict[str, Any], key: str) -> Any:
    value = tool_input.get(key)
    if value is None or value == "":
        raise ToolInputError(f"'{key}' is required.")
    return value


def truncate(text: str, limit: int, note: bool = True) -> str:
    if len(text) <= limit:
        return text
    if not note:
        return text[:limit] + "..."
    return text[:limit] + f"\n... (truncated, {len(text)} chars total)"


def resolve_path(path: str, working_dir: str, confine: bool = False) -> str:
    """
    Resolve `path` against `working_dir`.

    With `confine`, paths escaping the working directory are rejected.
    """
    root = os.path.abspath(working_dir)
    abs_path = os.path.abspath(os.path.join(root, os.path.expanduser(path)))
    if confine and os.path.commonpath([root, abs_path]) != root:
        raise ToolInputError("access denied outside the working directory.")
    return abs_path
