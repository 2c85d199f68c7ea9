"""
Tool executor used by the stateless backends.

Wraps a `ToolRegistry` behind one `execute(name, arguments, working_dir)`
call that always returns a `ToolResult`. Whether a failed call is retried
or reported is up to the model, so nothing raises past this boundary.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Union

from relay.tools.base import ToolInputError, ToolRegistry, ToolResult
from relay.tools.files import EditFileTool, ListDirectoryTool, ReadFileTool, WriteFileTool
from relay.tools.shell import PythonExecuteTool, ShellCommandTool
from relay.tools.web import WebFetchTool, WebSearchTool

logger = logging.getLogger(__name__)


def build_tool_registry(cfg: Optional[Mapping[str, Any]] = None) -> ToolRegistry:
    """
    Build the standard tool catalog from the `tools:` config section.

    Every tool is enabled unless its section sets `enabled: false`. The
    `files` section is shared by the four file tools.
    """
    cfg = cfg or {}
    registry = ToolRegistry()
    sections = {
        ShellCommandTool: "shell",
        PythonExecuteTool: "python",
        ReadFileTool: "files",
        WriteFileTool: "files",
        EditFileTool: "files",
        ListDirectoryTool: "files",
        WebFetchTool: "web_fetch",
        WebSearchTool: "web_search",
    }
    for tool_cls, section in sections.items():
        tool_cfg = dict(cfg.get(section) or {})
        if not tool_cfg.get("enabled", True):
            continue
        registry.register_tool(tool_cls.from_config(tool_cfg))
    return registry


class ToolExecutor:
    def __init__(self, registry: Optional[ToolRegistry] = None) -> None:
        self.registry = registry or build_tool_registry()

    def schemas(self) -> List[Dict[str, Any]]:
        """Function-calling definitions for every registered tool."""
        return [tool.schema() for tool in self.registry.list_tools()]

    async def execute(
        self,
        name: str,
        arguments: Union[str, Mapping[str, Any], None],
        working_dir: Optional[str] = None,
    ) -> ToolResult:
        tool = self.registry.get_tool(name)
        if tool is None:
            return ToolResult(name=name, result=f"Unknown tool: {name}", is_error=True)

        if isinstance(arguments, str):
            try:
                parsed = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as exc:
                return ToolResult(name=name, result=f"Error: invalid JSON arguments: {exc}", is_error=True)
        else:
            parsed = dict(arguments or {})
        if not isinstance(parsed, dict):
            return ToolResult(name=name, result="Error: arguments must be a JSON object", is_error=True)

        cwd = working_dir or os.getcwd()
        try:
            result = await tool.run(parsed, cwd)
        except ToolInputError as exc:
            result = ToolResult(name=name, result=f"Error: {exc}", is_error=True)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Tool %s failed", name)
            result = ToolResult(name=name, result=f"Error: {exc}", is_error=True)

        if result.is_error:
            logger.info("Tool %s returned an error: %s", name, result.result[:200])
        return result
