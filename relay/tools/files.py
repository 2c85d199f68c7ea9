"""
File tools: read, write/append, surgical edit and directory listing.

Relative paths resolve against the request's working directory. When the
executor is configured with `confine_to_workdir`, paths outside it are
refused, like a workspace root.
"""

import os
from typing import Any, Dict, List

from relay.tools.base import Tool, ToolResult, require, resolve_path, truncate


class _FileTool(Tool):
    def __init__(self, confine: bool = False, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.confine = confine

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "_FileTool":
        return cls(confine=bool(cfg.get("confine_to_workdir", False)))

    def path(self, raw: str, working_dir: str) -> str:
        return resolve_path(raw, working_dir, confine=self.confine)


class ReadFileTool(_FileTool):
    """
    Read a text file.

    Tool input schema:
    {
        "path": "relative/or/absolute/file.txt",
        "maxLines": 200
    }
    """

    MAX_CHARS = 20000

    def __init__(self, confine: bool = False) -> None:
        super().__init__(
            confine=confine,
            name="read_file",
            description=(
                "Read the contents of a file. Returns the text content. Use for: reading "
                "configs, code files, documents, logs, etc."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Absolute or relative path to the file"},
                    "maxLines": {
                        "type": "number",
                        "description": "Maximum number of lines to read (optional, default: all)",
                    },
                },
                "required": ["path"],
            },
        )

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        abs_path = self.path(require(tool_input, "path"), working_dir)
        max_lines = int(tool_input.get("maxLines") or 0)
        try:
            with open(abs_path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError):
            return self.fail(f"File not found or not readable: {abs_path}")

        if max_lines > 0:
            lines = content.split("\n")
            if len(lines) > max_lines:
                content = "\n".join(lines[:max_lines]) + f"\n... ({len(lines)} lines total)"
        return self.ok(truncate(content, self.MAX_CHARS))


class WriteFileTool(_FileTool):
    """
    Write or append text to a file, creating parent directories.
    """

    def __init__(self, confine: bool = False) -> None:
        super().__init__(
            confine=confine,
            name="write_file",
            description=(
                "Write content to a file. Creates the file if it doesn't exist, overwrites if "
                "it does. Use for: creating files, saving results, updating configs."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Absolute or relative path to the file"},
                    "content": {"type": "string", "description": "Content to write"},
                    "append": {
                        "type": "boolean",
                        "description": "Append instead of overwrite (default: false)",
                    },
                },
                "required": ["path", "content"],
            },
        )

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        abs_path = self.path(require(tool_input, "path"), working_dir)
        content = tool_input.get("content")
        if content is None:
            return self.fail("'content' is required.")
        content = str(content)
        mode = "a" if tool_input.get("append") else "w"
        try:
            os.makedirs(os.path.dirname(abs_path), exist_ok=True)
            with open(abs_path, mode, encoding="utf-8") as f:
                f.write(content)
        except OSError as exc:
            return self.fail(f"Write failed: {exc}")
        verb = "Appended to" if mode == "a" else "Written to"
        return self.ok(f"{verb} {abs_path} ({len(content)} chars)")


class EditFileTool(_FileTool):
    """
    Replace the first exact occurrence of `oldText` with `newText`.

    Fails when `oldText` does not appear verbatim in the file.
    """

    def __init__(self, confine: bool = False) -> None:
        super().__init__(
            confine=confine,
            name="edit_file",
            description=(
                "Make a precise edit to a file by replacing exact text. More surgical than "
                "write_file; preserves the rest of the file."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path to the file to edit"},
                    "oldText": {
                        "type": "string",
                        "description": "Exact text to find (must match exactly including whitespace)",
                    },
                    "newText": {"type": "string", "description": "Replacement text"},
                },
                "required": ["path", "oldText", "newText"],
            },
        )

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        abs_path = self.path(require(tool_input, "path"), working_dir)
        old_text = require(tool_input, "oldText")
        new_text = str(tool_input.get("newText", ""))
        if not os.path.isfile(abs_path):
            return self.fail(f"File not found: {abs_path}")
        try:
            with open(abs_path, "r", encoding="utf-8") as f:
                content = f.read()
            if old_text not in content:
                return self.fail(
                    f"oldText not found in {abs_path}. Make sure it matches exactly "
                    "(including whitespace)."
                )
            with open(abs_path, "w", encoding="utf-8") as f:
                f.write(content.replace(old_text, new_text, 1))
        except (OSError, UnicodeDecodeError) as exc:
            return self.fail(f"Edit failed: {exc}")
        return self.ok(
            f"Edited {abs_path}: replaced {len(old_text)} chars with {len(new_text)} chars"
        )


def _human_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


class ListDirectoryTool(_FileTool):
    """
    List a directory, optionally recursing up to `MAX_DEPTH` levels.
    """

    MAX_DEPTH = 3
    MAX_CHARS = 8000

    def __init__(self, confine: bool = False) -> None:
        super().__init__(
            confine=confine,
            name="list_directory",
            description=(
                "List files and directories at a given path. Returns names, types (file/dir), "
                "and sizes. Use for: exploring project structures and finding files."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory path to list (default: current working directory)",
                    },
                    "recursive": {
                        "type": "boolean",
                        "description": "List recursively (max 3 levels deep, default: false)",
                    },
                },
                "required": [],
            },
        )

    def _walk(self, directory: str, depth: int, recursive: bool, entries: List[str]) -> None:
        items = sorted(os.scandir(directory), key=lambda e: e.name)
        indent = "  " * depth
        for item in items:
            # Skip dotfiles in large top-level directories
            if item.name.startswith(".") and depth == 0 and len(items) > 20:
                continue
            if item.is_dir(follow_symlinks=False):
                entries.append(f"{indent}[dir]  {item.name}/")
                if recursive and depth < self.MAX_DEPTH - 1:
                    try:
                        self._walk(item.path, depth + 1, recursive, entries)
                    except OSError:
                        entries.append(f"{indent}  (unreadable)")
            else:
                try:
                    size = _human_size(item.stat().st_size)
                    entries.append(f"{indent}[file] {item.name} ({size})")
                except OSError:
                    entries.append(f"{indent}[file] {item.name}")

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        abs_path = self.path(tool_input.get("path") or ".", working_dir)
        if not os.path.isdir(abs_path):
            return self.fail(f"Directory not found: {abs_path}")
        entries: List[str] = []
        try:
            self._walk(abs_path, 0, bool(tool_input.get("recursive")), entries)
        except OSError as exc:
            return self.fail(f"Error listing directory: {exc}")
        if not entries:
            return self.ok(f"{abs_path}: (empty directory)")
        result = f"{abs_path}:\n" + "\n".join(entries)
        return self.ok(truncate(result, self.MAX_CHARS, note=False))
