"""
Subprocess tools: shell commands and Python scripts.

Both run as asyncio subprocesses in the request's working directory, are
killed at a hard wall-clock timeout, and have their output truncated.
Shell commands containing a deny-listed substring are refused without
being executed.
"""

import asyncio
import logging
import os
import shlex
import sys
import tempfile
from typing import Any, Dict, List, Optional, Tuple

from relay.tools.base import Tool, ToolResult, require, truncate

logger = logging.getLogger(__name__)

DENIED_SUBSTRINGS = (
    "rm -rf /",
    "mkfs",
    "dd if=/dev/zero",
    "> /dev/sda",
    ":(){ :|:& };:",
)


async def _communicate(proc: asyncio.subprocess.Process, timeout: float) -> Tuple[str, str]:
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise
    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def _child_env(**extra: str) -> Dict[str, str]:
    env = dict(os.environ)
    env["LANG"] = "en_US.UTF-8"
    env.update(extra)
    return env


class ShellCommandTool(Tool):
    """
    Execute a shell command and return its output.

    Tool input schema:
    {
        "command": "ls -la",
        "workingDir": "/optional/override"
    }
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_output: int = 8000,
        allowed_commands: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            name="run_shell",
            description=(
                "Execute a shell command and return the output. Use for: running CLI tools, "
                "checking system state, processing files, git operations, etc. "
                f"Timeout: {int(timeout)} seconds."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell command to execute (bash). Example: 'ls -la'",
                    },
                    "workingDir": {
                        "type": "string",
                        "description": "Working directory (optional, defaults to the session's directory)",
                    },
                },
                "required": ["command"],
            },
        )
        self.timeout = timeout
        self.max_output = max_output
        self.allowed_commands = allowed_commands or []

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ShellCommandTool":
        return cls(
            timeout=float(cfg.get("timeout", 30)),
            max_output=int(cfg.get("max_output", 8000)),
            allowed_commands=cfg.get("allowed_commands"),
        )

    def check(self, command: str) -> Optional[str]:
        """Return a refusal message, or None when the command may run."""
        if any(denied in command for denied in DENIED_SUBSTRINGS):
            return "Command blocked for safety."
        # An empty allow-list means no restriction
        if self.allowed_commands:
            parts = shlex.split(command)
            if not parts or parts[0] not in self.allowed_commands:
                return f"Command '{parts[0] if parts else command}' is not allowed."
        return None

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        command = str(require(tool_input, "command"))
        refusal = self.check(command)
        if refusal:
            logger.warning("Refused shell command: %s", command)
            return self.fail(refusal)

        cwd = tool_input.get("workingDir") or working_dir
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_child_env(),
        )
        try:
            stdout, stderr = await _communicate(proc, self.timeout)
        except asyncio.TimeoutError:
            return self.fail(f"Command timed out after {int(self.timeout)} seconds.")

        if proc.returncode != 0:
            output = f"Exit code {proc.returncode}\n{stdout[:2000]}\n{stderr[:2000]}".strip()
            return self.fail(output)
        return self.ok(truncate(stdout, self.max_output) or "(no output)")


class PythonExecuteTool(Tool):
    """
    Run a Python 3 script with the current interpreter.

    The code is written to a temporary file to avoid shell quoting issues
    and removed afterwards.
    """

    def __init__(self, timeout: float = 60.0, max_output: int = 10000) -> None:
        super().__init__(
            name="python_execute",
            description=(
                "Execute a Python 3 script and return stdout/stderr. Use for: data processing, "
                "calculations, JSON/CSV transformation, file generation and any task that "
                "benefits from Python libraries. Use print() for output."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "code": {"type": "string", "description": "Python 3 code to execute."},
                    "workingDir": {
                        "type": "string",
                        "description": "Working directory for the script (optional)",
                    },
                },
                "required": ["code"],
            },
        )
        self.timeout = timeout
        self.max_output = max_output

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "PythonExecuteTool":
        return cls(
            timeout=float(cfg.get("timeout", 60)),
            max_output=int(cfg.get("max_output", 10000)),
        )

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        code = str(require(tool_input, "code"))
        cwd = tool_input.get("workingDir") or working_dir

        fd, script = tempfile.mkstemp(prefix="relay-py-", suffix=".py")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(code)
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                script,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=_child_env(PYTHONIOENCODING="utf-8"),
            )
            try:
                stdout, stderr = await _communicate(proc, self.timeout)
            except asyncio.TimeoutError:
                return self.fail(f"Python script timed out after {int(self.timeout)} seconds.")
        finally:
            try:
                os.unlink(script)
            except OSError:
                logger.debug("Could not remove temp script %s", script)

        if proc.returncode != 0:
            output = f"Python error (exit {proc.returncode}):\n{stderr[:3000]}\n{stdout[:3000]}".strip()
            return self.fail(output)
        return self.ok(truncate(stdout, self.max_output) or "(no output)")
