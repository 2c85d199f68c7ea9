"""
Tool plugin system.

Tools give stateless backends the ability to run shell commands and
Python, read, write and edit files, list directories, fetch web pages
and search the web. Tools are registered via the `ToolRegistry` and
invoked by the `ToolExecutor`, which never raises.
"""

__all__ = [
    "base",
    "executor",
    "files",
    "shell",
    "web",
]
