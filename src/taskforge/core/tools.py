"""Tool menu offered to the model during a generation.

The menu is closed: every tool the model may call is a ``ToolKind`` member,
and the coordinator must register a handler for each one before it starts.
Read-side tools answer from the local staging workspace.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from taskforge.core.file_sync import relative_to_root
from taskforge.core.providers import is_ignored


class ToolKind(str, Enum):
    """Tools available to the model."""

    WRITE_FILE = "write_file"
    READ_FILE = "read_file"
    LIST_DIRECTORY = "list_directory"
    SEARCH_CODE = "search_code"
    RUN_COMMAND = "run_command"


def check_handlers(handlers: Mapping[ToolKind, Any]) -> None:
    """Fail unless every tool kind has a handler."""
    missing = [kind.value for kind in ToolKind if kind not in handlers]
    if missing:
        raise ValueError(f"Missing tool handlers: {', '.join(missing)}")


class StagingWorkspace:
    """Local directory where generated files are staged before sync."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def relative(self, path: str) -> str:
        return relative_to_root(self.root, path)

    def resolve(self, path: str) -> Path:
        if path in ("", "."):
            return self.root
        return self.root / self.relative(path)

    def write_file(self, path: str, content: str) -> str:
        """Stage a file.

        Returns:
            The path relative to the workspace root
        """
        relative = self.relative(path)
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return relative

    def read_file(self, path: str) -> str:
        target = self.resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        return target.read_text()

    def _walk(self, directory: Path, recursive: bool):
        for entry in sorted(directory.iterdir()):
            if is_ignored(entry.name):
                continue
            yield entry
            if recursive and entry.is_dir():
                yield from self._walk(entry, recursive)

    def list_directory(self, path: str = ".", recursive: bool = False) -> str:
        directory = self.resolve(path)
        if not directory.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")

        lines = []
        for entry in self._walk(directory, recursive):
            name = entry.relative_to(self.root).as_posix()
            lines.append(f"{name}/" if entry.is_dir() else name)
        return "\n".join(lines) if lines else "(empty directory)"

    def search_code(
        self,
        pattern: str,
        file_type: Optional[str] = None,
        max_results: int = 100,
    ) -> str:
        regex = re.compile(pattern)
        suffix = f".{file_type.lstrip('.')}" if file_type else None

        matches = []
        for entry in self._walk(self.root, recursive=True):
            if not entry.is_file() or (suffix and entry.suffix != suffix):
                continue
            try:
                text = entry.read_text()
            except UnicodeDecodeError:
                continue
            name = entry.relative_to(self.root).as_posix()
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{name}:{number}: {line.strip()}")
                    if len(matches) >= max_results:
                        return "\n".join(matches)
        return "\n".join(matches) if matches else "No matches found"


# Tool definitions for the Messages API
TOOL_DEFINITIONS = [
    {
        "name": ToolKind.WRITE_FILE.value,
        "description": "Write content to a file (creates or overwrites). "
        "The file is synced to the sandbox immediately.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file (relative to workspace)",
                },
                "content": {
                    "type": "string",
                    "description": "Content to write",
                },
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": ToolKind.READ_FILE.value,
        "description": "Read the contents of a file",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file (relative to workspace)",
                }
            },
            "required": ["path"],
        },
    },
    {
        "name": ToolKind.LIST_DIRECTORY.value,
        "description": "List files and directories",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory path (relative to workspace)",
                    "default": ".",
                },
                "recursive": {
                    "type": "boolean",
                    "description": "List recursively",
                    "default": False,
                },
            },
        },
    },
    {
        "name": ToolKind.SEARCH_CODE.value,
        "description": "Search for a pattern in the generated files",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Search pattern (regex supported)",
                },
                "file_type": {
                    "type": "string",
                    "description": "File extension filter (e.g., 'py', 'html')",
                },
            },
            "required": ["pattern"],
        },
    },
    {
        "name": ToolKind.RUN_COMMAND.value,
        "description": "Run a shell command in the sandbox",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "Command to run",
                },
                "timeout": {
                    "type": "integer",
                    "description": "Timeout in seconds",
                    "default": 60,
                },
            },
            "required": ["command"],
        },
    },
]
