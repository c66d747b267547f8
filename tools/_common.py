"""Shared types for the tools package."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from backend import Backend, LanguageServer, SearchIndex


@dataclass
class ToolResult:
    """Result from executing a tool.

    ``meta`` carries side-effect details for file-mutating tools
    (file_path, old_content, new_content, lines_added, lines_removed, is_new_file).
    """
    success: bool
    output: str
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolContext:
    """Capabilities a tool may use. Only ``backend`` is mandatory."""
    backend: Backend
    language_server: Optional[LanguageServer] = None
    search_index: Optional[SearchIndex] = None

    @property
    def working_directory(self) -> str:
        return self.backend.working_directory

    def relative(self, full_path: str) -> str:
        wd = self.backend.working_directory
        if full_path == wd:
            return "."
        if full_path.startswith(wd + os.sep):
            return full_path[len(wd) + 1:]
        return full_path


def count_lines(text: Optional[str]) -> int:
    """Line count as the editor shows it (an empty file still has one line)."""
    if text is None:
        return 0
    return len(text.split("\n"))
