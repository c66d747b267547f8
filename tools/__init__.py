"""
Tool definitions and implementations for the editor agent.
Each tool has an Anthropic-compatible schema, a typed parameter dataclass and
an implementation function taking (params, ToolContext).
Tools use a Backend abstraction for file/command operations.
"""

from tools._common import ToolContext, ToolResult, count_lines  # noqa: F401
from tools.gitignore import load_gitignore, is_ignored, invalidate_gitignore_cache  # noqa: F401
from tools.params import ParamError, ToolParams, validate_params, known_tools  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_IMPLEMENTATIONS,
    READ_TOOLS,
    FILE_EDIT_TOOLS,
    FILE_MUTATING_TOOLS,
    APPROVAL_TYPES,
    APPROVAL_CATEGORIES,
    get_approval_type,
    is_valid_tool_name,
    is_read_tool,
)
from tools.dispatch import execute_tool  # noqa: F401
