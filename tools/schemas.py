"""Tool schema definitions (Bedrock/Anthropic Messages API), categories and dispatch maps."""

import re
from typing import Any, Dict, List, Optional

from tools.file_ops import (
    read_file, read_multiple_files, edit_file, write_file,
    create_file_or_folder, delete_file_or_folder,
)
from tools.search_ops import list_directory, get_dir_tree, search_files, get_lint_errors
from tools.lsp_ops import find_references, go_to_definition, get_hover_info, get_document_symbols
from tools.external_ops import run_command, codebase_search, web_search, read_url


def _schema(properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_PATH = {"type": "string", "description": "File path (relative to the workspace root)"}
_LINE = {"type": "integer", "description": "Line number (1-indexed)"}
_COLUMN = {"type": "integer", "description": "Column number (1-indexed)"}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    # ----- read -----
    {
        "name": "read_file",
        "description": "Read file contents with optional line range. Output is line-numbered.",
        "input_schema": _schema({
            "path": _PATH,
            "start_line": {"type": "integer", "description": "Starting line (1-indexed)"},
            "end_line": {"type": "integer", "description": "Ending line (inclusive)"},
        }, ["path"]),
    },
    {
        "name": "read_multiple_files",
        "description": "Read up to 10 files at once. More efficient than several read_file calls.",
        "input_schema": _schema({
            "paths": {"type": "array", "items": {"type": "string"}, "description": "File paths to read"},
        }, ["paths"]),
    },
    {
        "name": "list_directory",
        "description": "List files and folders in a directory, respecting .gitignore.",
        "input_schema": _schema({"path": {"type": "string", "description": "Directory path"}}, ["path"]),
    },
    {
        "name": "get_dir_tree",
        "description": "Get the recursive directory tree structure (max depth 5).",
        "input_schema": _schema({
            "path": {"type": "string", "description": "Root directory path"},
            "max_depth": {"type": "integer", "description": "Maximum depth (default: 3)"},
        }, ["path"]),
    },
    {
        "name": "search_files",
        "description": "Search for a text pattern in files (case-insensitive).",
        "input_schema": _schema({
            "path": {"type": "string", "description": "Directory to search"},
            "pattern": {"type": "string", "description": "Search pattern"},
            "is_regex": {"type": "boolean", "description": "Treat pattern as a regular expression"},
            "file_pattern": {"type": "string", "description": "File filter glob, e.g. \"*.py\""},
        }, ["path", "pattern"]),
    },
    {
        "name": "codebase_search",
        "description": "Semantic search across the codebase. Best for finding code by meaning or intent.",
        "input_schema": _schema({
            "query": {"type": "string", "description": "Natural language search query"},
            "top_k": {"type": "integer", "description": "Number of results (default: 10)"},
        }, ["query"]),
    },
    {
        "name": "find_references",
        "description": "Find all references to the symbol at a location.",
        "input_schema": _schema({"path": _PATH, "line": _LINE, "column": _COLUMN}, ["path", "line", "column"]),
    },
    {
        "name": "go_to_definition",
        "description": "Get the definition location of the symbol at a location.",
        "input_schema": _schema({"path": _PATH, "line": _LINE, "column": _COLUMN}, ["path", "line", "column"]),
    },
    {
        "name": "get_hover_info",
        "description": "Get type information and documentation for the symbol at a location.",
        "input_schema": _schema({"path": _PATH, "line": _LINE, "column": _COLUMN}, ["path", "line", "column"]),
    },
    {
        "name": "get_document_symbols",
        "description": "List the symbols (functions, classes, variables) defined in a file.",
        "input_schema": _schema({"path": _PATH}, ["path"]),
    },
    {
        "name": "get_lint_errors",
        "description": "Get lint/compile errors for a file.",
        "input_schema": _schema({"path": _PATH}, ["path"]),
    },
    {
        "name": "web_search",
        "description": "Search the web. Returns top results with title, URL, and snippet.",
        "input_schema": _schema({
            "query": {"type": "string", "description": "Search query"},
            "max_results": {"type": "integer", "description": "Number of results (default: 5, max: 10)"},
        }, ["query"]),
    },
    {
        "name": "read_url",
        "description": "Fetch a web page over HTTP(S) and return its text content.",
        "input_schema": _schema({
            "url": {"type": "string", "description": "http:// or https:// URL"},
            "timeout": {"type": "integer", "description": "Timeout in seconds (default: 30)"},
        }, ["url"]),
    },
    # ----- edit -----
    {
        "name": "edit_file",
        "description": (
            "Edit a file using SEARCH/REPLACE blocks. Format:\n"
            "<<<<<<< SEARCH\nold\n=======\nnew\n>>>>>>> REPLACE"
        ),
        "input_schema": _schema({
            "path": _PATH,
            "search_replace_blocks": {"type": "string", "description": "One or more SEARCH/REPLACE blocks"},
        }, ["path", "search_replace_blocks"]),
    },
    {
        "name": "write_file",
        "description": "Write or overwrite the entire content of a file.",
        "input_schema": _schema({
            "path": _PATH,
            "content": {"type": "string", "description": "File content"},
        }, ["path", "content"]),
    },
    {
        "name": "create_file_or_folder",
        "description": "Create a new file or folder. A path ending with / creates a folder.",
        "input_schema": _schema({
            "path": {"type": "string", "description": "Path (end with / for a folder)"},
            "content": {"type": "string", "description": "Initial content for files"},
        }, ["path"]),
    },
    # ----- dangerous -----
    {
        "name": "delete_file_or_folder",
        "description": "Delete a file or folder.",
        "input_schema": _schema({
            "path": {"type": "string", "description": "Path to delete"},
            "recursive": {"type": "boolean", "description": "Delete folder contents recursively"},
        }, ["path"]),
    },
    # ----- terminal -----
    {
        "name": "run_command",
        "description": "Execute a shell command in the workspace.",
        "input_schema": _schema({
            "command": {"type": "string", "description": "Shell command"},
            "cwd": {"type": "string", "description": "Working directory (relative to the workspace)"},
            "timeout": {"type": "integer", "description": "Timeout in seconds (default: 30)"},
        }, ["command"]),
    },
]

TOOL_IMPLEMENTATIONS = {
    "read_file": read_file,
    "read_multiple_files": read_multiple_files,
    "list_directory": list_directory,
    "get_dir_tree": get_dir_tree,
    "search_files": search_files,
    "codebase_search": codebase_search,
    "find_references": find_references,
    "go_to_definition": go_to_definition,
    "get_hover_info": get_hover_info,
    "get_document_symbols": get_document_symbols,
    "get_lint_errors": get_lint_errors,
    "web_search": web_search,
    "read_url": read_url,
    "edit_file": edit_file,
    "write_file": write_file,
    "create_file_or_folder": create_file_or_folder,
    "delete_file_or_folder": delete_file_or_folder,
    "run_command": run_command,
}

# Side-effect free; executed concurrently
READ_TOOLS = frozenset({
    "read_file", "read_multiple_files", "list_directory", "get_dir_tree", "search_files",
    "codebase_search", "find_references", "go_to_definition", "get_hover_info",
    "get_document_symbols", "get_lint_errors", "web_search", "read_url",
})

# Tools that change file content; these feed the observe phase
FILE_EDIT_TOOLS = frozenset({"edit_file", "write_file", "create_file_or_folder"})

# Tools whose targets are snapshotted before mutation
FILE_MUTATING_TOOLS = FILE_EDIT_TOOLS | {"delete_file_or_folder"}

APPROVAL_TYPES: Dict[str, str] = {
    "edit_file": "edits",
    "write_file": "edits",
    "create_file_or_folder": "edits",
    "delete_file_or_folder": "dangerous",
    "run_command": "terminal",
}

APPROVAL_CATEGORIES = ("edits", "terminal", "dangerous")

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def get_approval_type(tool_name: str) -> Optional[str]:
    """Approval category for a tool, or None for tools that never prompt."""
    return APPROVAL_TYPES.get(tool_name)


def is_valid_tool_name(name: Any) -> bool:
    """Reject malformed or hallucinated tool names before they reach the UI."""
    return isinstance(name, str) and bool(_TOOL_NAME_RE.match(name)) and name in TOOL_IMPLEMENTATIONS


def is_read_tool(tool_name: str) -> bool:
    return tool_name in READ_TOOLS
