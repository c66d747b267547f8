"""Search, discovery, and diagnostics tools."""

import asyncio
import logging
import os
import shlex
from typing import Any, Dict, List, Optional

import pathspec

from tools._common import ToolContext, ToolResult
from tools.gitignore import load_gitignore, is_ignored
from tools.params import ListDirectoryParams, GetDirTreeParams, SearchFilesParams, GetLintErrorsParams

logger = logging.getLogger(__name__)

_MAX_LIST_ENTRIES = 100
_MAX_SEARCH_FILES = 30
_MAX_MATCHES_PER_FILE = 5


def list_directory(params: ListDirectoryParams, ctx: ToolContext) -> ToolResult:
    """List files and directories at a path, respecting .gitignore."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path, allow_sensitive=True)
    if not b.is_dir(full_path):
        return ToolResult(success=False, output="", error=f"Not a directory: {params.path}")

    gi = load_gitignore(b)
    rel_dir = ctx.relative(full_path)
    lines = []
    for e in b.list_dir(full_path):
        name = e["name"]
        is_dir = e["type"] == "directory"
        rel = name if rel_dir == "." else f"{rel_dir}/{name}"
        if is_ignored(rel, name, is_dir, gi):
            continue
        if is_dir:
            lines.append(f"  {name}/")
        else:
            lines.append(f"  {name} ({_format_size(e.get('size', 0))})")

    if not lines:
        return ToolResult(success=True, output=f"{rel_dir}/ (empty)")
    shown = lines[:_MAX_LIST_ENTRIES]
    output = f"Contents of {rel_dir}/ ({len(lines)} items):\n" + "\n".join(shown)
    if len(lines) > _MAX_LIST_ENTRIES:
        output += "\n  ...(truncated)"
    return ToolResult(success=True, output=output)


# ── get_dir_tree: recursive, .gitignore-aware ──

def _walk_tree(ctx: ToolContext, full_path: str, gi: Optional[pathspec.PathSpec],
               max_depth: int, depth: int = 0) -> List[Dict[str, Any]]:
    """Collect directory entries (directories first), honouring ignore rules."""
    if depth >= max_depth:
        return []
    try:
        entries = ctx.backend.list_dir(full_path)
    except OSError:
        return []

    nodes: List[Dict[str, Any]] = []
    for e in entries:
        name = e["name"]
        if name.startswith(".") and name != ".env.example":
            continue
        is_dir = e["type"] == "directory"
        if is_ignored(ctx.relative(e["path"]), name, is_dir, gi):
            continue
        node: Dict[str, Any] = {"name": name, "is_dir": is_dir}
        if is_dir:
            node["children"] = _walk_tree(ctx, e["path"], gi, max_depth, depth + 1)
        nodes.append(node)
    nodes.sort(key=lambda n: (not n["is_dir"], n["name"].lower()))
    return nodes


def _render_tree(nodes: List[Dict[str, Any]], prefix: str = "") -> List[str]:
    lines: List[str] = []
    for i, node in enumerate(nodes):
        last = i == len(nodes) - 1
        connector = "└── " if last else "├── "
        lines.append(f"{prefix}{connector}{node['name']}{'/' if node['is_dir'] else ''}")
        if node.get("children"):
            lines.extend(_render_tree(node["children"], prefix + ("    " if last else "│   ")))
    return lines


def get_dir_tree(params: GetDirTreeParams, ctx: ToolContext) -> ToolResult:
    """Render a recursive tree of a directory up to max_depth levels."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path, allow_sensitive=True)
    if not b.is_dir(full_path):
        return ToolResult(success=False, output="", error=f"Not a directory: {params.path}")
    nodes = _walk_tree(ctx, full_path, load_gitignore(b), params.max_depth)
    if not nodes:
        return ToolResult(success=True, output=f"Directory empty: {ctx.relative(full_path)}")
    return ToolResult(success=True,
                      output=f"Directory tree of {ctx.relative(full_path)}:\n" + "\n".join(_render_tree(nodes)))


def search_files(params: SearchFilesParams, ctx: ToolContext) -> ToolResult:
    """Search file contents using ripgrep (or grep fallback), grouped by file."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path, allow_sensitive=True)
    raw = b.search(params.pattern, full_path, include=params.file_pattern, is_regex=params.is_regex)
    if not raw:
        return ToolResult(success=True, output=f"No matches for {params.pattern!r} in {ctx.relative(full_path)}")

    groups: Dict[str, List[str]] = {}
    total = 0
    for line in raw.split("\n"):
        # path:line:text
        parts = line.split(":", 2)
        if len(parts) < 3:
            continue
        total += 1
        matches = groups.setdefault(ctx.relative(parts[0]), [])
        if len(matches) < _MAX_MATCHES_PER_FILE:
            matches.append(f"  Line {parts[1]}: {parts[2].strip()}")

    out = [f"Found matches in {len(groups)} files ({total} total matches):", ""]
    for n, (path, matches) in enumerate(groups.items()):
        if n >= _MAX_SEARCH_FILES:
            out.append(f"... and {len(groups) - _MAX_SEARCH_FILES} more files")
            break
        out.append(f"{path}:")
        out.extend(matches)
        out.append("")
    return ToolResult(success=True, output="\n".join(out).rstrip())


# ── get_lint_errors ──

def _format_diagnostics(path: str, diagnostics: List[Dict[str, Any]]) -> str:
    if not diagnostics:
        return "No diagnostics found"
    lines = [f"Diagnostics for {path}:"]
    for d in diagnostics:
        severity = d.get("severity") or "error"
        lines.append(f"[{severity}] line {d.get('line', 0) + 1}: {d.get('message', '')}")
    return "\n".join(lines)


def _lint_command(path: str, ctx: ToolContext) -> Optional[str]:
    """Pick a linter/compiler check for the file type, based on project config files."""
    b = ctx.backend
    _, ext = os.path.splitext(path)
    ext = ext.lower()
    q = shlex.quote(path)
    if ext in (".py", ".pyi"):
        if b.file_exists("pyproject.toml") or b.file_exists("ruff.toml") or b.file_exists(".ruff.toml"):
            return f"ruff check {q} 2>&1 || python -m py_compile {q} 2>&1"
        return f"python -m py_compile {q} 2>&1"
    if ext in (".ts", ".tsx") and b.file_exists("tsconfig.json"):
        return "npx tsc --noEmit --pretty false 2>&1 | head -50"
    if ext in (".js", ".jsx", ".mjs"):
        return f"node --check {q} 2>&1"
    if ext == ".go":
        return f"go vet {q} 2>&1"
    if ext in (".sh", ".bash"):
        return f"bash -n {q} 2>&1"
    return None


async def get_lint_errors(params: GetLintErrorsParams, ctx: ToolContext) -> ToolResult:
    """Report diagnostics for a file: language server first, then a project linter."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path, allow_sensitive=True)
    if not b.is_file(full_path):
        return ToolResult(success=False, output="", error=f"File not found: {params.path}")
    rel = ctx.relative(full_path)

    if ctx.language_server is not None:
        diagnostics = await ctx.language_server.get_diagnostics(full_path)
        if diagnostics:
            return ToolResult(success=True, output=_format_diagnostics(rel, diagnostics))

    cmd = _lint_command(full_path, ctx)
    if cmd is None:
        return ToolResult(success=True, output="No diagnostics found")

    loop = asyncio.get_running_loop()
    stdout, stderr, rc = await loop.run_in_executor(None, lambda: b.run_command(cmd, cwd=".", timeout=30))
    output = "\n".join(s.strip() for s in (stdout, stderr) if s and s.strip())
    if rc == 0:
        return ToolResult(success=True, output=output or "No diagnostics found")
    return ToolResult(success=True, output=f"[error] {rel}: lint check failed\n{output}")


def _format_size(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"
