"""File operation tools: read, read_multiple, edit, write, create, delete."""

import difflib
import logging
import re
from typing import List, Tuple

from tools._common import ToolContext, ToolResult, count_lines
from tools.params import (
    ReadFileParams, ReadMultipleFilesParams, EditFileParams, WriteFileParams,
    CreateFileOrFolderParams, DeleteFileOrFolderParams,
)

logger = logging.getLogger(__name__)

_MAX_MULTI_READ = 10


def _numbered(lines: List[str], start: int) -> str:
    return "\n".join(f"{start + i:6}|{line}" for i, line in enumerate(lines))


def read_file(params: ReadFileParams, ctx: ToolContext) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path, allow_sensitive=True)
    content = b.read_file_or_none(full_path)
    if content is None:
        return ToolResult(success=False, output="", error=f"File not found: {params.path}")

    lines = content.split("\n")
    start = max(1, params.start_line or 1)
    end = min(len(lines), params.end_line or len(lines))
    if start > end:
        return ToolResult(success=False, output="",
                          error=f"Invalid line range {start}-{end} (file has {len(lines)} lines)")
    header = f"File: {ctx.relative(full_path)}\nLines {start}-{end} of {len(lines)}"
    return ToolResult(success=True, output=header + "\n\n" + _numbered(lines[start - 1:end], start))


def read_multiple_files(params: ReadMultipleFilesParams, ctx: ToolContext) -> ToolResult:
    """Read several files; per-file failures are listed, not fatal."""
    b = ctx.backend
    blocks: List[str] = []
    errors: List[str] = []
    for p in params.paths[:_MAX_MULTI_READ]:
        try:
            content = b.read_file_or_none(b.sandbox_path(p, allow_sensitive=True))
        except (ValueError, OSError) as e:
            errors.append(f"Error reading {p}: {e}")
            continue
        if content is None:
            errors.append(f"File not found: {p}")
            continue
        lines = content.split("\n")
        blocks.append(f"### File: {p}\nLines: {len(lines)}\n```\n{_numbered(lines, 1)}\n```")

    output = f"Read {len(blocks)} file(s):\n\n" + "\n\n".join(blocks)
    if errors:
        output += "\n\nErrors:\n" + "\n".join(errors)
    if len(params.paths) > _MAX_MULTI_READ:
        output += f"\n\nOnly the first {_MAX_MULTI_READ} files were read ({len(params.paths)} requested)"
    return ToolResult(success=bool(blocks) or not errors, output=output,
                      error=None if blocks or not errors else "; ".join(errors))


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for display in the tool panel."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


# ── SEARCH/REPLACE blocks ──

_BLOCK_RE = re.compile(r"<<<<<<< SEARCH\n([\s\S]*?)\n=======\n([\s\S]*?)\n>>>>>>> REPLACE")


def parse_search_replace_blocks(text: str) -> List[Tuple[str, str]]:
    return [(m.group(1), m.group(2)) for m in _BLOCK_RE.finditer(text)]


def apply_search_replace_blocks(content: str, blocks: List[Tuple[str, str]]) -> Tuple[str, int, List[str]]:
    """Apply blocks in order. Exact match first, then a match that ignores trailing whitespace.

    Returns (new_content, applied_count, errors).
    """
    applied = 0
    errors: List[str] = []
    for search, replace in blocks:
        if search in content:
            content = content.replace(search, replace, 1)
            applied += 1
            continue

        lines = content.split("\n")
        search_lines = search.split("\n")
        wanted = [l.rstrip() for l in search_lines]
        for i in range(len(lines) - len(search_lines) + 1):
            if [l.rstrip() for l in lines[i:i + len(search_lines)]] == wanted:
                lines[i:i + len(search_lines)] = replace.split("\n")
                content = "\n".join(lines)
                applied += 1
                break
        else:
            errors.append(f"Search block not found: {search[:50]!r}...")
    return content, applied, errors


def edit_file(params: EditFileParams, ctx: ToolContext) -> ToolResult:
    """Apply SEARCH/REPLACE blocks to an existing file."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path)
    content = b.read_file_or_none(full_path)
    if content is None:
        return ToolResult(success=False, output="", error=f"File not found: {params.path}")

    blocks = parse_search_replace_blocks(params.search_replace_blocks)
    if not blocks:
        return ToolResult(success=False, output="", error="No valid SEARCH/REPLACE blocks found.")

    new_content, applied, errors = apply_search_replace_blocks(content, blocks)
    if applied == 0:
        return ToolResult(success=False, output="",
                          error="No changes applied. Errors:\n" + "\n".join(errors))

    b.write_file(full_path, new_content)
    old_n, new_n = count_lines(content), count_lines(new_content)
    summary = f"Applied {applied}/{len(blocks)} changes to {ctx.relative(full_path)}"
    if errors:
        summary += "\nSkipped:\n" + "\n".join(errors)
    diff_text = _compact_diff(content, new_content, ctx.relative(full_path))
    return ToolResult(
        success=True,
        output=f"{summary}\n{diff_text}" if diff_text else summary,
        meta={
            "file_path": full_path,
            "old_content": content,
            "new_content": new_content,
            "lines_added": max(0, new_n - old_n),
            "lines_removed": max(0, old_n - new_n),
        },
    )


def write_file(params: WriteFileParams, ctx: ToolContext) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path)
    if b.is_dir(full_path):
        return ToolResult(success=False, output="", error=f"Path is a directory: {params.path}")
    old_content = b.read_file_or_none(full_path)
    b.write_file(full_path, params.content)
    is_new = old_content is None
    return ToolResult(
        success=True,
        output=f"{'Created' if is_new else 'Updated'} {ctx.relative(full_path)}",
        meta={
            "file_path": full_path,
            "old_content": old_content or "",
            "new_content": params.content,
            "lines_added": count_lines(params.content),
            "lines_removed": count_lines(old_content),
            "is_new_file": is_new,
        },
    )


def create_file_or_folder(params: CreateFileOrFolderParams, ctx: ToolContext) -> ToolResult:
    """Create a file (with optional content) or, for a trailing slash, a folder."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path.rstrip("/\\"))
    if params.is_folder:
        b.mkdir(full_path)
        return ToolResult(success=True, output=f"Created folder: {ctx.relative(full_path)}")

    if b.file_exists(full_path):
        return ToolResult(success=False, output="", error=f"Already exists: {params.path}")
    b.write_file(full_path, params.content)
    return ToolResult(
        success=True,
        output=f"Created file: {ctx.relative(full_path)}",
        meta={
            "file_path": full_path,
            "old_content": "",
            "new_content": params.content,
            "lines_added": count_lines(params.content),
            "lines_removed": 0,
            "is_new_file": True,
        },
    )


def delete_file_or_folder(params: DeleteFileOrFolderParams, ctx: ToolContext) -> ToolResult:
    """Delete a file, or a folder (recursively when asked)."""
    b = ctx.backend
    full_path = b.sandbox_path(params.path)
    if not b.file_exists(full_path):
        return ToolResult(success=False, output="", error=f"Not found: {params.path}")

    if b.is_dir(full_path):
        try:
            b.remove_dir(full_path, recursive=params.recursive)
        except OSError:
            if not params.recursive:
                return ToolResult(success=False, output="",
                                  error=f"Folder is not empty: {params.path} (set recursive=true)")
            raise
        return ToolResult(success=True, output=f"Deleted folder: {ctx.relative(full_path)}")

    old_content = b.read_file(full_path)
    b.remove_file(full_path)
    logger.info(f"Deleted {full_path}")
    return ToolResult(
        success=True,
        output=f"Deleted: {ctx.relative(full_path)}",
        meta={
            "file_path": full_path,
            "old_content": old_content,
            "new_content": None,
            "lines_added": 0,
            "lines_removed": count_lines(old_content),
        },
    )
