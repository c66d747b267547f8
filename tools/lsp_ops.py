"""Language-server backed navigation tools.

Tool positions are 1-based (what the model sees in read_file output); the
language server speaks 0-based LSP positions.
"""

import logging
from typing import Any, Dict, List

from tools._common import ToolContext, ToolResult
from tools.params import (
    FindReferencesParams, GoToDefinitionParams, GetHoverInfoParams, GetDocumentSymbolsParams,
    PositionParams,
)

logger = logging.getLogger(__name__)

_NO_SERVER = "Language server not available"
_MAX_REFERENCES = 50


def _unavailable() -> ToolResult:
    return ToolResult(success=False, output="", error=_NO_SERVER)


def _locate(params: PositionParams, ctx: ToolContext):
    return ctx.backend.sandbox_path(params.path, allow_sensitive=True), params.line - 1, params.column - 1


def _format_location(loc: Dict[str, Any], ctx: ToolContext) -> str:
    path = ctx.relative(loc.get("path", "?"))
    line = loc.get("line", 0) + 1
    text = (loc.get("text") or "").strip()
    return f"{path}:{line}" + (f"  {text}" if text else "")


async def find_references(params: FindReferencesParams, ctx: ToolContext) -> ToolResult:
    if ctx.language_server is None:
        return _unavailable()
    path, line, col = _locate(params, ctx)
    refs = await ctx.language_server.references(path, line, col)
    if not refs:
        return ToolResult(success=True, output="No references found")
    lines = [f"Found {len(refs)} reference(s):"]
    lines.extend(_format_location(r, ctx) for r in refs[:_MAX_REFERENCES])
    if len(refs) > _MAX_REFERENCES:
        lines.append(f"... and {len(refs) - _MAX_REFERENCES} more")
    return ToolResult(success=True, output="\n".join(lines))


async def go_to_definition(params: GoToDefinitionParams, ctx: ToolContext) -> ToolResult:
    if ctx.language_server is None:
        return _unavailable()
    path, line, col = _locate(params, ctx)
    defs = await ctx.language_server.definition(path, line, col)
    if not defs:
        return ToolResult(success=True, output="No definition found")
    return ToolResult(success=True,
                      output="Definition:\n" + "\n".join(_format_location(d, ctx) for d in defs))


async def get_hover_info(params: GetHoverInfoParams, ctx: ToolContext) -> ToolResult:
    if ctx.language_server is None:
        return _unavailable()
    path, line, col = _locate(params, ctx)
    info = await ctx.language_server.hover(path, line, col)
    return ToolResult(success=True, output=info.strip() if info else "No hover information available")


def _render_symbols(symbols: List[Dict[str, Any]], depth: int = 0) -> List[str]:
    lines = []
    for s in symbols:
        lines.append(f"{'  ' * depth}{s.get('kind', 'symbol')} {s.get('name', '?')} (line {s.get('line', 0) + 1})")
        if s.get("children"):
            lines.extend(_render_symbols(s["children"], depth + 1))
    return lines


async def get_document_symbols(params: GetDocumentSymbolsParams, ctx: ToolContext) -> ToolResult:
    """List the symbols declared in a file, nested by containment."""
    if ctx.language_server is None:
        return _unavailable()
    path = ctx.backend.sandbox_path(params.path, allow_sensitive=True)
    symbols = await ctx.language_server.document_symbols(path)
    if not symbols:
        return ToolResult(success=True, output=f"No symbols found in {ctx.relative(path)}")
    return ToolResult(success=True,
                      output=f"Symbols in {ctx.relative(path)}:\n" + "\n".join(_render_symbols(symbols)))
