"""External and miscellaneous tools: run_command, codebase_search, web_search, read_url."""

import logging
import re
import urllib.error
import urllib.request

from duckduckgo_search import DDGS

from tools._common import ToolContext, ToolResult
from tools.params import RunCommandParams, CodebaseSearchParams, WebSearchParams, ReadUrlParams

logger = logging.getLogger(__name__)


def run_command(params: RunCommandParams, ctx: ToolContext) -> ToolResult:
    """Execute a shell command in the workspace."""
    b = ctx.backend
    cwd = "."
    if params.cwd:
        cwd = b.sandbox_path(params.cwd, allow_sensitive=True)
    stdout, stderr, rc = b.run_command(params.command, cwd=cwd, timeout=params.timeout)

    parts = [f"$ {params.command}"]
    if stdout:
        parts.append(stdout.rstrip())
    if stderr:
        parts.append(f"[stderr]\n{stderr.rstrip()}")
    if not stdout and not stderr:
        parts.append("(no output)")
    parts.append(f"[exit code: {rc}]")
    output = "\n".join(parts)
    return ToolResult(
        success=rc == 0, output=output,
        error=None if rc == 0 else f"Command exited with code {rc}\n{output}",
    )


async def codebase_search(params: CodebaseSearchParams, ctx: ToolContext) -> ToolResult:
    """Semantic search over the codebase index."""
    if ctx.search_index is None:
        return ToolResult(success=False, output="", error="Codebase index not available")
    results = await ctx.search_index.search(params.query.strip(), top_k=params.top_k)
    if not results:
        return ToolResult(success=True,
                          output="No relevant code found for this query. Try a different query or use search_files.")
    lines = [f"Codebase search (top {len(results)}):", ""]
    for i, r in enumerate(results, 1):
        score = r.get("score", 0.0)
        lines.append(f"--- Result {i}: {r.get('relative_path', '?')}:"
                     f"{r.get('start_line', 0)}-{r.get('end_line', 0)} (score={score:.3f}) ---")
        lines.append((r.get("content") or "")[:2000])
        lines.append("")
    return ToolResult(success=True, output="\n".join(lines).rstrip())


def web_search(params: WebSearchParams, ctx: ToolContext) -> ToolResult:
    """Search the web with DuckDuckGo."""
    with DDGS() as ddgs:
        results = list(ddgs.text(params.query, max_results=params.max_results))
    if not results:
        return ToolResult(success=True, output="No results found for that query.")
    lines = [f"Web search: \"{params.query}\"\n"]
    for i, r in enumerate(results, 1):
        title = (r.get("title") or "").strip()
        href = (r.get("href") or r.get("link") or "").strip()
        body = (r.get("body") or "").strip()[:400]
        lines.append(f"{i}. {title}\n   {href}\n   {body}\n")
    return ToolResult(success=True, output="\n".join(lines))


# --- read_url ---
_READ_URL_MAX_BYTES = 500_000
_READ_URL_MAX_CHARS = 100_000


def _html_to_text(text: str) -> str:
    text = re.sub(r"<script[^>]*>[\s\S]*?</script>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<style[^>]*>[\s\S]*?</style>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def read_url(params: ReadUrlParams, ctx: ToolContext) -> ToolResult:
    """Fetch content from a URL via HTTP GET. Returns plain text; HTML is stripped roughly."""
    url = params.url.strip()
    if not url.startswith(("http://", "https://")):
        return ToolResult(success=False, output="", error="url must start with http:// or https://")
    req = urllib.request.Request(url, headers={"User-Agent": "EditorAgent/1.0"})
    try:
        with urllib.request.urlopen(req, timeout=min(60, params.timeout)) as resp:
            body = resp.read(_READ_URL_MAX_BYTES + 1)
            content_type = resp.headers.get("Content-Type", "")
    except urllib.error.HTTPError as e:
        return ToolResult(success=False, output="", error=f"HTTP {e.code}: {e.reason}")
    except urllib.error.URLError as e:
        return ToolResult(success=False, output="", error=f"Failed to fetch {url}: {e.reason}")

    truncated = len(body) > _READ_URL_MAX_BYTES
    text = body[:_READ_URL_MAX_BYTES].decode("utf-8", errors="replace")
    if "html" in content_type.lower() or text.lstrip().startswith("<"):
        text = _html_to_text(text)
    if truncated:
        text += "\n\n[Content truncated: response was larger than 500KB.]"
    return ToolResult(success=True, output=text[:_READ_URL_MAX_CHARS])
