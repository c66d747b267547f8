"""
Context assembly for a user turn: expands attached context items into a
"Referenced Context" block and builds the wire messages for the model call.
"""

import logging
import re
from typing import Iterable, List, Optional, Sequence

from config import AgentConfig
from agent.converter import (
    MessageSequenceError, WireMessage, build_wire_messages, truncate_tool_contents, validate_wire_messages,
)
from agent.models import ChatMessage, CheckpointMessage, ContextItem, MessageContent

logger = logging.getLogger(__name__)

CONTEXT_TRUNCATED = "\n[Additional context truncated]"
FILE_TRUNCATED = "\n...(file truncated)"


def _clean_query(query: str, tag: str) -> str:
    return re.sub(rf"@{tag}\s*", "", query, flags=re.IGNORECASE).strip() or query


class ContextBuilder:
    """Turns context items into prompt text using the engine's tools and backend."""

    def __init__(self, engine, config: AgentConfig):
        self.engine = engine
        self.config = config

    async def build_context_content(self, items: Sequence[ContextItem], user_query: str = "") -> str:
        if not items:
            return ""
        parts: List[str] = []
        total = 0

        for item in items:
            if total >= self.config.max_total_context_chars:
                parts.append(CONTEXT_TRUNCATED)
                break
            block = await self._render_item(item, user_query)
            if block:
                parts.append(block)
                if not block.startswith("\n["):
                    total += len(block)

        return "".join(parts)

    async def _render_item(self, item: ContextItem, user_query: str) -> Optional[str]:
        run = self.engine.run_tool

        if item.type in ("File", "CodeSelection") and item.uri:
            try:
                path = self.engine.backend.sandbox_path(item.uri, allow_sensitive=True)
                content = self.engine.backend.read_file_or_none(path)
            except (OSError, ValueError) as e:
                logger.debug(f"Context file {item.uri} unreadable: {e}")
                return None
            if not content:
                return None
            if item.type == "CodeSelection" and item.range:
                start, end = item.range
                content = "\n".join(content.split("\n")[max(0, start - 1):end])
            if len(content) > self.config.max_file_content_chars:
                content = content[:self.config.max_file_content_chars] + FILE_TRUNCATED
            return f"\n### File: {item.uri}\n```\n{content}\n```\n"

        if item.type == "Folder" and item.uri:
            result = await run("get_dir_tree", {"path": item.uri, "max_depth": 2})
            if result.success:
                return f"\n### Folder: {item.uri}\n```\n{result.output}\n```\n"
            return f"\n[Folder not available: {item.uri}]\n"

        if item.type == "Codebase":
            query = item.query or (_clean_query(user_query, "codebase") if user_query else "")
            if not query:
                return None
            result = await run("codebase_search", {"query": query, "top_k": 20})
            if not result.success:
                logger.warning(f"Codebase search failed: {result.error}")
                return "\n[Codebase search failed]\n"
            return f"\n### Codebase Search Results for \"{query}\":\n{result.output}\n"

        if item.type == "Web":
            query = item.query or (_clean_query(user_query, "web") if user_query else "")
            if not query:
                return None
            result = await run("web_search", {"query": query})
            if not result.success:
                return f"\n[Web search failed: {result.error}]\n"
            return f"\n### Web Search Results for \"{query}\":\n{result.output}\n"

        if item.type == "Git":
            result = await run("run_command", {"command": "git status --short && git log --oneline -5",
                                               "timeout": 10})
            if not result.success:
                return "\n[Git info not available]\n"
            return f"\n### Git Status:\n```\n{result.output}\n```\n"

        return None


def build_user_content(message: MessageContent, context_content: str) -> MessageContent:
    """Prefix the user's message with the referenced context, if any."""
    if not context_content:
        return message
    context_part = {"type": "text", "text": f"## Referenced Context\n{context_content}\n\n## User Request\n"}
    if isinstance(message, str):
        return [context_part, {"type": "text", "text": message}]
    return [context_part, *message]


def build_llm_messages(
    history: Iterable[ChatMessage],
    current_message: MessageContent,
    context_content: str,
    system_prompt: Optional[str],
    config: AgentConfig,
) -> List[WireMessage]:
    """Wire messages for the first model call of a turn.

    ``history`` is the thread before this turn's user message; the current
    message (with its context block) is appended last.
    """
    recent = [m for m in history if not isinstance(m, CheckpointMessage)][-config.max_history_messages:]
    wire = build_wire_messages(recent, system_prompt)
    wire = truncate_tool_contents(wire, config.max_tool_result_chars)
    wire.append({"role": "user", "content": build_user_content(current_message, context_content)})

    validation = validate_wire_messages(wire)
    if not validation.valid:
        raise MessageSequenceError(validation.error)
    return wire
