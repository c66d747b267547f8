"""
Message converter: thread messages -> chat-completion wire messages.

Wire format (OpenAI-style, translated to the provider's own shape by the
transport):

    {"role": "system", "content": str}
    {"role": "user", "content": str | [blocks]}
    {"role": "assistant", "content": str | None, "tool_calls": [{id, type, function: {name, arguments}}]}
    {"role": "tool", "tool_call_id": str, "content": str}

An assistant turn is emitted with only those tool calls that have a result in
the thread, and is immediately followed by those results in declaration
order. Calls without results never reach the wire.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from agent.models import AssistantMessage, ChatMessage, ToolResultMessage, UserMessage
from agent.truncation import truncate_tool_result

WireMessage = Dict[str, Any]


class MessageSequenceError(Exception):
    """The wire sequence breaks tool-call / tool-result pairing. A programming error."""


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


def _wire_arguments(arguments: Mapping[str, Any]) -> str:
    # underscore keys (_meta, _parseError, ...) are bookkeeping, not model input
    return json.dumps({k: v for k, v in arguments.items() if not k.startswith("_")}, ensure_ascii=False)


def build_wire_messages(messages: Iterable[ChatMessage], system_prompt: Optional[str] = None) -> List[WireMessage]:
    messages = list(messages)
    result: List[WireMessage] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    results_by_call: Dict[str, ToolResultMessage] = {
        m.tool_call_id: m for m in messages if isinstance(m, ToolResultMessage) and m.tool_call_id
    }

    for msg in messages:
        if isinstance(msg, UserMessage):
            result.append({"role": "user", "content": msg.content})
        elif isinstance(msg, AssistantMessage):
            answered = [tc for tc in msg.tool_calls if tc.id in results_by_call]
            if answered:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": _wire_arguments(tc.arguments)},
                        }
                        for tc in answered
                    ],
                })
                for tc in answered:
                    result.append({
                        "role": "tool",
                        "tool_call_id": tc.id,
                        "content": results_by_call[tc.id].content,
                    })
            elif msg.content:
                result.append({"role": "assistant", "content": msg.content})
        # tool results are placed after their assistant turn; checkpoints and
        # interrupted-tool markers never go on the wire

    return result


def validate_wire_messages(messages: List[WireMessage]) -> ValidationResult:
    """Every tool entry must answer a call declared by an earlier assistant entry."""
    if not messages:
        return ValidationResult(valid=False, error="No messages")

    declared = set()
    for msg in messages:
        if msg.get("role") == "assistant":
            for tc in msg.get("tool_calls") or []:
                declared.add(tc["id"])
        elif msg.get("role") == "tool":
            call_id = msg.get("tool_call_id")
            if call_id not in declared:
                return ValidationResult(valid=False, error=f"Tool message has no matching tool_call: {call_id}")
    return ValidationResult(valid=True)


def truncate_tool_contents(messages: List[WireMessage], max_chars: int) -> List[WireMessage]:
    """Cap the content of tool entries re-sent as history."""
    out = []
    for msg in messages:
        content = msg.get("content")
        if msg.get("role") == "tool" and isinstance(content, str) and len(content) > max_chars:
            msg = {**msg, "content": truncate_tool_result(content, "default", max_chars)}
        out.append(msg)
    return out
