"""
Parsing of tool calls the model writes as XML in its text instead of using
native tool calling:

    <tool_call><function=read_file><parameter=path>a.py</parameter></function></tool_call>
"""

import json
import re
import uuid
from typing import List, Tuple

from agent.events import StreamedToolCall

_BLOCK_RE = re.compile(r"<tool_call>([\s\S]*?)</tool_call>", re.IGNORECASE)
_FUNCTION_RE = re.compile(r"<function[=\s]+[\"']?([^\"'>\s]+)[\"']?\s*>([\s\S]*?)</function>", re.IGNORECASE)
_PARAMETER_RE = re.compile(r"<parameter[=\s]+[\"']?([^\"'>\s]+)[\"']?\s*>([\s\S]*?)</parameter>", re.IGNORECASE)


def _decode(value: str):
    value = value.strip()
    try:
        return json.loads(value)
    except ValueError:
        return value


def parse_xml_tool_calls(text: str) -> List[StreamedToolCall]:
    calls: List[StreamedToolCall] = []
    for block in _BLOCK_RE.finditer(text):
        for fn in _FUNCTION_RE.finditer(block.group(1)):
            args = {m.group(1): _decode(m.group(2)) for m in _PARAMETER_RE.finditer(fn.group(2))}
            calls.append(StreamedToolCall(
                id=f"xml-{uuid.uuid4().hex[:12]}",
                name=fn.group(1),
                arguments=args,
                raw_arguments=json.dumps(args),
            ))
    return calls


def strip_xml_tool_calls(text: str) -> str:
    return _BLOCK_RE.sub("", text).strip()


def extract_xml_tool_calls(text: str) -> Tuple[str, List[StreamedToolCall]]:
    """Returns (text without tool-call blocks, parsed calls)."""
    calls = parse_xml_tool_calls(text)
    if not calls:
        return text, []
    return strip_xml_tool_calls(text), calls
