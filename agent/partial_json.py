"""
Best-effort parsing of tool-call arguments while they are still streaming.

Used only for live UI feedback; the final arguments are always re-parsed
strictly once the tool call is complete.
"""

import json
import logging
import re
from typing import Any, Dict

logger = logging.getLogger(__name__)

_KNOWN_STRING_FIELDS = (
    "path", "content", "command", "query", "pattern", "old_string", "new_string",
    "search_replace_blocks", "url", "question", "cwd",
)
_KNOWN_INT_FIELDS = ("start_line", "end_line", "line", "column")


def parse_partial_json(text: str) -> Dict[str, Any]:
    """Parse possibly-truncated JSON into a dict. Returns {} if nothing is recoverable."""
    if not text or not text.strip():
        return {}

    try:
        value = json.loads(text)
        return value if isinstance(value, dict) else {}
    except ValueError:
        pass

    try:
        value = json.loads(fix_json(text))
        if isinstance(value, dict):
            return value
    except ValueError:
        pass

    return extract_known_fields(text)


def fix_json(text: str) -> str:
    """Close any open string and brackets so a truncated JSON prefix becomes parseable."""
    start = -1
    for i, ch in enumerate(text):
        if ch in "{[":
            start = i
            break
    if start == -1:
        return "{}"
    s = text[start:]

    stack = []
    in_string = False
    escaped = False
    for ch in s:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()

    fixed = s
    if in_string:
        if escaped:
            # dangling backslash would escape the closing quote
            fixed += "\\"
        fixed += '"'

    # drop a trailing comma or dangling key separator before closing
    fixed = re.sub(r"[,:]\s*$", "", fixed)
    while stack:
        fixed += stack.pop()
    return fixed


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value.replace("\\n", "\n").replace("\\t", "\t").replace('\\"', '"').replace("\\\\", "\\")


def extract_known_fields(text: str) -> Dict[str, Any]:
    """Last resort: pull well-known fields out of malformed JSON with regexes."""
    result: Dict[str, Any] = {}
    for name in _KNOWN_STRING_FIELDS:
        m = re.search(rf'"{name}"\s*:\s*"((?:[^"\\]|\\.)*)"?', text)
        if m:
            result[name] = _unescape(m.group(1))
    for name in _KNOWN_INT_FIELDS:
        m = re.search(rf'"{name}"\s*:\s*(-?\d+)', text)
        if m:
            result[name] = int(m.group(1))
    m = re.search(r'"paths"\s*:\s*\[([^\]]*)\]?', text)
    if m:
        result["paths"] = re.findall(r'"((?:[^"\\]|\\.)*)"', m.group(1))
    return result
