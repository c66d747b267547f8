"""Tool-aware truncation of tool results before they go back to the model."""

from typing import Dict, NamedTuple, Optional


class TruncateRule(NamedTuple):
    max_length: int
    head_ratio: float
    tail_ratio: float


# File reads keep the head; command output keeps the tail (errors are at the end).
TOOL_TRUNCATE_RULES: Dict[str, TruncateRule] = {
    "read_file": TruncateRule(20000, 0.8, 0.15),
    "read_multiple_files": TruncateRule(30000, 0.8, 0.15),
    "search_files": TruncateRule(10000, 0.9, 0.05),
    "codebase_search": TruncateRule(10000, 0.9, 0.05),
    "find_references": TruncateRule(8000, 0.85, 0.1),
    "get_dir_tree": TruncateRule(8000, 0.85, 0.1),
    "list_directory": TruncateRule(8000, 0.85, 0.1),
    "run_command": TruncateRule(15000, 0.2, 0.75),
    "get_document_symbols": TruncateRule(8000, 0.6, 0.35),
    "go_to_definition": TruncateRule(5000, 0.7, 0.25),
    "get_hover_info": TruncateRule(3000, 0.7, 0.25),
    "get_lint_errors": TruncateRule(8000, 0.85, 0.1),
    "default": TruncateRule(12000, 0.7, 0.25),
}

_LINE_SEARCH = 100


def _cut_at_line_end(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    nl = text.rfind("\n", 0, max_len + 1)
    if nl > max(0, max_len - _LINE_SEARCH):
        return text[:nl]
    return text[:max_len]


def _cut_at_line_start(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    start = len(text) - max_len
    nl = text.find("\n", start)
    if nl != -1 and nl < min(len(text), start + _LINE_SEARCH):
        return text[nl + 1:]
    return text[-max_len:] if max_len > 0 else ""


def truncate_tool_result(result: str, tool_name: str, max_length: Optional[int] = None) -> str:
    """Shorten ``result`` to about ``max_length`` chars, keeping a head and a tail.

    ``max_length`` overrides the tool's own limit; the head/tail split always
    follows the tool's rule.
    """
    if not result:
        return ""
    rule = TOOL_TRUNCATE_RULES.get(tool_name, TOOL_TRUNCATE_RULES["default"])
    limit = max_length or rule.max_length
    if len(result) <= limit:
        return result

    head_size = int(limit * rule.head_ratio)
    tail_size = int(limit * rule.tail_ratio)
    omitted = len(result) - head_size - tail_size

    head = _cut_at_line_end(result[:head_size + 200], head_size)
    tail = _cut_at_line_start(result[-(tail_size + 200):], tail_size) if tail_size > 0 else ""
    return f"{head}\n\n... [truncated: {omitted:,} chars omitted] ...\n\n{tail}"
