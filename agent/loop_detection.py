"""Detects the model repeating the same batch of tool calls."""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, List

LOOP_WARNING = "\n\nDetected repeated operations. Stopping to prevent infinite loop."


def tool_call_signature(tool_calls: Iterable[Any]) -> str:
    """Canonical, order-independent signature of a batch of calls (objects with .name/.arguments)."""
    entries = [
        f"{tc.name}:{json.dumps(dict(tc.arguments), sort_keys=True, default=str)}"
        for tc in tool_calls
    ]
    return "|".join(sorted(entries))


@dataclass
class LoopDetector:
    """Tracks recent batch signatures for one turn.

    ``check`` returns True once ``threshold`` consecutive batches each
    match one of the last ``history_size`` signatures.
    """
    threshold: int = 2
    history_size: int = 5
    recent: List[str] = field(default_factory=list)
    consecutive_repeats: int = 0

    def check(self, tool_calls: Iterable[Any]) -> bool:
        signature = tool_call_signature(tool_calls)
        if signature in self.recent:
            self.consecutive_repeats += 1
        else:
            self.consecutive_repeats = 0
        self.recent.append(signature)
        if len(self.recent) > self.history_size:
            self.recent.pop(0)
        return self.consecutive_repeats >= self.threshold

    def reset(self) -> None:
        self.recent.clear()
        self.consecutive_repeats = 0
