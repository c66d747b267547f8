"""
Stream and agent event data types.

The transport yields the stream events below from an async generator; the
orchestrator consumes them in one loop and reports progress to the UI as
AgentEvents.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # text, tool_call, tool_pending, tool_result, stream_retry, warning, error, done
    content: str = ""
    data: Optional[Dict[str, Any]] = None


# ── Transport stream events ──

@dataclass(frozen=True)
class TextDelta:
    text: str
    type: ClassVar[str] = "text"


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str
    type: ClassVar[str] = "tool_call_start"


@dataclass(frozen=True)
class ToolCallDelta:
    id: str
    arguments_delta: str
    type: ClassVar[str] = "tool_call_delta"


@dataclass(frozen=True)
class ToolCallEnd:
    """End of a tool call. ``arguments`` carries the full JSON when the transport has it."""
    id: str
    arguments: Optional[str] = None
    type: ClassVar[str] = "tool_call_end"


@dataclass(frozen=True)
class StreamError:
    code: str
    message: str
    type: ClassVar[str] = "error"


@dataclass(frozen=True)
class StreamDone:
    stop_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    type: ClassVar[str] = "done"


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallDelta, ToolCallEnd, StreamError, StreamDone]


@dataclass
class StreamedToolCall:
    """A tool call assembled from the stream."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""


@dataclass
class LLMResult:
    """Outcome of one model call."""
    content: str = ""
    tool_calls: List[StreamedToolCall] = field(default_factory=list)
    error: Optional[StreamError] = None
    usage: Dict[str, int] = field(default_factory=dict)
