"""
Message and thread data types.

All records are frozen dataclasses; the store updates them copy-on-write with
``dataclasses.replace``. An assistant message owns its tool calls in one
ordered tuple (``tool_calls``) and its ``parts`` only reference them by id, so
there is a single copy of every tool call to keep current.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union


def new_id() -> str:
    return str(uuid.uuid4())


def now() -> float:
    return time.time()


class ToolStatus(str, Enum):
    PENDING = "pending"      # streaming in / queued
    AWAITING = "awaiting"    # waiting for user approval
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolStatus.SUCCESS, ToolStatus.ERROR, ToolStatus.REJECTED)


class StreamPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    TOOL_RUNNING = "tool_running"
    ERROR = "error"


# ToolResultMessage.type values
RESULT_SUCCESS = "success"
RESULT_TOOL_ERROR = "tool_error"
RESULT_REJECTED = "rejected"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TextPart:
    content: str
    type: ClassVar[str] = "text"


@dataclass(frozen=True)
class ToolCallPart:
    """Position of a tool call in the assistant's output; the call itself lives in ``tool_calls``."""
    tool_call_id: str
    type: ClassVar[str] = "tool_call"


AssistantPart = Union[TextPart, ToolCallPart]


@dataclass(frozen=True)
class FileSnapshot:
    """Content of a file before mutation. ``content=None`` means the file did not exist."""
    path: str
    content: Optional[str]


@dataclass(frozen=True)
class ContextItem:
    """A reference the user attached to the next message.

    type: File | CodeSelection | Folder | Codebase | Web | Git
    """
    type: str
    uri: Optional[str] = None
    query: Optional[str] = None
    range: Optional[Tuple[int, int]] = None

    def same_target(self, other: "ContextItem") -> bool:
        if self.type != other.type:
            return False
        if self.uri is not None or other.uri is not None:
            return self.uri == other.uri
        return True


# Message content is plain text or a list of {"type": "text"|"image", ...} blocks.
MessageContent = Union[str, List[Dict[str, Any]]]


@dataclass(frozen=True)
class UserMessage:
    content: MessageContent
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now)
    context_items: Tuple[ContextItem, ...] = ()
    role: ClassVar[str] = "user"


@dataclass(frozen=True)
class AssistantMessage:
    id: str = field(default_factory=new_id)
    content: str = ""
    timestamp: float = field(default_factory=now)
    is_streaming: bool = True
    parts: Tuple[AssistantPart, ...] = ()
    tool_calls: Tuple[ToolCall, ...] = ()
    role: ClassVar[str] = "assistant"

    def get_tool_call(self, tool_call_id: str) -> Optional[ToolCall]:
        for tc in self.tool_calls:
            if tc.id == tool_call_id:
                return tc
        return None

    def iter_parts(self):
        """Yield TextPart / ToolCall objects in display order."""
        for part in self.parts:
            if isinstance(part, ToolCallPart):
                tc = self.get_tool_call(part.tool_call_id)
                if tc is not None:
                    yield tc
            else:
                yield part


@dataclass(frozen=True)
class ToolResultMessage:
    tool_call_id: str
    name: str
    content: str
    type: str = RESULT_SUCCESS
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now)
    role: ClassVar[str] = "tool"


@dataclass(frozen=True)
class CheckpointMessage:
    type: str  # user_message | tool_edit
    file_snapshots: Mapping[str, FileSnapshot] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now)
    role: ClassVar[str] = "checkpoint"


@dataclass(frozen=True)
class InterruptedToolMessage:
    name: str
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now)
    role: ClassVar[str] = "interrupted_tool"


ChatMessage = Union[UserMessage, AssistantMessage, ToolResultMessage, CheckpointMessage, InterruptedToolMessage]


@dataclass(frozen=True)
class ThreadState:
    current_checkpoint_idx: Optional[int] = None
    is_streaming: bool = False


@dataclass(frozen=True)
class Thread:
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=now)
    last_modified: float = field(default_factory=now)
    messages: Tuple[ChatMessage, ...] = ()
    context_items: Tuple[ContextItem, ...] = ()
    state: ThreadState = field(default_factory=ThreadState)


@dataclass(frozen=True)
class StreamState:
    phase: StreamPhase = StreamPhase.IDLE
    current_tool_call: Optional[ToolCall] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PendingChange:
    file_path: str
    tool_call_id: str
    tool_name: str
    snapshot: FileSnapshot
    lines_added: int = 0
    lines_removed: int = 0
    status: str = "pending"
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now)


@dataclass(frozen=True)
class MessageCheckpoint:
    message_id: str
    description: str
    file_snapshots: Mapping[str, FileSnapshot] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=now)


@dataclass
class RestoreResult:
    success: bool
    restored_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def get_message_text(content: MessageContent) -> str:
    """Plain text of a message, ignoring image blocks."""
    if isinstance(content, str):
        return content
    return "".join(c.get("text", "") for c in content if c.get("type") == "text")


def get_message_images(content: MessageContent) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return []
    return [c for c in content if c.get("type") == "image"]


def get_modified_files(messages: Tuple[ChatMessage, ...]) -> List[str]:
    """Paths touched by edit-style tool calls, in first-touch order."""
    files: List[str] = []
    for msg in messages:
        if not isinstance(msg, AssistantMessage):
            continue
        for tc in msg.tool_calls:
            if tc.name in ("edit_file", "write_file", "create_file_or_folder"):
                path = tc.arguments.get("path") or (tc.arguments.get("_meta") or {}).get("file_path")
                if path and path not in files:
                    files.append(path)
    return files


# ── JSON (de)serialization, used by thread persistence ──

def _tool_call_to_dict(tc: ToolCall) -> Dict[str, Any]:
    return {"id": tc.id, "name": tc.name, "arguments": dict(tc.arguments),
            "status": tc.status.value, "result": tc.result, "error": tc.error}


def _snapshots_to_dict(snaps: Mapping[str, FileSnapshot]) -> Dict[str, Any]:
    return {p: {"path": s.path, "content": s.content} for p, s in snaps.items()}


def _context_item_to_dict(item: ContextItem) -> Dict[str, Any]:
    d: Dict[str, Any] = {"type": item.type}
    if item.uri is not None:
        d["uri"] = item.uri
    if item.query is not None:
        d["query"] = item.query
    if item.range is not None:
        d["range"] = list(item.range)
    return d


def _context_item_from_dict(d: Dict[str, Any]) -> ContextItem:
    rng = d.get("range")
    return ContextItem(type=d["type"], uri=d.get("uri"), query=d.get("query"),
                       range=tuple(rng) if rng else None)


def message_to_dict(msg: ChatMessage) -> Dict[str, Any]:
    d: Dict[str, Any] = {"role": msg.role, "id": msg.id, "timestamp": msg.timestamp}
    if isinstance(msg, UserMessage):
        d["content"] = msg.content
        d["context_items"] = [_context_item_to_dict(c) for c in msg.context_items]
    elif isinstance(msg, AssistantMessage):
        d["content"] = msg.content
        d["is_streaming"] = msg.is_streaming
        d["parts"] = [
            {"type": "text", "content": p.content} if isinstance(p, TextPart)
            else {"type": "tool_call", "tool_call_id": p.tool_call_id}
            for p in msg.parts
        ]
        d["tool_calls"] = [_tool_call_to_dict(tc) for tc in msg.tool_calls]
    elif isinstance(msg, ToolResultMessage):
        d.update(tool_call_id=msg.tool_call_id, name=msg.name, content=msg.content, type=msg.type)
    elif isinstance(msg, CheckpointMessage):
        d.update(type=msg.type, file_snapshots=_snapshots_to_dict(msg.file_snapshots))
    elif isinstance(msg, InterruptedToolMessage):
        d["name"] = msg.name
    return d


def message_from_dict(d: Dict[str, Any]) -> ChatMessage:
    role = d.get("role")
    common = {"id": d["id"], "timestamp": d.get("timestamp", 0.0)}
    if role == "user":
        return UserMessage(content=d.get("content", ""),
                           context_items=tuple(_context_item_from_dict(c) for c in d.get("context_items", [])),
                           **common)
    if role == "assistant":
        parts: List[AssistantPart] = []
        for p in d.get("parts", []):
            if p.get("type") == "tool_call":
                parts.append(ToolCallPart(p["tool_call_id"]))
            else:
                parts.append(TextPart(p.get("content", "")))
        tool_calls = tuple(
            ToolCall(id=tc["id"], name=tc["name"], arguments=tc.get("arguments") or {},
                     status=ToolStatus(tc.get("status", "pending")),
                     result=tc.get("result"), error=tc.get("error"))
            for tc in d.get("tool_calls", [])
        )
        return AssistantMessage(content=d.get("content", ""), is_streaming=d.get("is_streaming", False),
                                parts=tuple(parts), tool_calls=tool_calls, **common)
    if role == "tool":
        return ToolResultMessage(tool_call_id=d["tool_call_id"], name=d["name"], content=d.get("content", ""),
                                 type=d.get("type", RESULT_SUCCESS), **common)
    if role == "checkpoint":
        snaps = {p: FileSnapshot(s["path"], s.get("content")) for p, s in d.get("file_snapshots", {}).items()}
        return CheckpointMessage(type=d.get("type", "user_message"), file_snapshots=snaps, **common)
    if role == "interrupted_tool":
        return InterruptedToolMessage(name=d.get("name", ""), **common)
    raise ValueError(f"Unknown message role: {role!r}")


def thread_to_dict(thread: Thread) -> Dict[str, Any]:
    return {
        "id": thread.id,
        "created_at": thread.created_at,
        "last_modified": thread.last_modified,
        "messages": [message_to_dict(m) for m in thread.messages],
        "context_items": [_context_item_to_dict(c) for c in thread.context_items],
        "state": {"current_checkpoint_idx": thread.state.current_checkpoint_idx,
                  "is_streaming": thread.state.is_streaming},
    }


def thread_from_dict(d: Dict[str, Any]) -> Thread:
    state = d.get("state") or {}
    return Thread(
        id=d["id"],
        created_at=d.get("created_at", 0.0),
        last_modified=d.get("last_modified", 0.0),
        messages=tuple(message_from_dict(m) for m in d.get("messages", [])),
        context_items=tuple(_context_item_from_dict(c) for c in d.get("context_items", [])),
        # a restart always lands outside a stream
        state=ThreadState(current_checkpoint_idx=state.get("current_checkpoint_idx"), is_streaming=False),
    )
