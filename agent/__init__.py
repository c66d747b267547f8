"""
Agent package - orchestration core for the editor agent.

This package contains the agent functionality split into logical modules:
- models: immutable thread, message, tool-call and checkpoint records
- store: ThreadStore, the single owner of thread / checkpoint / pending-change state
- converter: thread messages -> chat-completion wire messages, plus validation
- executor: ToolExecutionEngine (approval, sandboxing, snapshots, timeouts)
- orchestrator: AgentOrchestrator, the per-turn agent loop
- context: context-item expansion and first-call message assembly
- events: AgentEvent and the transport stream events
- retry, loop_detection, partial_json, xml_tool_calls, truncation: loop helpers
- prompts: system prompt composition
"""

from .events import (
    AgentEvent, LLMResult, StreamDone, StreamError, StreamEvent, StreamedToolCall,
    TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart,
)
from .models import (
    AssistantMessage, CheckpointMessage, ContextItem, FileSnapshot, InterruptedToolMessage,
    MessageCheckpoint, PendingChange, RestoreResult, StreamPhase, StreamState, Thread,
    ToolCall, ToolResultMessage, ToolStatus, UserMessage, get_message_text,
)
from .store import ThreadStore
from .converter import MessageSequenceError, ValidationResult, build_wire_messages, validate_wire_messages
from .executor import REJECTED_RESULT, ToolExecutionEngine, ToolOutcome
from .orchestrator import AgentOrchestrator, CompletionTransport
from .prompts import build_system_prompt, AVAILABLE_TOOL_NAMES

__all__ = [
    "AgentEvent", "LLMResult", "StreamDone", "StreamError", "StreamEvent", "StreamedToolCall",
    "TextDelta", "ToolCallDelta", "ToolCallEnd", "ToolCallStart",
    "AssistantMessage", "CheckpointMessage", "ContextItem", "FileSnapshot", "InterruptedToolMessage",
    "MessageCheckpoint", "PendingChange", "RestoreResult", "StreamPhase", "StreamState", "Thread",
    "ToolCall", "ToolResultMessage", "ToolStatus", "UserMessage", "get_message_text",
    "ThreadStore",
    "MessageSequenceError", "ValidationResult", "build_wire_messages", "validate_wire_messages",
    "REJECTED_RESULT", "ToolExecutionEngine", "ToolOutcome",
    "AgentOrchestrator", "CompletionTransport",
    "build_system_prompt", "AVAILABLE_TOOL_NAMES",
]
