"""
Thread / checkpoint store.

The single source of truth for threads, messages, stream state, pending file
changes and per-turn checkpoints. Every mutation goes through a method here
and replaces the affected records copy-on-write, then notifies subscribers.
Filesystem access (undo / restore) goes through the injected Backend.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from backend import Backend
import thread_storage
from agent.models import (
    AssistantMessage, ChatMessage, CheckpointMessage, ContextItem, FileSnapshot,
    MessageCheckpoint, MessageContent, PendingChange, RestoreResult, StreamPhase,
    StreamState, TextPart, Thread, ThreadState, ToolCall, ToolCallPart, ToolResultMessage,
    ToolStatus, UserMessage, now,
)
from tools.schemas import APPROVAL_CATEGORIES

logger = logging.getLogger(__name__)

Listener = Callable[["ThreadStore"], None]


def _default_auto_approve() -> Dict[str, bool]:
    return {c: False for c in APPROVAL_CATEGORIES}


class ThreadStore:
    """Authoritative agent state. One instance per editor window."""

    def __init__(self, backend: Optional[Backend] = None, storage: Optional["thread_storage.ThreadStorage"] = None):
        self.backend = backend
        self.storage = storage
        self._threads: Dict[str, Thread] = {}
        self._current_thread_id: Optional[str] = None
        self._stream_state = StreamState()
        self._pending_changes: Tuple[PendingChange, ...] = ()
        self._checkpoints: Tuple[MessageCheckpoint, ...] = ()
        self._auto_approve: Dict[str, bool] = _default_auto_approve()
        self._listeners: List[Listener] = []
        self._dirty = False

        if storage is not None:
            persisted = storage.load()
            if persisted is not None:
                self._threads = dict(persisted.threads)
                self._current_thread_id = persisted.current_thread_id
                self._auto_approve.update(
                    {k: v for k, v in persisted.auto_approve.items() if k in APPROVAL_CATEGORIES})
                logger.info(f"Loaded {len(self._threads)} thread(s) from {storage.path}")

    # ------------------------------------------------------------------
    # Subscriptions / persistence
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _changed(self, persist: bool = False) -> None:
        if persist:
            self._dirty = True
            self.flush()
        for listener in list(self._listeners):
            listener(self)

    def _persisted_state(self) -> "thread_storage.PersistedState":
        return thread_storage.PersistedState(
            threads=dict(self._threads),
            current_thread_id=self._current_thread_id,
            auto_approve=dict(self._auto_approve),
        )

    def _save(self, state: "thread_storage.PersistedState") -> None:
        try:
            self.storage.save(state)
        except OSError as e:
            logger.warning(f"Failed to persist threads: {e}")

    def flush(self) -> None:
        """Write unsaved thread changes now (thread switches, shutdown)."""
        if self.storage is None or not self._dirty:
            return
        self._dirty = False
        self._save(self._persisted_state())

    async def flush_async(self) -> None:
        """Write unsaved thread changes from the default executor (end of a turn)."""
        if self.storage is None or not self._dirty:
            return
        self._dirty = False
        state = self._persisted_state()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save, state)

    # ------------------------------------------------------------------
    # Internal transition helpers
    # ------------------------------------------------------------------

    def _put_thread(self, thread: Thread, persist: bool = False, touch: bool = True) -> None:
        """Replace one thread. Message-level transitions are saved at the next flush."""
        if touch:
            thread = replace(thread, last_modified=now())
        self._threads = {**self._threads, thread.id: thread}
        self._dirty = True
        self._changed(persist=persist)

    def _ensure_thread(self) -> Thread:
        thread = self.current_thread
        if thread is None:
            self.create_thread()
            thread = self.current_thread
        return thread

    def _append_message(self, message: ChatMessage, **state_changes: Any) -> str:
        thread = self._ensure_thread()
        new_state = replace(thread.state, **state_changes) if state_changes else thread.state
        self._put_thread(replace(thread, messages=thread.messages + (message,), state=new_state))
        return message.id

    def _update_assistant(self, message_id: str,
                          fn: Callable[[AssistantMessage], AssistantMessage]) -> bool:
        thread = self.current_thread
        if thread is None:
            return False
        for i, msg in enumerate(thread.messages):
            if msg.id == message_id and isinstance(msg, AssistantMessage):
                updated = fn(msg)
                if updated is msg:
                    return True
                messages = thread.messages[:i] + (updated,) + thread.messages[i + 1:]
                self._put_thread(replace(thread, messages=messages))
                return True
        return False

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def create_thread(self) -> str:
        thread = Thread()
        self._threads = {**self._threads, thread.id: thread}
        self._current_thread_id = thread.id
        self._changed(persist=True)
        return thread.id

    def switch_thread(self, thread_id: str) -> None:
        if thread_id in self._threads:
            self._current_thread_id = thread_id
            self._changed(persist=True)

    def delete_thread(self, thread_id: str) -> None:
        remaining = {tid: t for tid, t in self._threads.items() if tid != thread_id}
        self._threads = remaining
        if self._current_thread_id == thread_id:
            self._current_thread_id = next(iter(remaining), None)
        self._changed(persist=True)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_user_message(self, content: MessageContent,
                         context_items: Optional[Iterable[ContextItem]] = None) -> str:
        return self._append_message(UserMessage(content=content, context_items=tuple(context_items or ())))

    def add_assistant_message(self, content: str = "") -> str:
        """Append an empty streaming placeholder for the model's reply."""
        message = AssistantMessage(
            content=content,
            parts=(TextPart(content),) if content else (),
        )
        return self._append_message(message, is_streaming=True)

    def append_to_assistant(self, message_id: str, delta: str) -> None:
        """Append streamed text, extending the trailing text part or opening a new one."""
        if not delta:
            return

        def apply(msg: AssistantMessage) -> AssistantMessage:
            parts = msg.parts
            if parts and isinstance(parts[-1], TextPart):
                parts = parts[:-1] + (TextPart(parts[-1].content + delta),)
            else:
                parts = parts + (TextPart(delta),)
            return replace(msg, content=msg.content + delta, parts=parts)

        self._update_assistant(message_id, apply)

    def rewrite_assistant_text(self, message_id: str, transform: Callable[[str], str]) -> None:
        """Apply ``transform`` to the assistant's text and each text part; empty parts are dropped."""
        def apply(msg: AssistantMessage) -> AssistantMessage:
            parts = []
            for p in msg.parts:
                if isinstance(p, TextPart):
                    text = transform(p.content)
                    if text.strip():
                        parts.append(TextPart(text))
                else:
                    parts.append(p)
            return replace(msg, content=transform(msg.content), parts=tuple(parts))

        self._update_assistant(message_id, apply)

    def revert_assistant(self, snapshot: AssistantMessage) -> None:
        """Put an assistant message back to an earlier version of itself (e.g. before a failed attempt)."""
        self._update_assistant(snapshot.id, lambda msg: snapshot)

    def finalize_assistant(self, message_id: str) -> None:
        thread = self.current_thread
        if thread is None:
            return
        messages = tuple(
            replace(m, is_streaming=False) if m.id == message_id and isinstance(m, AssistantMessage) else m
            for m in thread.messages
        )
        self._put_thread(replace(thread, messages=messages, state=replace(thread.state, is_streaming=False)))

    def add_tool_result(self, tool_call_id: str, name: str, content: str, type: str) -> str:
        return self._append_message(ToolResultMessage(tool_call_id=tool_call_id, name=name,
                                                      content=content, type=type))

    def add_checkpoint(self, type: str, file_snapshots: Dict[str, FileSnapshot]) -> str:
        """Append an inline CheckpointMessage and point the thread state at it."""
        thread = self._ensure_thread()
        message = CheckpointMessage(type=type, file_snapshots=dict(file_snapshots))
        messages = thread.messages + (message,)
        self._put_thread(replace(thread, messages=messages,
                                 state=replace(thread.state, current_checkpoint_idx=len(messages) - 1)))
        return message.id

    def clear_messages(self) -> None:
        thread = self.current_thread
        if thread is None:
            return
        self._put_thread(replace(thread, messages=(), context_items=(), state=ThreadState()), persist=True)

    def delete_messages_after(self, message_id: str) -> None:
        """Keep messages up to and including ``message_id``."""
        thread = self.current_thread
        if thread is None:
            return
        for i, m in enumerate(thread.messages):
            if m.id == message_id:
                self._put_thread(replace(thread, messages=thread.messages[:i + 1]), persist=True)
                return

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def add_tool_call_part(self, message_id: str, tool_call_id: str, name: str,
                           arguments: Optional[Dict[str, Any]] = None) -> None:
        """Register a tool call on an assistant message. A repeated id is a no-op."""
        def apply(msg: AssistantMessage) -> AssistantMessage:
            if msg.get_tool_call(tool_call_id) is not None:
                return msg
            tc = ToolCall(id=tool_call_id, name=name, arguments=dict(arguments or {}), status=ToolStatus.PENDING)
            return replace(msg, parts=msg.parts + (ToolCallPart(tool_call_id),),
                           tool_calls=msg.tool_calls + (tc,))

        self._update_assistant(message_id, apply)

    def update_tool_call(self, message_id: str, tool_call_id: str, **updates: Any) -> None:
        """Merge ``updates`` (status, arguments, result, error) into one tool call."""
        if "status" in updates and updates["status"] is not None:
            updates["status"] = ToolStatus(updates["status"])

        def apply(msg: AssistantMessage) -> AssistantMessage:
            if msg.get_tool_call(tool_call_id) is None:
                return msg
            return replace(msg, tool_calls=tuple(
                replace(tc, **updates) if tc.id == tool_call_id else tc for tc in msg.tool_calls
            ))

        self._update_assistant(message_id, apply)

    def get_tool_call(self, message_id: str, tool_call_id: str) -> Optional[ToolCall]:
        msg = self.get_message(message_id)
        if isinstance(msg, AssistantMessage):
            return msg.get_tool_call(tool_call_id)
        return None

    # ------------------------------------------------------------------
    # Context items
    # ------------------------------------------------------------------

    def add_context_item(self, item: ContextItem) -> None:
        thread = self._ensure_thread()
        if any(existing.same_target(item) for existing in thread.context_items):
            return
        self._put_thread(replace(thread, context_items=thread.context_items + (item,)), touch=False)

    def remove_context_item(self, index: int) -> None:
        thread = self.current_thread
        if thread is None:
            return
        items = tuple(c for i, c in enumerate(thread.context_items) if i != index)
        self._put_thread(replace(thread, context_items=items), touch=False)

    def clear_context_items(self) -> None:
        thread = self.current_thread
        if thread is None or not thread.context_items:
            return
        self._put_thread(replace(thread, context_items=()), touch=False)

    # ------------------------------------------------------------------
    # Stream state / policy
    # ------------------------------------------------------------------

    def set_stream_phase(self, phase: StreamPhase, tool_call: Optional[ToolCall] = None,
                         error: Optional[str] = None) -> None:
        self._stream_state = StreamState(phase=StreamPhase(phase), current_tool_call=tool_call, error=error)
        self._changed()

    def set_auto_approve(self, category: str, value: bool) -> None:
        if category not in APPROVAL_CATEGORIES:
            raise ValueError(f"Unknown approval category: {category}")
        self._auto_approve = {**self._auto_approve, category: bool(value)}
        self._changed(persist=True)

    # ------------------------------------------------------------------
    # Pending changes
    # ------------------------------------------------------------------

    def add_pending_change(self, file_path: str, tool_call_id: str, tool_name: str,
                           snapshot: FileSnapshot, lines_added: int = 0, lines_removed: int = 0) -> None:
        """Record a file mutation. A second change to the same path keeps the first snapshot."""
        changes = list(self._pending_changes)
        for i, existing in enumerate(changes):
            if existing.file_path == file_path:
                changes[i] = replace(
                    existing,
                    tool_call_id=tool_call_id,
                    tool_name=tool_name,
                    lines_added=existing.lines_added + lines_added,
                    lines_removed=existing.lines_removed + lines_removed,
                )
                break
        else:
            changes.append(PendingChange(
                file_path=file_path, tool_call_id=tool_call_id, tool_name=tool_name,
                snapshot=snapshot, lines_added=lines_added, lines_removed=lines_removed,
            ))
        self._pending_changes = tuple(changes)
        self._changed()

    def accept_all_changes(self) -> None:
        """Stop offering undo for every change. Files on disk are left as they are."""
        self._pending_changes = ()
        self._changed()

    def accept_change(self, file_path: str) -> None:
        self._pending_changes = tuple(c for c in self._pending_changes if c.file_path != file_path)
        self._changed()

    def clear_pending_changes(self) -> None:
        self.accept_all_changes()

    async def undo_change(self, file_path: str) -> bool:
        """Restore one file to its pre-change snapshot. Returns False if nothing was undone."""
        change = next((c for c in self._pending_changes if c.file_path == file_path), None)
        if change is None:
            return False
        error = await self._restore_snapshot(file_path, change.snapshot)
        if error:
            logger.warning(f"Undo failed for {file_path}: {error}")
            return False
        self._pending_changes = tuple(c for c in self._pending_changes if c.file_path != file_path)
        self._changed()
        return True

    async def undo_all_changes(self) -> RestoreResult:
        """Restore every pending change; failures are collected, the batch continues."""
        restored: List[str] = []
        errors: List[str] = []
        for change in self._pending_changes:
            error = await self._restore_snapshot(change.file_path, change.snapshot)
            if error:
                logger.warning(f"Undo failed for {change.file_path}: {error}")
                errors.append(error)
            else:
                restored.append(change.file_path)
        self._pending_changes = ()
        self._changed()
        return RestoreResult(success=not errors, restored_files=restored, errors=errors)

    # ------------------------------------------------------------------
    # Message checkpoints
    # ------------------------------------------------------------------

    def create_message_checkpoint(self, message_id: str, description: str) -> str:
        """Open the checkpoint for a user turn, seeded with copies of the pending-change snapshots."""
        snapshots = {c.file_path: FileSnapshot(c.snapshot.path, c.snapshot.content) for c in self._pending_changes}
        checkpoint = MessageCheckpoint(message_id=message_id, description=description, file_snapshots=snapshots)
        self._checkpoints = self._checkpoints + (checkpoint,)
        logger.debug(f"Checkpoint {checkpoint.id} for message {message_id} with files {list(snapshots)}")
        self._changed()
        return checkpoint.id

    def add_snapshot_to_current_checkpoint(self, file_path: str, content: Optional[str]) -> None:
        """Record a file's pre-mutation content in the latest checkpoint; the first snapshot wins."""
        if not self._checkpoints:
            logger.debug(f"No checkpoint open, snapshot for {file_path} not recorded")
            return
        last = self._checkpoints[-1]
        if file_path in last.file_snapshots:
            return
        snapshots = {**last.file_snapshots, file_path: FileSnapshot(file_path, content)}
        self._checkpoints = self._checkpoints[:-1] + (replace(last, file_snapshots=snapshots),)
        self._changed()

    def get_checkpoint_for_message(self, message_id: str) -> Optional[MessageCheckpoint]:
        return next((cp for cp in self._checkpoints if cp.message_id == message_id), None)

    def clear_message_checkpoints(self) -> None:
        self._checkpoints = ()
        self._changed()

    async def restore_to_checkpoint(self, checkpoint_id: str) -> RestoreResult:
        """Roll files and conversation back to just before the checkpoint's user message.

        Files from this checkpoint onward, plus any still-pending changes, are
        restored to their earliest recorded snapshot. The checkpoint's message
        and everything after it are removed, as are this and later checkpoints.
        """
        idx = next((i for i, cp in enumerate(self._checkpoints) if cp.id == checkpoint_id), -1)
        if idx == -1:
            return RestoreResult(success=False, errors=["Checkpoint not found"])
        checkpoint = self._checkpoints[idx]

        to_restore: Dict[str, FileSnapshot] = {}
        for cp in self._checkpoints[idx:]:
            for path, snap in cp.file_snapshots.items():
                to_restore.setdefault(path, snap)
        for change in self._pending_changes:
            to_restore.setdefault(change.file_path, change.snapshot)

        restored: List[str] = []
        errors: List[str] = []
        for path, snap in to_restore.items():
            error = await self._restore_snapshot(path, snap)
            if error:
                logger.warning(f"Restore failed for {path}: {error}")
                errors.append(error)
            else:
                restored.append(path)

        thread = self.current_thread
        if thread is not None:
            for i, m in enumerate(thread.messages):
                if m.id == checkpoint.message_id:
                    self._put_thread(replace(thread, messages=thread.messages[:i]), persist=True)
                    break

        self._checkpoints = self._checkpoints[:idx]
        self._pending_changes = ()
        self._changed()
        logger.info(f"Restored checkpoint {checkpoint_id}: {len(restored)} file(s), {len(errors)} error(s)")
        return RestoreResult(success=not errors, restored_files=restored, errors=errors)

    async def _restore_snapshot(self, path: str, snapshot: FileSnapshot) -> Optional[str]:
        """Write back (or delete, for a null snapshot) one file. Returns an error string on failure."""
        if self.backend is None:
            return f"Failed to restore: {path} (no backend)"
        b = self.backend
        loop = asyncio.get_running_loop()

        def work() -> None:
            if snapshot.content is None:
                if b.is_file(path):
                    b.remove_file(path)
            else:
                b.write_file(path, snapshot.content)

        try:
            await loop.run_in_executor(None, work)
        except (OSError, ValueError) as e:
            return f"Error restoring {path}: {e}"
        return None

    # ------------------------------------------------------------------
    # Selectors
    # ------------------------------------------------------------------

    @property
    def threads(self) -> Dict[str, Thread]:
        return dict(self._threads)

    @property
    def current_thread_id(self) -> Optional[str]:
        return self._current_thread_id

    @property
    def current_thread(self) -> Optional[Thread]:
        if self._current_thread_id is None:
            return None
        return self._threads.get(self._current_thread_id)

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        thread = self.current_thread
        return thread.messages if thread else ()

    @property
    def context_items(self) -> Tuple[ContextItem, ...]:
        thread = self.current_thread
        return thread.context_items if thread else ()

    @property
    def stream_state(self) -> StreamState:
        return self._stream_state

    @property
    def is_streaming(self) -> bool:
        return self._stream_state.phase in (StreamPhase.STREAMING, StreamPhase.TOOL_RUNNING)

    @property
    def is_awaiting_approval(self) -> bool:
        return self._stream_state.phase == StreamPhase.TOOL_PENDING

    @property
    def pending_changes(self) -> Tuple[PendingChange, ...]:
        return self._pending_changes

    @property
    def has_pending_changes(self) -> bool:
        return bool(self._pending_changes)

    @property
    def message_checkpoints(self) -> Tuple[MessageCheckpoint, ...]:
        return self._checkpoints

    @property
    def auto_approve(self) -> Dict[str, bool]:
        return dict(self._auto_approve)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        return next((m for m in self.messages if m.id == message_id), None)

