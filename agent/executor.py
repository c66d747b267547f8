"""
Tool execution engine.

Runs one tool call at a time on behalf of the orchestrator: approval gating,
argument validation and sandboxing, snapshot-before-mutate, timeout,
pending-change bookkeeping, truncation and recording of the result message.
Tool failures never raise out of here; they become tool results the model
can read.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from backend import Backend, LanguageServer, SearchIndex
from config import AgentConfig, agent_config
from tools import (
    FILE_MUTATING_TOOLS, ParamError, ToolContext, ToolResult,
    execute_tool, get_approval_type, validate_params,
)
from agent.events import AgentEvent
from agent.models import (
    FileSnapshot, RESULT_REJECTED, RESULT_SUCCESS, RESULT_TOOL_ERROR, StreamPhase, ToolStatus,
)
from agent.store import ThreadStore
from agent.truncation import truncate_tool_result

logger = logging.getLogger(__name__)

REJECTED_RESULT = "Tool call was rejected by the user."

ApprovalCallback = Callable[[str, str, Dict[str, Any]], Awaitable[bool]]
EventCallback = Callable[[AgentEvent], Awaitable[None]]


@dataclass
class ToolOutcome:
    tool_call_id: str
    success: bool
    content: str
    rejected: bool = False


def format_tool_description(name: str, inputs: Dict[str, Any]) -> str:
    """Human-readable one-liner for an approval prompt."""
    path = inputs.get("path", "?")
    if name == "edit_file":
        return f"Edit {path}"
    if name == "write_file":
        content = inputs.get("content") or ""
        return f"Write {path} ({content.count(chr(10)) + 1} lines)"
    if name == "create_file_or_folder":
        return f"Create {path}"
    if name == "delete_file_or_folder":
        return f"Delete {path}" + (" (recursive)" if inputs.get("recursive") else "")
    if name == "run_command":
        return f"Run: {inputs.get('command', '?')}"
    return f"{name}({json.dumps(inputs, default=str)[:200]})"


class ToolExecutionEngine:
    """Executes tool calls recorded on an assistant message in the store."""

    def __init__(
        self,
        store: ThreadStore,
        backend: Backend,
        config: Optional[AgentConfig] = None,
        *,
        language_server: Optional[LanguageServer] = None,
        search_index: Optional[SearchIndex] = None,
        request_approval: Optional[ApprovalCallback] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.store = store
        self.backend = backend
        self.config = config or agent_config
        self.ctx = ToolContext(backend=backend, language_server=language_server, search_index=search_index)
        self.request_approval = request_approval
        self.on_event = on_event
        self._approval: Optional[asyncio.Future] = None
        self._awaiting_type: Optional[str] = None

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    @property
    def is_awaiting_approval(self) -> bool:
        return self._approval is not None and not self._approval.done()

    def approve(self) -> None:
        self._resolve_approval(True)

    def reject(self) -> None:
        self._resolve_approval(False)

    def approve_and_enable_auto(self) -> None:
        """Approve the pending call and stop asking for its approval category."""
        if self._awaiting_type:
            self.store.set_auto_approve(self._awaiting_type, True)
        self._resolve_approval(True)

    def cancel_approval(self) -> None:
        """Resolve an outstanding prompt as rejected (used on abort)."""
        self._resolve_approval(False)

    def _resolve_approval(self, approved: bool) -> None:
        if self._approval is not None and not self._approval.done():
            self._approval.set_result(approved)

    async def _wait_for_approval(self, name: str, inputs: Dict[str, Any]) -> bool:
        if self.request_approval is not None:
            return await self.request_approval(name, format_tool_description(name, inputs), inputs)
        self._approval = asyncio.get_running_loop().create_future()
        try:
            return await self._approval
        finally:
            self._approval = None

    def needs_approval(self, tool_name: str) -> bool:
        approval_type = get_approval_type(tool_name)
        return approval_type is not None and not self.store.auto_approve.get(approval_type, False)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _emit(self, event: AgentEvent) -> None:
        if self.on_event is not None:
            await self.on_event(event)

    async def run_tool(self, name: str, inputs: Dict[str, Any]) -> ToolResult:
        """Run a tool directly, outside any tool call (context building, observe phase)."""
        return await execute_tool(name, inputs, self.ctx, timeout=self.config.tool_timeout_secs)

    async def execute_tool_call(self, message_id: str, tool_call_id: str, name: str,
                                arguments: Dict[str, Any]) -> ToolOutcome:
        store = self.store

        params = validate_params(name, arguments)
        if isinstance(params, ParamError):
            return await self._finish(message_id, tool_call_id, name, arguments,
                                      ToolResult(success=False, output="", error=params.message))

        approval_type = get_approval_type(name)
        needs_approval = self.needs_approval(name)
        store.update_tool_call(message_id, tool_call_id,
                               status=ToolStatus.AWAITING if needs_approval else ToolStatus.RUNNING)

        if needs_approval:
            store.set_stream_phase(StreamPhase.TOOL_PENDING, store.get_tool_call(message_id, tool_call_id))
            await self._emit(AgentEvent(
                type="tool_pending",
                content=format_tool_description(name, arguments),
                data={"tool_name": name, "tool_use_id": tool_call_id, "approval_type": approval_type},
            ))
            self._awaiting_type = approval_type
            try:
                approved = await self._wait_for_approval(name, arguments)
            finally:
                self._awaiting_type = None
            if not approved:
                store.update_tool_call(message_id, tool_call_id, status=ToolStatus.REJECTED, error="Rejected by user")
                store.add_tool_result(tool_call_id, name, REJECTED_RESULT, RESULT_REJECTED)
                await self._emit(AgentEvent(
                    type="tool_result", content=REJECTED_RESULT,
                    data={"tool_name": name, "tool_use_id": tool_call_id, "success": False, "rejected": True},
                ))
                return ToolOutcome(tool_call_id, success=False, content=REJECTED_RESULT, rejected=True)
            store.update_tool_call(message_id, tool_call_id, status=ToolStatus.RUNNING)

        store.set_stream_phase(StreamPhase.TOOL_RUNNING, store.get_tool_call(message_id, tool_call_id))

        full_path: Optional[str] = None
        original: Optional[str] = None
        if name in FILE_MUTATING_TOOLS:
            try:
                full_path = self.backend.sandbox_path(params.path.rstrip("/\\") or params.path)
            except ValueError as e:
                return await self._finish(message_id, tool_call_id, name, arguments,
                                          ToolResult(success=False, output="", error=str(e)))
            loop = asyncio.get_running_loop()
            # checkpoints hold file contents only
            is_dir = await loop.run_in_executor(None, self.backend.is_dir, full_path)
            if not is_dir and not getattr(params, "is_folder", False):
                original = await loop.run_in_executor(None, self.backend.read_file_or_none, full_path)
                store.add_snapshot_to_current_checkpoint(full_path, original)

        result = await execute_tool(name, arguments, self.ctx, timeout=self.config.tool_timeout_secs)

        if result.success and full_path is not None and result.meta.get("file_path"):
            store.add_pending_change(
                file_path=full_path,
                tool_call_id=tool_call_id,
                tool_name=name,
                snapshot=FileSnapshot(full_path, original),
                lines_added=result.meta.get("lines_added", 0),
                lines_removed=result.meta.get("lines_removed", 0),
            )
        return await self._finish(message_id, tool_call_id, name, arguments, result)

    async def _finish(self, message_id: str, tool_call_id: str, name: str,
                      arguments: Dict[str, Any], result: ToolResult) -> ToolOutcome:
        meta = {k: v for k, v in result.meta.items() if k not in ("old_content", "new_content")}
        self.store.update_tool_call(
            message_id, tool_call_id,
            status=ToolStatus.SUCCESS if result.success else ToolStatus.ERROR,
            result=result.output,
            error=result.error,
            arguments={**arguments, "_meta": meta},
        )
        if result.success:
            content = result.output
        else:
            content = f"Error: {result.error or 'Unknown error'}"
            logger.info(f"Tool {name} failed: {(result.error or '')[:200]}")
        content = truncate_tool_result(content, name, self.config.max_tool_result_chars)
        self.store.add_tool_result(tool_call_id, name, content,
                                   RESULT_SUCCESS if result.success else RESULT_TOOL_ERROR)
        await self._emit(AgentEvent(
            type="tool_result",
            content=content,
            data={"tool_name": name, "tool_use_id": tool_call_id, "success": result.success},
        ))
        return ToolOutcome(tool_call_id, success=result.success, content=content)
