"""
Agent loop orchestrator.

Drives one user turn: builds the context block, calls the model (with retry),
folds the streamed response into the assistant message, schedules the
requested tools through the execution engine, runs a post-edit lint pass and
decides whether to go round again.

Turn state machine (StreamPhase):

    idle -> streaming -> (tool_pending | tool_running)* -> streaming -> ... -> idle

The same assistant message accumulates text and tool calls across all
iterations of a turn. Every way out of a turn (done, error, loop limit,
abort) goes through _cleanup().
"""

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from backend import Backend
from config import AgentConfig, agent_config
from tools import FILE_EDIT_TOOLS, TOOL_DEFINITIONS, is_read_tool, is_valid_tool_name
from agent.context import ContextBuilder, build_llm_messages
from agent.converter import MessageSequenceError, WireMessage
from agent.events import (
    AgentEvent, LLMResult, StreamDone, StreamError, StreamEvent, StreamedToolCall,
    TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart,
)
from agent.executor import ToolExecutionEngine, ToolOutcome
from agent.loop_detection import LOOP_WARNING, LoopDetector
from agent.models import AssistantMessage, StreamPhase, ToolStatus, get_message_text
from agent.partial_json import parse_partial_json
from agent.prompts import build_system_prompt
from agent.retry import call_with_retry
from agent.store import ThreadStore
from agent.xml_tool_calls import extract_xml_tool_calls, strip_xml_tool_calls

logger = logging.getLogger(__name__)

MAX_LOOPS_MESSAGE = "\n\nReached maximum tool call limit."
SKIPPED_AFTER_REJECT = "Skipped: an earlier tool call was rejected"
SKIPPED_REPEATED = "Skipped: repeated tool call"
ABORTED = "Aborted by user"

_LINT_ERROR_RE = re.compile(r"\[error\]", re.IGNORECASE)
_NO_DIAGNOSTICS = ("", "[]", "No diagnostics found")


class CompletionTransport(Protocol):
    """What the orchestrator needs from a model provider."""

    def stream_completion(self, messages: List[WireMessage], tools: Optional[List[Dict[str, Any]]] = None,
                          model: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        ...

    def cancel(self) -> None:
        ...


EventCallback = Callable[[AgentEvent], Awaitable[None]]


class AgentOrchestrator:
    """One active turn at a time over a ThreadStore, a ToolExecutionEngine and a transport."""

    def __init__(
        self,
        store: ThreadStore,
        engine: ToolExecutionEngine,
        transport: CompletionTransport,
        config: Optional[AgentConfig] = None,
        *,
        on_event: Optional[EventCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.engine = engine
        self.transport = transport
        self.config = config or agent_config
        self.on_event = on_event
        self.sleep = sleep
        self.context_builder = ContextBuilder(engine, self.config)

        self._running = False
        self._aborted = False
        self._task: Optional[asyncio.Task] = None
        self._assistant_id: Optional[str] = None

    @property
    def backend(self) -> Backend:
        return self.engine.backend

    @property
    def is_running(self) -> bool:
        return self._running

    async def _emit(self, event: AgentEvent) -> None:
        if self.on_event is not None:
            await self.on_event(event)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content,
        model: Optional[str] = None,
        workspace_path: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        """Run one full turn for ``content`` (a string or a list of content blocks)."""
        if self._running:
            logger.warning("send_message called while a turn is already running; ignoring")
            return

        self._running = True
        self._aborted = False
        self._task = asyncio.ensure_future(self._run_turn(content, model, workspace_path, system_prompt))
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            logger.info("Turn aborted by user")
        except MessageSequenceError as e:
            logger.error(f"Invalid message sequence: {e}")
            if self._assistant_id:
                self.store.append_to_assistant(self._assistant_id, f"\n\nError: {e}")
            self.store.set_stream_phase(StreamPhase.ERROR, error=str(e))
            await self._emit(AgentEvent(type="error", content=str(e)))
        except Exception as e:
            logger.exception(f"Agent turn failed: {e}")
            self._fail_open_tool_calls(str(e))
            if self._assistant_id:
                self.store.append_to_assistant(self._assistant_id, f"\n\nError: {e}")
            self.store.set_stream_phase(StreamPhase.ERROR, error=str(e))
            await self._emit(AgentEvent(type="error", content=str(e)))
        finally:
            self._task = None
            await self._cleanup()

    def approve(self) -> None:
        self.engine.approve()

    def reject(self) -> None:
        self.engine.reject()

    def approve_and_enable_auto(self) -> None:
        self.engine.approve_and_enable_auto()

    def abort(self) -> None:
        """Stop the active turn: reject any prompt, fail open tool calls, cancel I/O."""
        if not self._running:
            return
        logger.info("Aborting active turn")
        self._aborted = True
        self.engine.cancel_approval()
        self._fail_open_tool_calls(ABORTED)
        if self._task is not None and not self._task.done():
            self._task.cancel()
        cancel = getattr(self.transport, "cancel", None)
        if cancel is not None:
            cancel()
        self.backend.cancel_running_command()

    def _fail_open_tool_calls(self, reason: str) -> None:
        if not self._assistant_id:
            return
        msg = self.store.get_message(self._assistant_id)
        if not isinstance(msg, AssistantMessage):
            return
        for tc in msg.tool_calls:
            if not tc.status.is_terminal:
                self.store.update_tool_call(msg.id, tc.id, status=ToolStatus.ERROR, error=reason)

    async def _cleanup(self) -> None:
        if self._assistant_id:
            self.store.finalize_assistant(self._assistant_id)
        self.store.set_stream_phase(StreamPhase.IDLE)
        self._assistant_id = None
        self._running = False
        await self.store.flush_async()
        await self._emit(AgentEvent(type="done"))

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(self, content, model: Optional[str], workspace_path: Optional[str],
                        system_prompt: Optional[str]) -> None:
        store = self.store
        workspace = workspace_path or self.backend.working_directory
        text = get_message_text(content)

        context_items = store.context_items
        context_content = await self.context_builder.build_context_content(context_items, text)

        history = store.messages
        user_id = store.add_user_message(content, context_items)
        store.clear_context_items()
        store.create_message_checkpoint(user_id, text[:50] or "User message")

        if system_prompt is None:
            system_prompt = build_system_prompt(workspace)
        messages = build_llm_messages(history, content, context_content, system_prompt, self.config)

        self._assistant_id = store.add_assistant_message()
        store.set_stream_phase(StreamPhase.STREAMING)

        await self._run_loop(messages, model, workspace)

    async def _run_loop(self, messages: List[WireMessage], model: Optional[str], workspace: str) -> None:
        store = self.store
        aid = self._assistant_id
        detector = LoopDetector(self.config.loop_repeat_threshold, self.config.loop_history_size)
        loop_count = 0
        should_continue = True

        while should_continue and loop_count < self.config.max_tool_loops and not self._aborted:
            loop_count += 1
            should_continue = False
            logger.debug(f"Agent iteration {loop_count}")

            result = await self._call_llm_with_retry(messages, model)
            if self._aborted:
                break

            if result.error is not None:
                logger.error(f"Model call failed: [{result.error.code}] {result.error.message}")
                store.append_to_assistant(aid, f"\n\nError: {result.error.message}")
                store.set_stream_phase(StreamPhase.ERROR, error=result.error.message)
                await self._emit(AgentEvent(type="error", content=result.error.message,
                                            data={"code": result.error.code}))
                break

            if not result.tool_calls:
                break

            for tc in result.tool_calls:
                store.add_tool_call_part(aid, tc.id, tc.name, tc.arguments)

            if detector.check(result.tool_calls):
                logger.warning(f"Repeated tool calls detected after {loop_count} iterations")
                for tc in result.tool_calls:
                    store.update_tool_call(aid, tc.id, status=ToolStatus.ERROR, error=SKIPPED_REPEATED)
                store.append_to_assistant(aid, LOOP_WARNING)
                await self._emit(AgentEvent(type="warning", content=LOOP_WARNING.strip()))
                break

            messages.append({
                "role": "assistant",
                "content": result.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps({k: v for k, v in tc.arguments.items()
                                                     if not k.startswith("_")}),
                        },
                    }
                    for tc in result.tool_calls
                ],
            })

            rejected = await self._execute_tool_calls(aid, result.tool_calls, messages)
            if self._aborted:
                break

            write_calls = [tc for tc in result.tool_calls if not is_read_tool(tc.name)]
            if self.config.enable_auto_fix and not rejected and write_calls and workspace:
                errors = await self._observe_changes(aid, write_calls)
                if errors:
                    shown = errors[:self.config.max_observe_issues]
                    messages.append({
                        "role": "user",
                        "content": "[Observation] The following issues were detected in the files "
                                   "you just edited. Please fix them:\n\n" + "\n\n".join(shown),
                    })
                    store.append_to_assistant(
                        aid, f"\n\nAuto-check: Detected {len(errors)} issue(s). Attempting to fix...")

            if rejected:
                break

            should_continue = True
            store.set_stream_phase(StreamPhase.STREAMING)

        if should_continue and loop_count >= self.config.max_tool_loops and not self._aborted:
            logger.warning(f"Reached max tool loops ({self.config.max_tool_loops})")
            store.append_to_assistant(aid, MAX_LOOPS_MESSAGE)
            await self._emit(AgentEvent(type="warning", content=MAX_LOOPS_MESSAGE.strip()))

    async def _execute_tool_calls(self, aid: str, tool_calls: Sequence[StreamedToolCall],
                                  messages: List[WireMessage]) -> bool:
        """Run one batch: reads concurrently, then writes in order. Returns True if the user rejected one."""
        read_calls = [tc for tc in tool_calls if is_read_tool(tc.name)]
        write_calls = [tc for tc in tool_calls if not is_read_tool(tc.name)]
        rejected = False

        if read_calls:
            outcomes = await asyncio.gather(*[
                self.engine.execute_tool_call(aid, tc.id, tc.name, tc.arguments) for tc in read_calls
            ])
            for outcome in outcomes:
                messages.append(self._tool_message(outcome))
                rejected = rejected or outcome.rejected

        for i, tc in enumerate(write_calls):
            if self._aborted:
                break
            if rejected:
                for skipped in write_calls[i:]:
                    self.store.update_tool_call(aid, skipped.id, status=ToolStatus.ERROR,
                                                error=SKIPPED_AFTER_REJECT)
                break
            # let the UI and abort() run between side-effecting calls
            await asyncio.sleep(0)
            outcome = await self.engine.execute_tool_call(aid, tc.id, tc.name, tc.arguments)
            messages.append(self._tool_message(outcome))
            if outcome.rejected:
                rejected = True

        return rejected

    @staticmethod
    def _tool_message(outcome: ToolOutcome) -> WireMessage:
        return {"role": "tool", "tool_call_id": outcome.tool_call_id, "content": outcome.content}

    async def _observe_changes(self, aid: str, write_calls: Sequence[StreamedToolCall]) -> List[str]:
        """Lint the files touched by successful edits; returns one block per file with errors."""
        errors: List[str] = []
        for tc in write_calls:
            if tc.name not in FILE_EDIT_TOOLS:
                continue
            call = self.store.get_tool_call(aid, tc.id)
            if call is None or call.status != ToolStatus.SUCCESS:
                continue
            path = tc.arguments.get("path")
            if not isinstance(path, str) or not path or path.endswith("/"):
                continue

            lint = await self.engine.run_tool("get_lint_errors", {"path": path})
            if not lint.success:
                logger.debug(f"Lint check unavailable for {path}: {lint.error}")
                continue
            output = (lint.output or "").strip()
            if output in _NO_DIAGNOSTICS:
                continue
            lowered = output.lower()
            if _LINT_ERROR_RE.search(output) or "failed to compile" in lowered or "syntax error" in lowered:
                errors.append(f"File: {path}\n{output}")
        if errors:
            logger.info(f"Observe phase found problems in {len(errors)} file(s)")
        return errors

    # ------------------------------------------------------------------
    # Model call
    # ------------------------------------------------------------------

    async def _call_llm_with_retry(self, messages: List[WireMessage], model: Optional[str]) -> LLMResult:
        snapshot: Dict[str, Optional[AssistantMessage]] = {"message": None}

        async def attempt() -> LLMResult:
            if self._aborted:
                return LLMResult(error=StreamError("ABORTED", "Aborted"))
            msg = self.store.get_message(self._assistant_id)
            snapshot["message"] = msg if isinstance(msg, AssistantMessage) else None
            return await self._call_llm(messages, model)

        async def on_retry(n: int, delay_ms: float, error: StreamError) -> None:
            # drop whatever the failed attempt streamed into the transcript
            if snapshot["message"] is not None:
                self.store.revert_assistant(snapshot["message"])
            await self._emit(AgentEvent(
                type="stream_retry",
                content=error.message,
                data={"attempt": n, "max_retries": self.config.max_retries, "delay_ms": delay_ms,
                      "code": error.code},
            ))

        return await call_with_retry(
            attempt,
            max_retries=self.config.max_retries,
            delay_ms=self.config.retry_delay_ms,
            multiplier=self.config.retry_backoff_multiplier,
            sleep=self.sleep,
            on_retry=on_retry,
        )

    async def _call_llm(self, messages: List[WireMessage], model: Optional[str]) -> LLMResult:
        """Consume one model stream into an LLMResult, mirroring it into the store as it arrives."""
        store = self.store
        aid = self._assistant_id
        result = LLMResult()
        building: Dict[str, StreamedToolCall] = {}

        stream = self.transport.stream_completion(list(messages), tools=TOOL_DEFINITIONS, model=model)
        try:
            async for event in stream:
                if isinstance(event, TextDelta):
                    if not event.text:
                        continue
                    result.content += event.text
                    store.append_to_assistant(aid, event.text)
                    await self._emit(AgentEvent(type="text", content=event.text))

                elif isinstance(event, ToolCallStart):
                    if not is_valid_tool_name(event.name):
                        logger.warning(f"Dropping call to unknown tool: {event.name!r}")
                        continue
                    building[event.id] = StreamedToolCall(id=event.id, name=event.name)
                    store.add_tool_call_part(aid, event.id, event.name, {"_streaming": True})
                    await self._emit(AgentEvent(type="tool_call", content=event.name,
                                                data={"tool_name": event.name, "tool_use_id": event.id}))

                elif isinstance(event, ToolCallDelta):
                    tc = building.get(event.id)
                    if tc is None:
                        continue
                    tc.raw_arguments += event.arguments_delta
                    partial = parse_partial_json(tc.raw_arguments)
                    store.update_tool_call(aid, tc.id, arguments={**partial, "_streaming": True})

                elif isinstance(event, ToolCallEnd):
                    tc = building.pop(event.id, None)
                    if tc is None:
                        continue
                    raw = event.arguments if event.arguments is not None else tc.raw_arguments
                    try:
                        args = json.loads(raw or "{}")
                        if not isinstance(args, dict):
                            raise ValueError("arguments are not an object")
                    except ValueError as e:
                        logger.warning(f"Could not parse arguments for {tc.name}: {e}")
                        args = {"_parseError": True, "_rawArgs": raw}
                    tc.arguments = args
                    tc.raw_arguments = raw
                    result.tool_calls.append(tc)
                    store.update_tool_call(aid, tc.id, arguments=args)

                elif isinstance(event, StreamError):
                    result.error = event
                    break

                elif isinstance(event, StreamDone):
                    result.usage = dict(event.usage)
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        # a stream cut short can leave calls without an end event
        for tc in building.values():
            logger.warning(f"Tool call {tc.name} ({tc.id}) never finished streaming")
            store.update_tool_call(aid, tc.id, status=ToolStatus.ERROR, error="Incomplete tool call")

        if result.error is None and result.content:
            text, xml_calls = extract_xml_tool_calls(result.content)
            if xml_calls:
                result.content = text
                store.rewrite_assistant_text(aid, strip_xml_tool_calls)
                for tc in xml_calls:
                    if not is_valid_tool_name(tc.name):
                        logger.warning(f"Dropping XML call to unknown tool: {tc.name!r}")
                        continue
                    store.add_tool_call_part(aid, tc.id, tc.name, tc.arguments)
                    result.tool_calls.append(tc)

        return result
