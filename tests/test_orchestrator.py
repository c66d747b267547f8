"""End-to-end tests of the agent loop against a scripted transport."""

import asyncio

import pytest

from conftest import FakeTransport, text, tool_call, wait_for_phase
from agent.events import StreamDone, StreamError, TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart
from agent.executor import REJECTED_RESULT, ToolExecutionEngine
from agent.loop_detection import LOOP_WARNING
from agent.models import AssistantMessage, StreamPhase, ToolResultMessage, ToolStatus, UserMessage
from agent.orchestrator import AgentOrchestrator, MAX_LOOPS_MESSAGE, SKIPPED_AFTER_REJECT
from agent.store import ThreadStore
from thread_storage import ThreadStorage
from tools import ToolResult

DONE = [StreamDone("end_turn")]
TOOL_USE = [StreamDone("tool_use")]


def assistant(store) -> AssistantMessage:
    msgs = [m for m in store.messages if isinstance(m, AssistantMessage)]
    assert len(msgs) == 1
    return msgs[0]


def tool_results(store):
    return [m for m in store.messages if isinstance(m, ToolResultMessage)]


# ── Scenario A: read tool, no approval, one tool iteration ──

@pytest.mark.asyncio
async def test_read_tool_runs_without_approval(workspace, store, make_orchestrator, events):
    (workspace / "hello.py").write_text("print('hi')\n")
    orch, transport = make_orchestrator([
        tool_call("t1", "list_directory", {"path": "."}) + TOOL_USE,
        text("There is one file.") + DONE,
    ])

    await orch.send_message("list files")

    assert len(transport.calls) == 2
    assert not any(e.type == "tool_pending" for e in events)

    msg = assistant(store)
    assert msg.get_tool_call("t1").status == ToolStatus.SUCCESS
    assert msg.content == "There is one file."
    assert msg.is_streaming is False

    results = tool_results(store)
    assert [r.tool_call_id for r in results] == ["t1"]
    assert "hello.py" in results[0].content

    second = transport.calls[1]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["id"] == "t1"
    assert second[-1] == {"role": "tool", "tool_call_id": "t1", "content": results[0].content}

    assert store.stream_state.phase == StreamPhase.IDLE
    assert not orch.is_running
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_first_call_has_system_prompt_and_single_user_message(store, make_orchestrator):
    orch, transport = make_orchestrator([text("Hi!") + DONE])

    await orch.send_message("hello")

    first = transport.calls[0]
    assert first[0]["role"] == "system"
    assert [m["role"] for m in first] == ["system", "user"]
    assert first[1]["content"] == "hello"
    assert isinstance(store.messages[0], UserMessage)
    assert store.get_checkpoint_for_message(store.messages[0].id) is not None


@pytest.mark.asyncio
async def test_history_is_sent_on_next_turn(store, make_orchestrator):
    orch, transport = make_orchestrator([text("first answer") + DONE, text("second answer") + DONE])

    await orch.send_message("one")
    await orch.send_message("two")

    second = transport.calls[1]
    assert [m["role"] for m in second] == ["system", "user", "assistant", "user"]
    assert second[2]["content"] == "first answer"
    assert second[3]["content"] == "two"


# ── Scenario B: dangerous tool rejected by the user ──

@pytest.mark.asyncio
async def test_rejected_delete_does_not_touch_filesystem(workspace, store, make_orchestrator, events):
    target = workspace / "x"
    target.write_text("keep me")
    orch, transport = make_orchestrator([tool_call("d1", "delete_file_or_folder", {"path": "x"}) + TOOL_USE])

    task = asyncio.ensure_future(orch.send_message("delete x"))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)
    assert store.is_awaiting_approval
    assert assistant(store).get_tool_call("d1").status == ToolStatus.AWAITING
    assert [e.data["approval_type"] for e in events if e.type == "tool_pending"] == ["dangerous"]

    orch.reject()
    await task

    assert target.read_text() == "keep me"
    results = tool_results(store)
    assert len(results) == 1
    assert results[0].content == "Tool call was rejected by the user."
    assert results[0].content == REJECTED_RESULT
    assert assistant(store).get_tool_call("d1").status == ToolStatus.REJECTED
    # a rejection ends the turn
    assert len(transport.calls) == 1
    assert store.stream_state.phase == StreamPhase.IDLE


@pytest.mark.asyncio
async def test_delete_outside_workspace_is_rejected_without_mutation(tmp_path, store, make_orchestrator):
    outside = tmp_path / "x"
    outside.write_text("outside")
    orch, _ = make_orchestrator([tool_call("d1", "delete_file_or_folder", {"path": str(outside)}) + TOOL_USE])

    task = asyncio.ensure_future(orch.send_message("delete it"))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)
    orch.reject()
    await task

    assert outside.read_text() == "outside"
    assert tool_results(store)[0].content == REJECTED_RESULT


@pytest.mark.asyncio
async def test_rejection_skips_remaining_write_calls(workspace, store, backend, config, make_orchestrator):
    async def deny(name, description, inputs):
        return False

    engine = ToolExecutionEngine(store, backend, config, request_approval=deny)
    orch, transport = make_orchestrator([
        tool_call("w1", "run_command", {"command": "echo hi"})
        + tool_call("w2", "write_file", {"path": "new.txt", "content": "x"})
        + TOOL_USE,
    ], engine=engine)

    await orch.send_message("do things")

    msg = assistant(store)
    assert msg.get_tool_call("w1").status == ToolStatus.REJECTED
    assert msg.get_tool_call("w2").status == ToolStatus.ERROR
    assert msg.get_tool_call("w2").error == SKIPPED_AFTER_REJECT
    assert [r.tool_call_id for r in tool_results(store)] == ["w1"]
    assert not (workspace / "new.txt").exists()
    assert len(transport.calls) == 1


# ── Scenario C: write_file, pending change and undo ──

@pytest.mark.asyncio
async def test_write_records_pending_change_and_undo_restores(workspace, store, make_orchestrator):
    target = workspace / "a.ts"
    target.write_text("const a = 1;\n")
    store.set_auto_approve("edits", True)
    orch, _ = make_orchestrator([
        tool_call("w1", "write_file", {"path": "a.ts", "content": "const a = 2;\n"}) + TOOL_USE,
        text("Updated.") + DONE,
    ])

    await orch.send_message("bump a")

    assert target.read_text() == "const a = 2;\n"
    assert len(store.pending_changes) == 1
    change = store.pending_changes[0]
    assert change.file_path == str(target)
    assert change.snapshot.content == "const a = 1;\n"
    assert change.tool_name == "write_file"

    checkpoint = store.message_checkpoints[-1]
    assert checkpoint.file_snapshots[str(target)].content == "const a = 1;\n"

    assert await store.undo_change(str(target)) is True
    assert target.read_text() == "const a = 1;\n"
    assert store.pending_changes == ()


@pytest.mark.asyncio
async def test_approve_and_enable_auto_skips_later_prompts(workspace, store, make_orchestrator):
    orch, _ = make_orchestrator([
        tool_call("w1", "write_file", {"path": "one.txt", "content": "1"}) + TOOL_USE,
        tool_call("w2", "write_file", {"path": "two.txt", "content": "2"}) + TOOL_USE,
        text("Both written.") + DONE,
    ])

    task = asyncio.ensure_future(orch.send_message("write two files"))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)
    orch.approve_and_enable_auto()
    await task

    assert store.auto_approve["edits"] is True
    assert (workspace / "one.txt").read_text() == "1"
    assert (workspace / "two.txt").read_text() == "2"
    assert assistant(store).get_tool_call("w2").status == ToolStatus.SUCCESS


# ── Scenario D: retry with backoff ──

@pytest.mark.asyncio
async def test_rate_limit_is_retried_with_backoff(store, make_orchestrator, events, sleeps, config):
    orch, transport = make_orchestrator([
        [StreamError("RATE_LIMIT", "Too many requests")],
        [StreamError("RATE_LIMIT", "Too many requests")],
        text("Finally.") + DONE,
    ])

    await orch.send_message("hi")

    assert len(transport.calls) == 3
    base, mult = config.retry_delay_ms / 1000, config.retry_backoff_multiplier
    assert sleeps == [base, base * mult]
    assert sum(sleeps) == pytest.approx(base + base * mult)
    assert assistant(store).content == "Finally."
    assert [e.data["attempt"] for e in events if e.type == "stream_retry"] == [1, 2]


@pytest.mark.asyncio
async def test_retry_discards_text_from_failed_attempt(store, make_orchestrator):
    orch, _ = make_orchestrator([
        text("partial answ") + [StreamError("SERVER_ERROR", "upstream reset")],
        text("Full answer.") + DONE,
    ])

    await orch.send_message("hi")

    assert assistant(store).content == "Full answer."


@pytest.mark.asyncio
async def test_non_retryable_error_ends_turn(store, make_orchestrator, events, sleeps):
    orch, transport = make_orchestrator([[StreamError("AUTH_ERROR", "Access denied")]])

    await orch.send_message("hi")

    assert len(transport.calls) == 1
    assert sleeps == []
    assert assistant(store).content == "\n\nError: Access denied"
    assert any(e.type == "error" and e.content == "Access denied" for e in events)
    assert store.stream_state.phase == StreamPhase.IDLE


@pytest.mark.asyncio
async def test_retries_exhausted_surfaces_last_error(store, make_orchestrator, config):
    orch, transport = make_orchestrator([[StreamError("TIMEOUT", "timed out")]] * (config.max_retries + 1))

    await orch.send_message("hi")

    assert len(transport.calls) == config.max_retries + 1
    assert assistant(store).content.endswith("Error: timed out")


# ── Loop breaker and limits ──

@pytest.mark.asyncio
async def test_repeated_identical_calls_trip_loop_breaker(workspace, store, make_orchestrator, events):
    (workspace / "a.py").write_text("x = 1\n")
    same = {"path": "a.py"}
    orch, transport = make_orchestrator([
        tool_call("r1", "read_file", same) + TOOL_USE,
        tool_call("r2", "read_file", same) + TOOL_USE,
        tool_call("r3", "read_file", same) + TOOL_USE,
        text("never reached") + DONE,
    ])

    await orch.send_message("read a.py")

    assert len(transport.calls) == 3
    msg = assistant(store)
    assert msg.content.count(LOOP_WARNING) == 1
    assert len([e for e in events if e.type == "warning"]) == 1
    assert [r.tool_call_id for r in tool_results(store)] == ["r1", "r2"]
    assert msg.get_tool_call("r3").status == ToolStatus.ERROR


@pytest.mark.asyncio
async def test_max_tool_loops_stops_turn(workspace, store, make_orchestrator, config):
    config.max_tool_loops = 2
    (workspace / "a.py").write_text("a\n")
    (workspace / "b.py").write_text("b\n")
    orch, transport = make_orchestrator([
        tool_call("r1", "read_file", {"path": "a.py"}) + TOOL_USE,
        tool_call("r2", "read_file", {"path": "b.py"}) + TOOL_USE,
        text("never reached") + DONE,
    ])

    await orch.send_message("read")

    assert len(transport.calls) == 2
    assert assistant(store).content.endswith(MAX_LOOPS_MESSAGE)


# ── Stream interpretation ──

@pytest.mark.asyncio
async def test_unknown_tool_names_are_dropped(store, make_orchestrator):
    orch, transport = make_orchestrator([
        [ToolCallStart("h1", "format_hard_drive"),
         ToolCallDelta("h1", '{"now": true}'),
         ToolCallEnd("h1"),
         TextDelta("Nothing to do.")] + DONE,
    ])

    await orch.send_message("hi")

    assert len(transport.calls) == 1
    msg = assistant(store)
    assert msg.tool_calls == ()
    assert msg.content == "Nothing to do."


@pytest.mark.asyncio
async def test_unparseable_arguments_become_tool_error(store, make_orchestrator):
    orch, transport = make_orchestrator([
        [ToolCallStart("t1", "read_file"), ToolCallDelta("t1", '{"path": "a.py'), ToolCallEnd("t1")] + TOOL_USE,
        text("Sorry.") + DONE,
    ])

    await orch.send_message("read")

    results = tool_results(store)
    assert len(results) == 1
    assert results[0].content.startswith("Error: Could not parse tool arguments as JSON")
    assert assistant(store).get_tool_call("t1").status == ToolStatus.ERROR
    assert len(transport.calls) == 2
    # bookkeeping keys never reach the model
    assert transport.calls[1][-2]["tool_calls"][0]["function"]["arguments"] == "{}"


@pytest.mark.asyncio
async def test_xml_tool_calls_in_text_are_executed(workspace, store, make_orchestrator):
    (workspace / "a.py").write_text("x = 1\n")
    orch, transport = make_orchestrator([
        text("Let me look.",
             "<tool_call><function=read_file><parameter=path>a.py</parameter></function></tool_call>") + DONE,
        text(" Done.") + DONE,
    ])

    await orch.send_message("read")

    msg = assistant(store)
    assert "<tool_call>" not in msg.content
    assert msg.content.startswith("Let me look.")
    assert len(msg.tool_calls) == 1
    assert msg.tool_calls[0].name == "read_file"
    assert msg.tool_calls[0].status == ToolStatus.SUCCESS
    assert len(transport.calls) == 2


@pytest.mark.asyncio
async def test_read_results_keep_request_order(workspace, store, make_orchestrator):
    (workspace / "a.py").write_text("a\n")
    (workspace / "b.py").write_text("b\n")
    orch, transport = make_orchestrator([
        tool_call("r1", "read_file", {"path": "a.py"})
        + tool_call("r2", "read_file", {"path": "b.py"})
        + tool_call("r3", "list_directory", {"path": "."})
        + TOOL_USE,
        text("ok") + DONE,
    ])

    await orch.send_message("read both")

    tail = transport.calls[1][-3:]
    assert [m["tool_call_id"] for m in tail] == ["r1", "r2", "r3"]


# ── Observe phase ──

@pytest.mark.asyncio
async def test_lint_errors_after_edit_are_fed_back(workspace, store, engine, config, make_orchestrator):
    config.enable_auto_fix = True
    store.set_auto_approve("edits", True)
    linted = []

    async def fake_run_tool(name, inputs):
        linted.append((name, inputs))
        return ToolResult(success=True, output="[error] line 1: unexpected indent")

    engine.run_tool = fake_run_tool
    orch, transport = make_orchestrator([
        tool_call("w1", "write_file", {"path": "bad.py", "content": "  x = 1\n"}) + TOOL_USE,
        text("Fixed it.") + DONE,
    ])

    await orch.send_message("write bad.py")

    assert linted == [("get_lint_errors", {"path": "bad.py"})]
    observation = transport.calls[1][-1]
    assert observation["role"] == "user"
    assert observation["content"].startswith("[Observation]")
    assert "unexpected indent" in observation["content"]
    assert "Auto-check: Detected 1 issue(s)" in assistant(store).content


@pytest.mark.asyncio
async def test_warnings_only_do_not_trigger_observation(store, engine, config, make_orchestrator):
    config.enable_auto_fix = True
    store.set_auto_approve("edits", True)

    async def fake_run_tool(name, inputs):
        return ToolResult(success=True, output="[warning] line 3: unused import")

    engine.run_tool = fake_run_tool
    orch, transport = make_orchestrator([
        tool_call("w1", "write_file", {"path": "ok.py", "content": "import os\n"}) + TOOL_USE,
        text("Done.") + DONE,
    ])

    await orch.send_message("write ok.py")

    assert transport.calls[1][-1]["role"] == "tool"


# ── Cancellation and re-entrancy ──

@pytest.mark.asyncio
async def test_abort_while_awaiting_approval(workspace, store, make_orchestrator):
    orch, transport = make_orchestrator([
        tool_call("w1", "write_file", {"path": "a.txt", "content": "x"}) + TOOL_USE,
    ])

    task = asyncio.ensure_future(orch.send_message("write"))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)
    orch.abort()
    await task

    tc = assistant(store).get_tool_call("w1")
    assert tc.status == ToolStatus.ERROR
    assert tc.error == "Aborted by user"
    assert tool_results(store) == []
    assert not (workspace / "a.txt").exists()
    assert transport.cancelled
    assert not orch.is_running
    assert store.stream_state.phase == StreamPhase.IDLE
    assert assistant(store).is_streaming is False


@pytest.mark.asyncio
async def test_send_message_while_running_is_ignored(store, make_orchestrator):
    orch, transport = make_orchestrator([
        tool_call("w1", "write_file", {"path": "a.txt", "content": "x"}) + TOOL_USE,
    ])

    task = asyncio.ensure_future(orch.send_message("first"))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)

    await orch.send_message("second")
    assert [m.content for m in store.messages if isinstance(m, UserMessage)] == ["first"]

    orch.reject()
    await task
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_separate_orchestrators_share_nothing(backend, config):
    store_a, store_b = ThreadStore(backend=backend), ThreadStore(backend=backend)
    orch_a = AgentOrchestrator(store_a, ToolExecutionEngine(store_a, backend, config),
                               FakeTransport([text("A") + DONE]), config)
    orch_b = AgentOrchestrator(store_b, ToolExecutionEngine(store_b, backend, config),
                               FakeTransport([text("B") + DONE]), config)

    await asyncio.gather(orch_a.send_message("a"), orch_b.send_message("b"))

    assert assistant(store_a).content == "A"
    assert assistant(store_b).content == "B"


@pytest.mark.asyncio
async def test_attached_files_are_sent_as_referenced_context(workspace, store, make_orchestrator):
    from agent.models import ContextItem

    (workspace / "util.py").write_text("def helper():\n    return 42\n")
    store.add_context_item(ContextItem(type="File", uri="util.py"))
    orch, transport = make_orchestrator([text("Seen it.") + DONE])

    await orch.send_message("explain helper")

    user = transport.calls[0][-1]
    assert user["role"] == "user"
    assert user["content"][0]["text"].startswith("## Referenced Context\n")
    assert "return 42" in user["content"][0]["text"]
    assert user["content"][1] == {"type": "text", "text": "explain helper"}
    assert store.context_items == ()
    assert store.messages[0].context_items[0].uri == "util.py"


# ── failures raised by the transport ──

class RaisingTransport(FakeTransport):
    def stream_completion(self, messages, tools=None, model=None):
        self.calls.append(list(messages))
        raise RuntimeError("request body could not be built")


def orchestrator_with(transport, store, engine, config, events):
    async def record(event):
        events.append(event)

    return AgentOrchestrator(store, engine, transport, config, on_event=record)


@pytest.mark.asyncio
async def test_transport_exception_is_written_to_the_transcript(store, engine, config, events):
    transport = RaisingTransport([])
    orch = orchestrator_with(transport, store, engine, config, events)

    await orch.send_message("hello")

    assert assistant(store).content == "\n\nError: request body could not be built"
    errors = [e for e in events if e.type == "error"]
    assert [e.content for e in errors] == ["request body could not be built"]
    assert events[-1].type == "done"
    assert store.stream_state.phase == StreamPhase.IDLE
    assert not orch.is_running


# ── persistence happens at turn boundaries ──

@pytest.mark.asyncio
async def test_a_turn_saves_threads_once_at_the_end(monkeypatch, tmp_path, workspace, backend, config, make_orchestrator):
    for name in ("a.py", "b.py", "c.py"):
        (workspace / name).write_text(name)
    storage = ThreadStorage(str(workspace), base_dir=str(tmp_path / "threads"))
    saves = []
    original_save = storage.save

    def counting_save(state):
        saves.append(state)
        return original_save(state)

    monkeypatch.setattr(storage, "save", counting_save)
    persisted = ThreadStore(backend=backend, storage=storage)
    orch, _ = make_orchestrator([
        tool_call("r1", "read_file", {"path": "a.py"})
        + tool_call("r2", "read_file", {"path": "b.py"})
        + tool_call("r3", "read_file", {"path": "c.py"})
        + TOOL_USE,
        text("Read them.") + DONE,
    ], store=persisted, engine=ToolExecutionEngine(persisted, backend, config))

    await orch.send_message("read all three")

    # one save when the thread is created, one when the turn ends
    assert len(saves) == 2
    reloaded = ThreadStore(backend=backend, storage=ThreadStorage(str(workspace), base_dir=str(tmp_path / "threads")))
    assert [m.role for m in reloaded.messages] == ["user", "assistant", "tool", "tool", "tool"]
    assert reloaded.messages[1].content == "Read them."


# ── restore then replay ──

@pytest.mark.asyncio
async def test_replaying_a_turn_after_restore_reproduces_the_files(workspace, store, make_orchestrator):
    (workspace / "a.txt").write_text("v1")
    store.set_auto_approve("edits", True)

    def script():
        return [
            tool_call("w1", "write_file", {"path": "a.txt", "content": "v2"})
            + tool_call("w2", "write_file", {"path": "b.txt", "content": "new"})
            + TOOL_USE,
            text("Updated.") + DONE,
        ]

    orch, _ = make_orchestrator(script())
    await orch.send_message("update files")
    before_restore = {name: (workspace / name).read_text() for name in ("a.txt", "b.txt")}

    restored = await store.restore_to_checkpoint(store.message_checkpoints[0].id)
    assert restored.success
    assert (workspace / "a.txt").read_text() == "v1"
    assert not (workspace / "b.txt").exists()
    assert store.messages == ()

    orch, _ = make_orchestrator(script())
    await orch.send_message("update files")

    assert {name: (workspace / name).read_text() for name in ("a.txt", "b.txt")} == before_restore
    assert {c.snapshot.content for c in store.pending_changes} == {"v1", None}


# ── abort while streaming or running a tool ──

class StallingTransport(FakeTransport):
    """Streams one script, then hangs until the turn is cancelled."""

    def __init__(self, script):
        super().__init__([])
        self.script = script
        self.stalled = asyncio.Event()

    async def stream_completion(self, messages, tools=None, model=None):
        self.calls.append(list(messages))
        for event in self.script:
            await asyncio.sleep(0)
            yield event
        self.stalled.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_abort_while_text_is_streaming(store, engine, config, events):
    transport = StallingTransport(text("Let me ", "think"))
    orch = orchestrator_with(transport, store, engine, config, events)

    task = asyncio.ensure_future(orch.send_message("hello"))
    await transport.stalled.wait()
    orch.abort()
    await task

    msg = assistant(store)
    assert msg.content == "Let me think"
    assert msg.is_streaming is False
    assert transport.cancelled
    assert not orch.is_running
    assert store.stream_state.phase == StreamPhase.IDLE


@pytest.mark.asyncio
async def test_abort_while_tool_arguments_are_streaming(store, engine, config, events):
    transport = StallingTransport([
        ToolCallStart(id="w1", name="write_file"),
        ToolCallDelta(id="w1", arguments_delta='{"path": "a.txt", "con'),
    ])
    orch = orchestrator_with(transport, store, engine, config, events)

    task = asyncio.ensure_future(orch.send_message("write"))
    await transport.stalled.wait()
    orch.abort()
    await task

    tc = assistant(store).get_tool_call("w1")
    assert tc.status == ToolStatus.ERROR
    assert tc.error == "Aborted by user"
    assert tool_results(store) == []
    assert transport.cancelled
    assert store.stream_state.phase == StreamPhase.IDLE


@pytest.mark.asyncio
async def test_abort_while_a_command_is_running(workspace, store, make_orchestrator):
    store.set_auto_approve("terminal", True)
    orch, transport = make_orchestrator([
        tool_call("c1", "run_command", {"command": "sleep 5 && touch late.txt"}) + TOOL_USE,
    ])

    task = asyncio.ensure_future(orch.send_message("run it"))
    await wait_for_phase(store, StreamPhase.TOOL_RUNNING)
    await asyncio.sleep(0.2)
    orch.abort()
    await task

    tc = assistant(store).get_tool_call("c1")
    assert tc.status == ToolStatus.ERROR
    assert tc.error == "Aborted by user"
    assert tool_results(store) == []
    assert transport.cancelled
    assert not orch.is_running
    assert store.stream_state.phase == StreamPhase.IDLE
    assert len(transport.calls) == 1
