import asyncio

import pytest

from conftest import wait_for_phase
from agent.executor import REJECTED_RESULT, ToolExecutionEngine, format_tool_description
from agent.models import RESULT_REJECTED, RESULT_TOOL_ERROR, StreamPhase, ToolResultMessage, ToolStatus


def start_call(store, call_id, name, args):
    aid = store.add_assistant_message()
    store.add_tool_call_part(aid, call_id, name, args)
    return aid


def results(store):
    return [m for m in store.messages if isinstance(m, ToolResultMessage)]


@pytest.fixture
def recorded(store, backend, config):
    events = []

    async def on_event(event):
        events.append(event)

    return ToolExecutionEngine(store, backend, config, on_event=on_event), events


@pytest.mark.asyncio
async def test_invalid_arguments_fail_before_any_prompt(store, recorded):
    engine, events = recorded
    aid = start_call(store, "t1", "write_file", {"path": "a.txt"})

    outcome = await engine.execute_tool_call(aid, "t1", "write_file", {"path": "a.txt"})

    assert not outcome.success
    assert outcome.content == "Error: Invalid arguments for write_file: Missing required parameter: content"
    assert not any(e.type == "tool_pending" for e in events)
    assert store.get_tool_call(aid, "t1").status == ToolStatus.ERROR
    assert results(store)[0].type == RESULT_TOOL_ERROR


@pytest.mark.asyncio
async def test_approval_prompt_then_approve(workspace, store, recorded):
    engine, events = recorded
    args = {"path": "a.txt", "content": "hello"}
    aid = start_call(store, "t1", "write_file", args)

    task = asyncio.ensure_future(engine.execute_tool_call(aid, "t1", "write_file", args))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)

    assert engine.is_awaiting_approval
    assert store.stream_state.current_tool_call.id == "t1"
    pending = [e for e in events if e.type == "tool_pending"]
    assert pending[0].content == "Write a.txt (1 lines)"
    assert pending[0].data["approval_type"] == "edits"

    engine.approve()
    outcome = await task

    assert outcome.success
    assert (workspace / "a.txt").read_text() == "hello"
    assert not engine.is_awaiting_approval
    assert store.auto_approve["edits"] is False


@pytest.mark.asyncio
async def test_rejection_records_rejected_result(workspace, store, recorded):
    engine, _ = recorded
    args = {"command": "touch made.txt"}
    aid = start_call(store, "t1", "run_command", args)

    task = asyncio.ensure_future(engine.execute_tool_call(aid, "t1", "run_command", args))
    await wait_for_phase(store, StreamPhase.TOOL_PENDING)
    engine.reject()
    outcome = await task

    assert outcome.rejected
    assert outcome.content == REJECTED_RESULT
    assert results(store)[0].type == RESULT_REJECTED
    assert store.get_tool_call(aid, "t1").status == ToolStatus.REJECTED
    assert not (workspace / "made.txt").exists()


@pytest.mark.asyncio
async def test_callback_approval_is_used_when_given(workspace, store, backend, config):
    prompts = []

    async def ask(name, description, inputs):
        prompts.append(description)
        return True

    engine = ToolExecutionEngine(store, backend, config, request_approval=ask)
    args = {"command": "echo ok"}
    aid = start_call(store, "t1", "run_command", args)

    outcome = await engine.execute_tool_call(aid, "t1", "run_command", args)

    assert prompts == ["Run: echo ok"]
    assert outcome.success


@pytest.mark.asyncio
async def test_delete_snapshots_file_and_records_pending_change(workspace, store, engine):
    (workspace / "old.txt").write_text("bye\n")
    store.set_auto_approve("dangerous", True)
    uid = store.add_user_message("delete it")
    store.create_message_checkpoint(uid, "delete it")
    aid = start_call(store, "t1", "delete_file_or_folder", {"path": "old.txt"})

    outcome = await engine.execute_tool_call(aid, "t1", "delete_file_or_folder", {"path": "old.txt"})

    full = str(workspace / "old.txt")
    assert outcome.success
    assert not (workspace / "old.txt").exists()
    assert store.pending_changes[0].file_path == full
    assert store.pending_changes[0].snapshot.content == "bye\n"
    assert store.get_checkpoint_for_message(uid).file_snapshots[full].content == "bye\n"

    assert await store.undo_change(full)
    assert (workspace / "old.txt").read_text() == "bye\n"


@pytest.mark.asyncio
async def test_new_file_snapshot_is_null(workspace, store, engine):
    store.set_auto_approve("edits", True)
    args = {"path": "fresh.txt", "content": "x"}
    aid = start_call(store, "t1", "write_file", args)

    await engine.execute_tool_call(aid, "t1", "write_file", args)

    assert store.pending_changes[0].snapshot.content is None


@pytest.mark.asyncio
async def test_sandbox_violation_is_a_tool_error(tmp_path, store, engine):
    store.set_auto_approve("edits", True)
    args = {"path": "../outside.txt", "content": "x"}
    aid = start_call(store, "t1", "write_file", args)

    outcome = await engine.execute_tool_call(aid, "t1", "write_file", args)

    assert not outcome.success
    assert "escapes working directory" in outcome.content
    assert not (tmp_path / "outside.txt").exists()
    assert store.pending_changes == ()


@pytest.mark.asyncio
async def test_failed_write_records_no_pending_change(workspace, store, engine):
    (workspace / "dir").mkdir()
    store.set_auto_approve("edits", True)
    args = {"path": "dir", "content": "x"}
    aid = start_call(store, "t1", "write_file", args)

    outcome = await engine.execute_tool_call(aid, "t1", "write_file", args)

    assert not outcome.success
    assert store.pending_changes == ()


@pytest.mark.asyncio
async def test_meta_is_kept_on_the_call_without_file_contents(workspace, store, engine):
    store.set_auto_approve("edits", True)
    args = {"path": "a.txt", "content": "one\ntwo"}
    aid = start_call(store, "t1", "write_file", args)

    await engine.execute_tool_call(aid, "t1", "write_file", args)

    meta = store.get_tool_call(aid, "t1").arguments["_meta"]
    assert meta["lines_added"] == 2
    assert "old_content" not in meta and "new_content" not in meta


@pytest.mark.asyncio
async def test_long_results_are_truncated(workspace, store, engine, config):
    config.max_tool_result_chars = 500
    (workspace / "big.txt").write_text("\n".join(f"line {i}" for i in range(2000)))
    aid = start_call(store, "t1", "read_file", {"path": "big.txt"})

    outcome = await engine.execute_tool_call(aid, "t1", "read_file", {"path": "big.txt"})

    assert "[truncated:" in outcome.content
    assert len(outcome.content) < 1000
    assert results(store)[0].content == outcome.content


@pytest.mark.asyncio
async def test_slow_tool_times_out(store, engine, config):
    config.tool_timeout_ms = 500
    store.set_auto_approve("terminal", True)
    args = {"command": "sleep 5"}
    aid = start_call(store, "t1", "run_command", args)

    outcome = await engine.execute_tool_call(aid, "t1", "run_command", args)

    assert not outcome.success
    assert "timed out" in outcome.content


def test_tool_descriptions():
    assert format_tool_description("edit_file", {"path": "a.py"}) == "Edit a.py"
    assert format_tool_description("delete_file_or_folder", {"path": "d", "recursive": True}) == "Delete d (recursive)"
    assert format_tool_description("read_file", {"path": "a.py"}) == 'read_file({"path": "a.py"})'


@pytest.mark.asyncio
async def test_folder_delete_is_not_offered_for_restore(workspace, store, engine):
    (workspace / "d").mkdir()
    (workspace / "d" / "f.txt").write_text("x")
    store.set_auto_approve("dangerous", True)
    uid = store.add_user_message("remove d")
    checkpoint_id = store.create_message_checkpoint(uid, "remove d")
    args = {"path": "d", "recursive": True}
    aid = start_call(store, "t1", "delete_file_or_folder", args)

    outcome = await engine.execute_tool_call(aid, "t1", "delete_file_or_folder", args)

    assert outcome.success
    assert store.get_checkpoint_for_message(uid).file_snapshots == {}
    assert store.pending_changes == ()

    restored = await store.restore_to_checkpoint(checkpoint_id)
    assert restored.restored_files == []


@pytest.mark.asyncio
async def test_new_folder_records_no_snapshot(workspace, store, engine):
    store.set_auto_approve("edits", True)
    uid = store.add_user_message("mkdir")
    store.create_message_checkpoint(uid, "mkdir")
    aid = start_call(store, "t1", "create_file_or_folder", {"path": "pkg/"})

    outcome = await engine.execute_tool_call(aid, "t1", "create_file_or_folder", {"path": "pkg/"})

    assert outcome.success
    assert (workspace / "pkg").is_dir()
    assert store.get_checkpoint_for_message(uid).file_snapshots == {}
