import pytest

from agent.models import (
    AssistantMessage, ContextItem, FileSnapshot, TextPart, ToolCall, ToolStatus, UserMessage,
)
from agent.store import ThreadStore
from thread_storage import ThreadStorage


def test_first_message_creates_a_thread(store):
    assert store.current_thread is None

    store.add_user_message("hello")

    assert store.current_thread_id is not None
    assert isinstance(store.messages[0], UserMessage)
    assert store.messages[0].content == "hello"


def test_streamed_text_and_tool_calls_keep_their_order(store):
    aid = store.add_assistant_message()
    store.append_to_assistant(aid, "Let me ")
    store.append_to_assistant(aid, "check.")
    store.add_tool_call_part(aid, "t1", "read_file", {"path": "a.py"})
    store.append_to_assistant(aid, "Found it.")

    msg = store.get_message(aid)
    assert msg.content == "Let me check.Found it."
    parts = list(msg.iter_parts())
    assert isinstance(parts[0], TextPart) and parts[0].content == "Let me check."
    assert isinstance(parts[1], ToolCall) and parts[1].id == "t1"
    assert parts[2].content == "Found it."


def test_tool_call_update_is_visible_through_parts(store):
    aid = store.add_assistant_message()
    store.add_tool_call_part(aid, "t1", "read_file", {"path": "a.py"})

    store.update_tool_call(aid, "t1", status="success", result="contents")

    msg = store.get_message(aid)
    assert msg.get_tool_call("t1").status == ToolStatus.SUCCESS
    assert list(msg.iter_parts())[0].result == "contents"


def test_updates_are_copy_on_write(store):
    aid = store.add_assistant_message()
    store.add_tool_call_part(aid, "t1", "read_file", {"path": "a.py"})
    before = store.get_message(aid)

    store.update_tool_call(aid, "t1", status=ToolStatus.RUNNING)
    store.append_to_assistant(aid, "more")

    assert before.get_tool_call("t1").status == ToolStatus.PENDING
    assert before.content == ""
    assert store.get_message(aid) is not before


def test_duplicate_tool_call_id_is_ignored(store):
    aid = store.add_assistant_message()
    store.add_tool_call_part(aid, "t1", "read_file", {"path": "a.py"})
    store.add_tool_call_part(aid, "t1", "read_file", {"path": "b.py"})

    msg = store.get_message(aid)
    assert len(msg.tool_calls) == 1
    assert len(msg.parts) == 1
    assert msg.tool_calls[0].arguments == {"path": "a.py"}


def test_finalize_clears_streaming_flags(store):
    aid = store.add_assistant_message()
    assert store.current_thread.state.is_streaming

    store.finalize_assistant(aid)

    assert store.get_message(aid).is_streaming is False
    assert store.current_thread.state.is_streaming is False


def test_revert_assistant_restores_earlier_version(store):
    aid = store.add_assistant_message()
    store.append_to_assistant(aid, "kept")
    snapshot = store.get_message(aid)
    store.append_to_assistant(aid, " dropped")

    store.revert_assistant(snapshot)

    assert store.get_message(aid).content == "kept"


def test_subscribers_are_notified_until_unsubscribed(store):
    calls = []
    unsubscribe = store.subscribe(lambda s: calls.append(len(s.messages)))

    store.add_user_message("one")
    unsubscribe()
    store.add_user_message("two")

    assert calls and calls[-1] == 1


def test_context_items_are_deduplicated_by_target(store):
    store.add_context_item(ContextItem(type="File", uri="a.py"))
    store.add_context_item(ContextItem(type="File", uri="a.py"))
    store.add_context_item(ContextItem(type="File", uri="b.py"))
    store.add_context_item(ContextItem(type="Codebase"))
    store.add_context_item(ContextItem(type="Codebase", query="auth"))

    assert [(c.type, c.uri) for c in store.context_items] == [
        ("File", "a.py"), ("File", "b.py"), ("Codebase", None),
    ]

    store.remove_context_item(0)
    assert [c.uri for c in store.context_items] == ["b.py", None]
    store.clear_context_items()
    assert store.context_items == ()


def test_unknown_auto_approve_category_is_rejected(store):
    with pytest.raises(ValueError):
        store.set_auto_approve("everything", True)


def test_second_change_to_a_file_keeps_first_snapshot(store):
    store.add_pending_change("/ws/a.py", "t1", "write_file", FileSnapshot("/ws/a.py", "v1"), 2, 1)
    store.add_pending_change("/ws/a.py", "t2", "edit_file", FileSnapshot("/ws/a.py", "v2"), 1, 1)

    assert len(store.pending_changes) == 1
    change = store.pending_changes[0]
    assert change.snapshot.content == "v1"
    assert change.tool_call_id == "t2"
    assert (change.lines_added, change.lines_removed) == (3, 2)


def test_first_snapshot_in_a_checkpoint_wins(store):
    uid = store.add_user_message("go")
    store.create_message_checkpoint(uid, "go")

    store.add_snapshot_to_current_checkpoint("/ws/a.py", "original")
    store.add_snapshot_to_current_checkpoint("/ws/a.py", "edited once")

    cp = store.get_checkpoint_for_message(uid)
    assert cp.file_snapshots["/ws/a.py"].content == "original"


def test_checkpoint_is_seeded_from_pending_changes(store):
    store.add_pending_change("/ws/a.py", "t1", "write_file", FileSnapshot("/ws/a.py", "v1"))
    uid = store.add_user_message("next")

    store.create_message_checkpoint(uid, "next")

    assert store.get_checkpoint_for_message(uid).file_snapshots["/ws/a.py"].content == "v1"


@pytest.mark.asyncio
async def test_undo_change_deletes_a_file_that_did_not_exist(workspace, store):
    path = str(workspace / "new.txt")
    (workspace / "new.txt").write_text("created")
    store.add_pending_change(path, "t1", "write_file", FileSnapshot(path, None))

    assert await store.undo_change(path) is True

    assert not (workspace / "new.txt").exists()
    assert not store.has_pending_changes


@pytest.mark.asyncio
async def test_undo_unknown_file_is_a_no_op(store):
    assert await store.undo_change("/nowhere") is False


@pytest.mark.asyncio
async def test_undo_all_collects_failures_and_keeps_going(workspace, store):
    good = str(workspace / "good.txt")
    (workspace / "good.txt").write_text("changed")
    store.add_pending_change("/outside/bad.txt", "t1", "write_file", FileSnapshot("/outside/bad.txt", "x"))
    store.add_pending_change(good, "t2", "write_file", FileSnapshot(good, "original"))

    result = await store.undo_all_changes()

    assert result.success is False
    assert result.restored_files == [good]
    assert len(result.errors) == 1
    assert (workspace / "good.txt").read_text() == "original"
    assert store.pending_changes == ()


@pytest.mark.asyncio
async def test_restore_to_checkpoint_rolls_back_files_and_messages(workspace, store):
    a = str(workspace / "a.txt")
    b = str(workspace / "b.txt")
    (workspace / "a.txt").write_text("v1")

    # turn one edits a.txt
    uid1 = store.add_user_message("one")
    store.create_message_checkpoint(uid1, "one")
    store.add_snapshot_to_current_checkpoint(a, "v1")
    (workspace / "a.txt").write_text("v2")
    store.add_pending_change(a, "t1", "write_file", FileSnapshot(a, "v1"))
    store.add_assistant_message("edited a")

    # turn two edits a.txt again and creates b.txt
    uid2 = store.add_user_message("two")
    cp2 = store.create_message_checkpoint(uid2, "two")
    store.add_snapshot_to_current_checkpoint(a, "v2")
    (workspace / "a.txt").write_text("v3")
    store.add_snapshot_to_current_checkpoint(b, None)
    (workspace / "b.txt").write_text("new")
    store.add_pending_change(b, "t2", "write_file", FileSnapshot(b, None))
    store.add_assistant_message("edited both")

    result = await store.restore_to_checkpoint(cp2)

    assert result.success
    assert sorted(result.restored_files) == sorted([a, b])
    # a.txt goes back to the earliest snapshot still on record
    assert (workspace / "a.txt").read_text() == "v1"
    assert not (workspace / "b.txt").exists()
    assert [m.content for m in store.messages] == ["one", "edited a"]
    assert [cp.message_id for cp in store.message_checkpoints] == [uid1]
    assert store.pending_changes == ()


@pytest.mark.asyncio
async def test_restore_unknown_checkpoint_fails(store):
    result = await store.restore_to_checkpoint("missing")
    assert result.success is False
    assert result.errors == ["Checkpoint not found"]


def test_delete_thread_switches_to_a_remaining_one(store):
    first = store.create_thread()
    second = store.create_thread()
    assert store.current_thread_id == second

    store.delete_thread(second)

    assert store.current_thread_id == first
    assert list(store.threads) == [first]


def test_delete_messages_after_keeps_the_anchor(store):
    store.add_user_message("a")
    anchor = store.add_user_message("b")
    store.add_user_message("c")

    store.delete_messages_after(anchor)

    assert [m.content for m in store.messages] == ["a", "b"]


def test_threads_survive_a_restart(tmp_path, backend, workspace):
    storage = ThreadStorage(str(workspace), base_dir=str(tmp_path / "threads"))
    store = ThreadStore(backend=backend, storage=storage)
    store.add_user_message("hello", [ContextItem(type="File", uri="a.py", range=(1, 3))])
    aid = store.add_assistant_message()
    store.append_to_assistant(aid, "hi there")
    store.add_tool_call_part(aid, "t1", "read_file", {"path": "a.py"})
    store.update_tool_call(aid, "t1", status=ToolStatus.SUCCESS, result="ok")
    store.add_tool_result("t1", "read_file", "ok", "success")
    store.set_auto_approve("terminal", True)

    reloaded = ThreadStore(backend=backend, storage=ThreadStorage(str(workspace), base_dir=str(tmp_path / "threads")))

    assert reloaded.current_thread_id == store.current_thread_id
    assert [m.role for m in reloaded.messages] == ["user", "assistant", "tool"]
    assert reloaded.messages[0].context_items[0].range == (1, 3)
    msg = reloaded.messages[1]
    assert isinstance(msg, AssistantMessage)
    assert msg.content == "hi there"
    assert msg.get_tool_call("t1").status == ToolStatus.SUCCESS
    # a restart never resumes mid-stream
    assert reloaded.current_thread.state.is_streaming is False
    assert reloaded.auto_approve["terminal"] is True
    assert reloaded.pending_changes == ()


def test_corrupt_storage_file_is_ignored(tmp_path, workspace):
    storage = ThreadStorage(str(workspace), base_dir=str(tmp_path / "threads"))
    with open(storage.path, "w") as f:
        f.write("{not json")

    assert storage.load() is None
    assert storage.delete() is True
    assert storage.delete() is False
