import asyncio
import json
import os
import sys
from typing import Any, Dict, List

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend import LocalBackend  # noqa: E402
from config import AgentConfig  # noqa: E402
from agent.events import StreamDone, TextDelta, ToolCallDelta, ToolCallEnd, ToolCallStart  # noqa: E402
from agent.executor import ToolExecutionEngine  # noqa: E402
from agent.models import StreamPhase  # noqa: E402
from agent.orchestrator import AgentOrchestrator  # noqa: E402
from agent.store import ThreadStore  # noqa: E402


def tool_call(call_id: str, name: str, args: Dict[str, Any]) -> list:
    """Stream events for one complete native tool call, arguments split in two deltas."""
    raw = json.dumps(args)
    mid = len(raw) // 2
    return [
        ToolCallStart(id=call_id, name=name),
        ToolCallDelta(id=call_id, arguments_delta=raw[:mid]),
        ToolCallDelta(id=call_id, arguments_delta=raw[mid:]),
        ToolCallEnd(id=call_id),
    ]


def text(*chunks: str) -> list:
    return [TextDelta(c) for c in chunks]


class FakeTransport:
    """Replays one scripted list of stream events per model call."""

    def __init__(self, scripts: List[list]):
        self.scripts = list(scripts)
        self.calls: List[List[Dict[str, Any]]] = []
        self.cancelled = False

    async def stream_completion(self, messages, tools=None, model=None):
        self.calls.append([dict(m) for m in messages])
        script = self.scripts.pop(0) if self.scripts else text("Done.") + [StreamDone("end_turn")]
        for event in script:
            await asyncio.sleep(0)
            yield event

    def cancel(self):
        self.cancelled = True


async def wait_for_phase(store: ThreadStore, phase: StreamPhase, attempts: int = 500) -> None:
    for _ in range(attempts):
        if store.stream_state.phase == phase:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"store never reached phase {phase.value}")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def backend(workspace):
    return LocalBackend(str(workspace))


@pytest.fixture
def store(backend):
    return ThreadStore(backend=backend)


@pytest.fixture
def config():
    return AgentConfig(
        max_tool_loops=25,
        max_retries=2,
        retry_delay_ms=1000,
        retry_backoff_multiplier=2,
        tool_timeout_ms=5000,
        max_tool_result_chars=10000,
        enable_auto_fix=False,
    )


@pytest.fixture
def engine(store, backend, config, events):
    async def record(event):
        events.append(event)

    return ToolExecutionEngine(store, backend, config, on_event=record)


@pytest.fixture
def events():
    return []


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_orchestrator(store, engine, config, events, sleeps):
    async def record(event):
        events.append(event)

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def make(scripts, **overrides):
        transport = FakeTransport(scripts)
        orch = AgentOrchestrator(
            overrides.get("store", store),
            overrides.get("engine", engine),
            transport,
            overrides.get("config", config),
            on_event=record,
            sleep=fake_sleep,
        )
        return orch, transport

    return make
