"""Partial JSON, XML tool calls, loop detection, retry and truncation."""

import pytest

from agent.events import LLMResult, StreamError, StreamedToolCall
from agent.loop_detection import LoopDetector, tool_call_signature
from agent.partial_json import fix_json, parse_partial_json
from agent.retry import call_with_retry, is_retryable
from agent.truncation import truncate_tool_result
from agent.xml_tool_calls import extract_xml_tool_calls, parse_xml_tool_calls


# ── partial JSON ──

def test_partial_json_complete_object():
    assert parse_partial_json('{"path": "a.py"}') == {"path": "a.py"}


def test_partial_json_open_string_is_closed():
    assert parse_partial_json('{"path": "src/ma') == {"path": "src/ma"}


def test_partial_json_nested_and_trailing_comma():
    assert parse_partial_json('{"paths": ["a", "b"],') == {"paths": ["a", "b"]}
    assert fix_json('{"a": {"b": [1, 2') == '{"a": {"b": [1, 2]}}'


def test_partial_json_dangling_backslash():
    assert parse_partial_json('{"content": "line\\') == {"content": "line\\"}


def test_partial_json_falls_back_to_known_fields():
    assert parse_partial_json('{"path": "a", "con') == {"path": "a"}


def test_partial_json_nothing_recoverable():
    assert parse_partial_json("") == {}
    assert parse_partial_json("[1, 2") == {}


# ── XML tool calls ──

def test_xml_tool_calls_are_parsed_and_stripped():
    text = (
        "I'll read it.\n"
        "<tool_call><function=read_file>"
        "<parameter=path>src/a.py</parameter><parameter=start_line>3</parameter>"
        "</function></tool_call>"
    )

    cleaned, calls = extract_xml_tool_calls(text)

    assert cleaned == "I'll read it."
    assert len(calls) == 1
    assert calls[0].name == "read_file"
    assert calls[0].arguments == {"path": "src/a.py", "start_line": 3}
    assert calls[0].id.startswith("xml-")


def test_text_without_xml_calls_is_untouched():
    assert extract_xml_tool_calls("plain <b>html</b>") == ("plain <b>html</b>", [])


def test_xml_tags_match_in_any_case():
    text = "<TOOL_CALL><Function=read_file><PARAMETER=path>a.py</PARAMETER></Function></TOOL_CALL>"

    cleaned, calls = extract_xml_tool_calls(text)

    assert cleaned == ""
    assert [(c.name, c.arguments) for c in calls] == [("read_file", {"path": "a.py"})]


def test_multiple_xml_calls_get_distinct_ids():
    block = "<tool_call><function=list_directory><parameter=path>.</parameter></function></tool_call>"
    calls = parse_xml_tool_calls(block + block)
    assert len({c.id for c in calls}) == 2


# ── loop detection ──

def _call(name, **args):
    return StreamedToolCall(id="x", name=name, arguments=args)


def test_signature_ignores_call_order_and_ids():
    a = [_call("read_file", path="a"), _call("read_file", path="b")]
    b = [_call("read_file", path="b"), _call("read_file", path="a")]
    assert tool_call_signature(a) == tool_call_signature(b)


def test_loop_trips_after_threshold_consecutive_repeats():
    detector = LoopDetector(threshold=2, history_size=5)
    batch = [_call("read_file", path="a")]

    assert detector.check(batch) is False
    assert detector.check(batch) is False
    assert detector.check(batch) is True


def test_a_fresh_batch_resets_the_streak():
    detector = LoopDetector(threshold=2, history_size=5)
    same = [_call("read_file", path="a")]

    detector.check(same)
    detector.check(same)
    assert detector.check([_call("list_directory", path=".")]) is False
    assert detector.consecutive_repeats == 0


def test_old_signatures_fall_out_of_history():
    detector = LoopDetector(threshold=1, history_size=2)
    detector.check([_call("read_file", path="a")])
    detector.check([_call("read_file", path="b")])
    detector.check([_call("read_file", path="c")])
    assert detector.check([_call("read_file", path="a")]) is False


# ── retry ──

def test_retryable_codes_and_hints():
    assert is_retryable(StreamError("RATE_LIMIT", "slow down"))
    assert is_retryable(StreamError("UNKNOWN", "Network unreachable"))
    assert not is_retryable(StreamError("AUTH_ERROR", "denied"))
    assert not is_retryable(StreamError("INVALID_REQUEST", "bad body"))


@pytest.mark.asyncio
async def test_retry_backs_off_then_succeeds():
    outcomes = [LLMResult(error=StreamError("SERVER_ERROR", "503")), LLMResult(content="ok")]
    sleeps, retries = [], []

    async def attempt():
        return outcomes.pop(0)

    async def sleep(seconds):
        sleeps.append(seconds)

    async def on_retry(n, delay_ms, error):
        retries.append((n, delay_ms, error.code))

    result = await call_with_retry(attempt, max_retries=3, delay_ms=250, multiplier=2, sleep=sleep, on_retry=on_retry)

    assert result.content == "ok"
    assert sleeps == [0.25]
    assert retries == [(1, 250, "SERVER_ERROR")]


@pytest.mark.asyncio
async def test_non_retryable_error_returns_at_once():
    calls = []

    async def attempt():
        calls.append(1)
        return LLMResult(error=StreamError("AUTH_ERROR", "denied"))

    async def sleep(seconds):
        raise AssertionError("should not sleep")

    result = await call_with_retry(attempt, max_retries=3, delay_ms=100, multiplier=2, sleep=sleep)

    assert result.error.code == "AUTH_ERROR"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    sleeps = []

    async def attempt():
        return LLMResult(error=StreamError("TIMEOUT", "timed out"))

    async def sleep(seconds):
        sleeps.append(seconds)

    result = await call_with_retry(attempt, max_retries=3, delay_ms=100, multiplier=3, sleep=sleep)

    assert result.error.code == "TIMEOUT"
    assert sleeps == pytest.approx([0.1, 0.3, 0.9])


# ── truncation ──

def test_short_results_pass_through():
    assert truncate_tool_result("short", "read_file") == "short"
    assert truncate_tool_result("", "read_file") == ""


def test_command_output_keeps_the_tail():
    output = "\n".join(f"step {i}" for i in range(5000)) + "\nFAILED: final error"

    truncated = truncate_tool_result(output, "run_command", 1000)

    assert truncated.endswith("FAILED: final error")
    assert "step 4999\n" in truncated
    assert "chars omitted] ..." in truncated


def test_file_reads_keep_the_head():
    output = "HEADER\n" + "\n".join(f"line {i}" for i in range(5000))

    truncated = truncate_tool_result(output, "read_file", 1000)

    assert truncated.startswith("HEADER\nline 0\n")
    head = truncated.split("\n\n... [truncated")[0]
    assert len(head) <= 800


def test_unknown_tools_use_the_default_rule():
    output = "x" * 20000
    truncated = truncate_tool_result(output, "some_tool")
    assert truncated.startswith("x" * 8400)
    assert "[truncated: 8,600 chars omitted]" in truncated
