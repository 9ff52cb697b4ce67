import asyncio
import json

from subagents.workers.events import (
    ProgressThrottle,
    TaskEventTracker,
    ToolFailure,
    classify_tool_result,
    extract_tool_args_preview,
    final_output,
)
from subagents.workers.models import ProgressRecord, TaskResult


def _tracker(**kwargs) -> TaskEventTracker:
    result = TaskResult(agent="worker", task="do it")
    progress = ProgressRecord(index=0, agent="worker")
    return TaskEventTracker(result, progress, **kwargs)


def _line(payload: dict) -> str:
    return json.dumps(payload)


def _assistant(text: str, **extra) -> str:
    message = {"role": "assistant", "content": [{"type": "text", "text": text}], **extra}
    return _line({"type": "message_end", "message": message})


def _tool_result(tool: str, text: str, is_error: bool = False) -> str:
    message = {
        "role": "toolResult",
        "toolName": tool,
        "content": [{"type": "text", "text": text}],
        "isError": is_error,
    }
    return _line({"type": "tool_result_end", "message": message})


def test_feed_splits_lines_and_keeps_partial_tail() -> None:
    tracker = _tracker()

    assert tracker.feed(b'{"a":1}\n{"b"') == ['{"a":1}']
    assert tracker.feed(b":2}\n") == ['{"b":2}']
    assert tracker.feed(b'{"c":3}') == []
    assert tracker.flush() == '{"c":3}'
    assert tracker.flush() is None


def test_feed_handles_multibyte_split_across_chunks() -> None:
    tracker = _tracker()
    encoded = "héllo\n".encode()

    assert tracker.feed(encoded[:2]) == []
    assert tracker.feed(encoded[2:]) == ["héllo"]


def test_assistant_message_updates_usage_output_and_model() -> None:
    tracker = _tracker()
    usage = {"input": 10, "output": 5, "cacheRead": 2, "cost": {"total": 0.25}}

    tracker.handle_line(_assistant("first", usage=usage, model="m-1"))
    tracker.handle_line(_assistant("second\nline", usage=usage, model="m-2"))

    result = tracker.result
    assert result.output == "second\nline"
    assert result.usage.turns == 2
    assert result.usage.input == 20
    assert result.usage.cache_read == 4
    assert result.usage.cost == 0.5
    assert result.model == "m-1"
    assert tracker.progress.tokens == 30
    assert list(tracker.progress.recent_output)[-2:] == ["second", "line"]
    assert final_output(result.messages) == "second\nline"


def test_malformed_and_unknown_lines_are_ignored() -> None:
    tracker = _tracker()

    assert tracker.handle_line("not json") is False
    assert tracker.handle_line("[1, 2]") is False
    assert tracker.handle_line(_line({"type": "agent_start"})) is False
    assert tracker.result.messages == []


def test_tool_start_requests_immediate_emit_and_end_records_recent_tool() -> None:
    tracker = _tracker()

    force = tracker.handle_line(
        _line({"type": "tool_execution_start", "toolName": "bash", "args": {"command": "ls -la"}})
    )

    assert force is True
    assert tracker.progress.tool_count == 1
    assert tracker.progress.current_tool == "bash"
    assert tracker.progress.current_tool_args == "ls -la"

    tracker.handle_line(_line({"type": "tool_execution_end", "toolName": "bash"}))

    assert tracker.progress.current_tool is None
    assert tracker.progress.recent_tools[0].tool == "bash"


def test_progress_rings_are_bounded() -> None:
    tracker = _tracker()
    for index in range(8):
        tracker.handle_line(
            _line({"type": "tool_execution_start", "toolName": f"t{index}", "args": {}})
        )
        tracker.handle_line(_line({"type": "tool_execution_end"}))
    for index in range(60):
        tracker.handle_line(_tool_result("read", f"line {index}"))

    assert len(tracker.progress.recent_tools) == 5
    assert tracker.progress.recent_tools[0].tool == "t7"
    assert len(tracker.progress.recent_output) == 50
    assert tracker.progress.recent_output[-1] == "line 59"


def test_message_history_is_capped() -> None:
    tracker = _tracker(max_messages=3)
    for index in range(5):
        tracker.handle_line(_assistant(f"m{index}"))

    assert [m["content"][0]["text"] for m in tracker.result.messages] == ["m2", "m3", "m4"]


def test_classify_shell_failures() -> None:
    missing = classify_tool_result(
        {"toolName": "bash", "content": "sh: foo: command not found"}
    )
    exited = classify_tool_result({"toolName": "bash", "content": "done\nexit code: 127"})
    clean = classify_tool_result({"toolName": "bash", "content": "exit code: 0"})

    assert missing is not None and missing.tool == "bash"
    assert exited == ToolFailure("bash", 127, "done\nexit code: 127")
    assert clean is None


def test_classify_error_flag_applies_to_any_tool() -> None:
    failure = classify_tool_result({"toolName": "write", "content": "disk full", "isError": True})
    ignored = classify_tool_result({"toolName": "read", "content": "command not found"})

    assert failure is not None
    assert failure.describe() == "write failed (exit 1): disk full"
    assert ignored is None


def test_successful_tool_result_clears_previous_failure() -> None:
    tracker = _tracker()

    tracker.handle_line(_tool_result("bash", "exit code: 2"))
    assert tracker.last_tool_failure is not None

    tracker.handle_line(_tool_result("bash", "all good"))
    assert tracker.last_tool_failure is None


def test_args_preview_is_truncated() -> None:
    preview = extract_tool_args_preview({"command": "x" * 200})

    assert len(preview) == 80
    assert preview.endswith("...")
    assert extract_tool_args_preview({"limit": 3}) == '{"limit": 3}'
    assert extract_tool_args_preview(None) == ""


def test_throttle_coalesces_bursts_into_one_trailing_emit() -> None:
    emitted: list[int] = []

    async def scenario() -> None:
        throttle = ProgressThrottle(lambda: emitted.append(1), interval_ms=50)
        throttle.schedule()
        for _ in range(10):
            throttle.schedule()
        assert len(emitted) == 1
        assert throttle.pending
        await asyncio.sleep(0.12)
        assert len(emitted) == 2
        assert not throttle.pending
        throttle.close()

    asyncio.run(scenario())


def test_throttle_force_emits_immediately_and_close_drops_pending() -> None:
    emitted: list[int] = []

    async def scenario() -> None:
        throttle = ProgressThrottle(lambda: emitted.append(1), interval_ms=50)
        throttle.schedule()
        throttle.schedule()
        throttle.schedule(force=True)
        assert len(emitted) == 2
        throttle.schedule()
        throttle.close()
        await asyncio.sleep(0.1)
        throttle.schedule()

    asyncio.run(scenario())
    assert len(emitted) == 2
