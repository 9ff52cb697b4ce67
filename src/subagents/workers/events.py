"""Parsing of the worker's newline-delimited JSON event stream."""

from __future__ import annotations

import asyncio
import codecs
import json
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from subagents.workers.models import ProgressRecord, RecentTool, TaskResult

MAX_LINES_PER_MESSAGE = 10
TOOL_ARGS_PREVIEW_CHARS = 80
SHELL_TOOLS = frozenset({"bash", "sh", "shell", "exec", "run_command"})
EXIT_CODE_PATTERN = re.compile(
    r"(?:exited with code|exit code:?|exit status:?)\s*(-?\d+)", re.IGNORECASE
)
# Hidden-failure heuristic; callers may pass their own pattern set.
DEFAULT_FAILURE_PATTERNS: tuple[str, ...] = (
    "command not found",
    "connection refused",
    "permission denied",
    "no such file or directory",
    "segmentation fault",
)
_PREVIEW_KEYS = ("command", "path", "file_path", "pattern", "query", "url")


def extract_text_from_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type", "text") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(parts)
    return ""


def extract_tool_args_preview(args: Any) -> str:
    if not isinstance(args, dict) or not args:
        return ""
    for key in _PREVIEW_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            preview = value.strip().replace("\n", " ")
            break
    else:
        preview = json.dumps(args, ensure_ascii=False, default=str)
    if len(preview) > TOOL_ARGS_PREVIEW_CHARS:
        preview = preview[: TOOL_ARGS_PREVIEW_CHARS - 3] + "..."
    return preview


def final_output(messages: Iterable[dict[str, Any]]) -> str:
    """Text of the last assistant message that carried any."""
    for message in reversed(list(messages)):
        if message.get("role") != "assistant":
            continue
        text = extract_text_from_content(message.get("content"))
        if text.strip():
            return text
    return ""


def _tail_lines(text: str) -> list[str]:
    lines = [line for line in text.split("\n") if line.strip()]
    return lines[-MAX_LINES_PER_MESSAGE:]


@dataclass(frozen=True, slots=True)
class ToolFailure:
    tool: str
    exit_code: int | None
    details: str

    def describe(self) -> str:
        exit_code = self.exit_code if self.exit_code is not None else 1
        if self.details:
            return f"{self.tool} failed (exit {exit_code}): {self.details}"
        return f"{self.tool} failed with exit code {exit_code}"


def classify_tool_result(
    message: dict[str, Any],
    failure_patterns: Iterable[str] = DEFAULT_FAILURE_PATTERNS,
) -> ToolFailure | None:
    """Return the failure a tool result reports, or None when it looks successful."""
    tool = str(message.get("toolName") or "tool")
    text = extract_text_from_content(message.get("content")).strip()
    details = text[-400:]
    match = EXIT_CODE_PATTERN.search(text)
    exit_code = int(match.group(1)) if match else None

    if message.get("isError"):
        return ToolFailure(tool, exit_code, details)
    if tool not in SHELL_TOOLS:
        return None
    if exit_code is not None and exit_code != 0:
        return ToolFailure(tool, exit_code, details)
    lowered = text.lower()
    if any(pattern in lowered for pattern in failure_patterns):
        return ToolFailure(tool, exit_code, details)
    return None


class TaskEventTracker:
    """Owns the line buffer and incrementally folds events into a result and progress record."""

    def __init__(
        self,
        result: TaskResult,
        progress: ProgressRecord,
        *,
        max_messages: int = 200,
        failure_patterns: Iterable[str] = DEFAULT_FAILURE_PATTERNS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.result = result
        self.progress = progress
        self.max_messages = max_messages
        self.failure_patterns = tuple(failure_patterns)
        self.last_tool_failure: ToolFailure | None = None
        self._clock = clock
        self._started = clock()
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> str | None:
        remaining = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return remaining if remaining.strip() else None

    def handle_line(self, line: str) -> bool:
        """Apply one protocol line; returns True when progress must be emitted immediately."""
        if not line.strip():
            return False
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return False
        if not isinstance(event, dict):
            return False

        self.progress.duration_ms = self.elapsed_ms()
        event_type = event.get("type")
        if event_type == "tool_execution_start":
            self.progress.tool_count += 1
            self.progress.current_tool = str(event.get("toolName") or "tool")
            self.progress.current_tool_args = extract_tool_args_preview(event.get("args"))
            return True
        if event_type == "tool_execution_end":
            self._finish_tool()
            return False

        message = event.get("message")
        if not isinstance(message, dict):
            return False
        if event_type == "message_end":
            self._remember(message)
            if message.get("role") == "assistant":
                self._apply_assistant_message(message)
        elif event_type == "tool_result_end":
            self._remember(message)
            self._apply_tool_result(message)
        return False

    def _finish_tool(self) -> None:
        if self.progress.current_tool:
            self.progress.recent_tools.appendleft(
                RecentTool(
                    tool=self.progress.current_tool,
                    args=self.progress.current_tool_args or "",
                    end_ms=int(time.time() * 1000),
                )
            )
        self.progress.current_tool = None
        self.progress.current_tool_args = None

    def _remember(self, message: dict[str, Any]) -> None:
        messages = self.result.messages
        messages.append(message)
        if len(messages) > self.max_messages:
            del messages[: len(messages) - self.max_messages]

    def _apply_assistant_message(self, message: dict[str, Any]) -> None:
        usage = self.result.usage
        usage.turns += 1
        raw_usage = message.get("usage")
        if isinstance(raw_usage, dict):
            usage.input += int(raw_usage.get("input") or 0)
            usage.output += int(raw_usage.get("output") or 0)
            usage.cache_read += int(raw_usage.get("cacheRead") or 0)
            usage.cache_write += int(raw_usage.get("cacheWrite") or 0)
            cost = raw_usage.get("cost")
            if isinstance(cost, dict):
                usage.cost += float(cost.get("total") or 0)
            elif isinstance(cost, (int, float)):
                usage.cost += float(cost)
            self.progress.tokens = usage.input + usage.output
        if not self.result.model and message.get("model"):
            self.result.model = str(message["model"])
        if message.get("errorMessage"):
            self.result.error = str(message["errorMessage"])

        text = extract_text_from_content(message.get("content"))
        if text.strip():
            self.result.output = text
            self.progress.recent_output.extend(_tail_lines(text))

    def _apply_tool_result(self, message: dict[str, Any]) -> None:
        text = extract_text_from_content(message.get("content"))
        if text:
            self.progress.recent_output.extend(_tail_lines(text))
        self.last_tool_failure = classify_tool_result(message, self.failure_patterns)


class ProgressThrottle:
    """Emit at most once per interval; calls inside the window share one trailing emission."""

    def __init__(
        self,
        emit: Callable[[], None],
        interval_ms: int = 50,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._emit = emit
        self._interval = max(0, interval_ms) / 1000
        self._clock = clock
        self._last: float | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, *, force: bool = False) -> None:
        if self._closed:
            return
        now = self._clock()
        if force:
            self._last = None
        elapsed = now - self._last if self._last is not None else None
        if elapsed is None or elapsed >= self._interval:
            self._cancel_pending()
            self._fire(now)
        elif self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._interval - elapsed, self._trailing)

    def _trailing(self) -> None:
        self._handle = None
        if not self._closed:
            self._fire(self._clock())

    def _fire(self, now: float) -> None:
        self._last = now
        self._emit()

    def _cancel_pending(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def close(self) -> None:
        self._closed = True
        self._cancel_pending()
