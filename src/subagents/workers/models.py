from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

MAX_RECENT_TOOLS = 5
MAX_RECENT_OUTPUT_LINES = 50
SKIPPED_EXIT_CODE = -1

TaskStatus = Literal["running", "completed", "failed"]


@dataclass(slots=True)
class UsageTotals:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    turns: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "output": self.output,
            "cache_read": self.cache_read,
            "cache_write": self.cache_write,
            "cost": self.cost,
            "turns": self.turns,
        }


@dataclass(slots=True)
class RecentTool:
    tool: str
    args: str
    end_ms: int


@dataclass(slots=True)
class ProgressRecord:
    index: int
    agent: str
    task: str = ""
    status: TaskStatus = "running"
    current_tool: str | None = None
    current_tool_args: str | None = None
    recent_tools: deque[RecentTool] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_TOOLS)
    )
    recent_output: deque[str] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_OUTPUT_LINES)
    )
    tool_count: int = 0
    tokens: int = 0
    duration_ms: int = 0
    error: str | None = None
    failed_tool: str | None = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "agent": self.agent,
            "status": self.status,
            "current_tool": self.current_tool,
            "current_tool_args": self.current_tool_args,
            "recent_tools": [
                {"tool": item.tool, "args": item.args, "end_ms": item.end_ms}
                for item in self.recent_tools
            ],
            "recent_output": list(self.recent_output),
            "tool_count": self.tool_count,
            "tokens": self.tokens,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "failed_tool": self.failed_tool,
        }


@dataclass(slots=True)
class TruncationInfo:
    truncated: bool
    original_bytes: int
    original_lines: int
    note: str = ""
    artifact_path: str | None = None


@dataclass(slots=True)
class ArtifactPaths:
    input_path: Path
    output_path: Path
    jsonl_path: Path
    metadata_path: Path

    def to_dict(self) -> dict[str, str]:
        return {
            "input": str(self.input_path),
            "output": str(self.output_path),
            "jsonl": str(self.jsonl_path),
            "metadata": str(self.metadata_path),
        }


@dataclass(slots=True)
class ArtifactConfig:
    enabled: bool = True
    include_input: bool = True
    include_output: bool = True
    include_jsonl: bool = True
    include_metadata: bool = True


@dataclass(slots=True)
class TaskResult:
    agent: str
    task: str
    exit_code: int = 0
    error: str | None = None
    usage: UsageTotals = field(default_factory=UsageTotals)
    model: str | None = None
    output: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)
    progress: ProgressRecord | None = None
    truncation: TruncationInfo | None = None
    artifact_paths: ArtifactPaths | None = None
    stderr: str = ""
    skipped: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "task": self.task,
            "exit_code": self.exit_code,
            "error": self.error,
            "usage": self.usage.to_dict(),
            "model": self.model,
            "output": self.output,
            "progress": self.progress.snapshot() if self.progress else None,
            "truncated": bool(self.truncation and self.truncation.truncated),
            "artifacts": self.artifact_paths.to_dict() if self.artifact_paths else None,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
        }


def skipped_result(agent: str) -> TaskResult:
    return TaskResult(
        agent=agent,
        task="(skipped)",
        exit_code=SKIPPED_EXIT_CODE,
        error="Skipped due to fail-fast",
        skipped=True,
    )


@dataclass(slots=True)
class TaskUpdate:
    """Throttled view of a running task handed to progress listeners."""

    text: str
    result: TaskResult
    progress: ProgressRecord


ProgressCallback = Callable[[TaskUpdate], None]


@dataclass(slots=True)
class OutputLimits:
    max_bytes: int
    max_lines: int


@dataclass(slots=True)
class TaskOptions:
    cwd: str | None = None
    index: int = 0
    run_id: str | None = None
    model_override: str | None = None
    cancel_event: asyncio.Event | None = None
    on_progress: ProgressCallback | None = None
    artifacts_dir: Path | None = None
    artifact_config: ArtifactConfig | None = None
    max_output: OutputLimits | None = None
    output_log_path: Path | None = None
