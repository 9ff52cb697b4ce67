from __future__ import annotations

import copy
import json
import os
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from loguru import logger

from subagents.chain import ChainHooks, ChainResult
from subagents.errors import RunStateError
from subagents.steps import ChainStep, ParallelStep, SequentialStep, flatten_steps
from subagents.workers.models import TaskResult

RunState = Literal["pending", "running", "completed", "failed", "cancelled"]
RunMode = Literal["single", "chain"]
StepState = Literal["pending", "running", "completed", "failed", "skipped"]

STATUS_FILE = "status.json"
EVENTS_FILE = "events.jsonl"
RESULT_FILE = "result.json"
EVENT_PREFIX = "subagent."


def now_ms() -> int:
    return int(time.time() * 1000)


def determine_mode(steps: Sequence[ChainStep]) -> RunMode:
    if any(isinstance(step, ParallelStep) for step in steps):
        return "chain"
    return "chain" if len(flatten_steps(steps)) > 1 else "single"


@dataclass(slots=True)
class FlatStepStatus:
    index: int
    agent: str
    status: StepState = "pending"
    started_at: int | None = None
    finished_at: int | None = None
    exit_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "agent": self.agent,
            "status": self.status,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "exitCode": self.exit_code,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int) -> FlatStepStatus:
        return cls(
            index=int(data.get("index", index)),
            agent=str(data.get("agent", "")),
            status=data.get("status", "pending"),
            started_at=data.get("startedAt"),
            finished_at=data.get("finishedAt"),
            exit_code=data.get("exitCode"),
            error=data.get("error"),
        )


@dataclass(slots=True)
class AsyncRunRecord:
    run_id: str
    state: RunState = "pending"
    mode: RunMode = "single"
    steps: list[FlatStepStatus] = field(default_factory=list)
    started_at: int = field(default_factory=now_ms)
    last_update: int = field(default_factory=now_ms)
    cwd: str | None = None
    chain_dir: str | None = None
    error: str | None = None
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "state": self.state,
            "mode": self.mode,
            "steps": [step.to_dict() for step in self.steps],
            "startedAt": self.started_at,
            "lastUpdate": self.last_update,
            "cwd": self.cwd,
            "chainDir": self.chain_dir,
            "error": self.error,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AsyncRunRecord:
        steps = data.get("steps") or []
        started_at = data.get("startedAt") or 0
        return cls(
            run_id=str(data.get("runId", "")),
            state=data.get("state", "pending"),
            mode=data.get("mode", "single"),
            steps=[
                FlatStepStatus.from_dict(item, index)
                for index, item in enumerate(steps)
                if isinstance(item, dict)
            ],
            started_at=int(started_at),
            last_update=int(data.get("lastUpdate") or started_at),
            cwd=data.get("cwd"),
            chain_dir=data.get("chainDir"),
            error=data.get("error"),
            pid=data.get("pid"),
        )

    @property
    def current_step(self) -> FlatStepStatus | None:
        for step in self.steps:
            if step.status == "running":
                return step
        return None


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise RunStateError(f"Could not write {path}: {exc}") from exc


class AsyncRunStore(ChainHooks):
    """Persists one background run as ``status.json`` plus an append-only event log."""

    def __init__(self, run_dir: Path, record: AsyncRunRecord) -> None:
        self.run_dir = run_dir
        self.record = record
        self.cancel_requested = False

    @property
    def status_path(self) -> Path:
        return self.run_dir / STATUS_FILE

    @property
    def events_path(self) -> Path:
        return self.run_dir / EVENTS_FILE

    @property
    def result_path(self) -> Path:
        return self.run_dir / RESULT_FILE

    @classmethod
    def create(
        cls,
        run_dir: Path,
        run_id: str,
        steps: Sequence[ChainStep],
        *,
        cwd: str | None = None,
    ) -> AsyncRunStore:
        run_dir.mkdir(parents=True, exist_ok=True)
        record = AsyncRunRecord(
            run_id=run_id,
            mode=determine_mode(steps),
            steps=[
                FlatStepStatus(index=index, agent=step.agent)
                for index, step in enumerate(flatten_steps(steps))
            ],
            cwd=cwd,
        )
        store = cls(run_dir, record)
        store.save()
        return store

    @classmethod
    def open(cls, run_dir: Path) -> AsyncRunStore:
        record = read_async_status(run_dir)
        if record is None:
            raise RunStateError(f"No run record in {run_dir}")
        return cls(run_dir, record)

    def save(self) -> None:
        self.record.last_update = now_ms()
        _STATUS_CACHE.pop(self.status_path, None)
        write_json_atomic(self.status_path, self.record.to_dict())

    def append_event(self, name: str, **fields: Any) -> None:
        payload = {"type": f"{EVENT_PREFIX}{name}", "ts": now_ms(), "runId": self.record.run_id}
        payload.update(fields)
        try:
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            raise RunStateError(f"Could not append to {self.events_path}: {exc}") from exc

    def _step(self, flat_index: int) -> FlatStepStatus | None:
        if 0 <= flat_index < len(self.record.steps):
            return self.record.steps[flat_index]
        logger.warning("Run {} has no flat step {}", self.record.run_id, flat_index)
        return None

    def mark_started(self, flat_steps: Sequence[SequentialStep]) -> None:
        self.record.state = "running"
        self.record.pid = self.record.pid or os.getpid()
        self.save()
        self.append_event(
            "run.started",
            mode=self.record.mode,
            agents=[step.agent for step in flat_steps],
            steps=len(flat_steps),
        )

    def finish(
        self,
        state: RunState,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> None:
        self.record.state = state
        self.record.error = error
        self.save()
        event_name = {"completed": "run.completed", "cancelled": "run.cancelled"}.get(
            state, "run.failed"
        )
        fields: dict[str, Any] = {}
        if error:
            fields["error"] = error
        self.append_event(event_name, **fields)
        if result is not None:
            write_json_atomic(self.result_path, result)

    def abort(self, error: str) -> None:
        """Close out a run whose body raised; leaves still running are marked failed."""
        finished_at = now_ms()
        for step in self.record.steps:
            if step.status == "running":
                step.status = "failed"
                step.finished_at = finished_at
                step.error = error
        self.finish("failed", error=error)

    def on_chain_start(self, run_id: str, flat_steps: Sequence[SequentialStep]) -> None:
        self.mark_started(flat_steps)

    def on_parallel_start(self, step_index: int, agents: Sequence[str]) -> None:
        self.append_event(
            "parallel.started", stepIndex=step_index, agents=list(agents), count=len(agents)
        )

    def on_task_start(self, flat_index: int, agent: str) -> None:
        step = self._step(flat_index)
        if step is not None:
            step.status = "running"
            step.started_at = now_ms()
            self.save()
        self.append_event("step.started", index=flat_index, agent=agent)

    def on_task_end(self, flat_index: int, result: TaskResult) -> None:
        if result.skipped:
            status: StepState = "skipped"
        else:
            status = "completed" if result.exit_code == 0 else "failed"
        step = self._step(flat_index)
        if step is not None:
            step.status = status
            step.finished_at = now_ms()
            step.exit_code = result.exit_code
            step.error = result.error
            self.save()
        self.append_event(
            f"step.{status}",
            index=flat_index,
            agent=result.agent,
            exitCode=result.exit_code,
        )

    def task_output_path(self, flat_index: int) -> Path | None:
        return self.run_dir / f"output-{flat_index}.log"

    def on_chain_end(self, result: ChainResult) -> None:
        self.record.chain_dir = str(result.chain_dir) if result.chain_dir else None
        state: RunState = result.status
        if self.cancel_requested and state == "failed":
            state = "cancelled"
        self.finish(state, error=result.error, result=result.to_dict())


STATUS_CACHE_SIZE = 64
_STATUS_CACHE: dict[Path, tuple[tuple[int, int], AsyncRunRecord]] = {}


def resolve_run_dir(run_id_or_dir: str | Path, root: Path | None = None) -> Path:
    candidate = Path(run_id_or_dir).expanduser()
    if candidate.is_dir() or root is None:
        return candidate
    return root / str(run_id_or_dir)


def read_async_status(run_id_or_dir: str | Path, root: Path | None = None) -> AsyncRunRecord | None:
    """Load a copy of a run record, reusing the parsed one while ``status.json`` is unchanged."""
    status_path = resolve_run_dir(run_id_or_dir, root) / STATUS_FILE
    try:
        stat = status_path.stat()
    except OSError:
        return None
    cached = _STATUS_CACHE.get(status_path)
    stamp = (stat.st_mtime_ns, stat.st_size)
    if cached is not None and cached[0] == stamp:
        return copy.deepcopy(cached[1])
    try:
        data = json.loads(status_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Unreadable run status {}: {}", status_path, exc)
        return None
    if not isinstance(data, dict):
        return None
    record = AsyncRunRecord.from_dict(data)
    _STATUS_CACHE.pop(status_path, None)
    while len(_STATUS_CACHE) >= STATUS_CACHE_SIZE:
        del _STATUS_CACHE[next(iter(_STATUS_CACHE))]
    _STATUS_CACHE[status_path] = (stamp, record)
    return copy.deepcopy(record)


def read_async_events(run_dir: Path) -> list[dict[str, Any]]:
    events_path = run_dir / EVENTS_FILE
    if not events_path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in events_path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events
