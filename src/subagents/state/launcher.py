from __future__ import annotations

import asyncio
import json
import os
import signal
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger

from subagents.agents import AgentRegistry
from subagents.chain import ChainOptions, run_chain
from subagents.config import EngineConfig
from subagents.errors import (
    AmbiguousModeError,
    ConfigurationError,
    EmptyChainError,
    RunStateError,
)
from subagents.state.run_store import AsyncRunStore, RunMode, determine_mode
from subagents.steps import (
    ChainStep,
    SequentialStep,
    flatten_steps,
    step_to_dict,
    steps_from_dicts,
)
from subagents.workers.base import TaskWorker
from subagents.workers.models import OutputLimits, TaskOptions
from subagents.workers.process import ProcessWorker

CONFIG_FILE = "config.json"
RUNNER_LOG = "runner.log"


def resolve_run_steps(
    *,
    agent: str | None = None,
    task: str | None = None,
    chain: Sequence[ChainStep] | None = None,
) -> list[ChainStep]:
    """Turn a single-task or chain request into the step list both modes share."""
    if agent and chain:
        raise AmbiguousModeError("Provide either a single agent/task or a chain, not both.")
    if chain:
        return list(chain)
    if agent:
        return [SequentialStep(agent=agent, task=task)]
    if chain is not None:
        raise EmptyChainError("Chain has no steps.")
    raise ConfigurationError("Nothing to run: provide an agent and task or a chain.")


@dataclass(slots=True)
class AsyncRunConfig:
    run_id: str
    run_dir: str
    mode: RunMode
    steps: list[dict[str, Any]]
    agents: list[dict[str, Any]]
    engine: dict[str, Any] = field(default_factory=dict)
    task: str | None = None
    cwd: str | None = None
    saved_templates: dict[str, dict[str, str]] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "runDir": self.run_dir,
            "mode": self.mode,
            "steps": self.steps,
            "agents": self.agents,
            "engine": self.engine,
            "task": self.task,
            "cwd": self.cwd,
            "savedTemplates": self.saved_templates,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AsyncRunConfig:
        return cls(
            run_id=str(data["runId"]),
            run_dir=str(data["runDir"]),
            mode=data.get("mode", "chain"),
            steps=list(data.get("steps", [])),
            agents=list(data.get("agents", [])),
            engine=dict(data.get("engine") or {}),
            task=data.get("task"),
            cwd=data.get("cwd"),
            saved_templates=data.get("savedTemplates"),
        )

    @classmethod
    def load(cls, path: Path) -> AsyncRunConfig:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Unreadable run config {path}: {exc}") from exc
        return cls.from_dict(data)


@dataclass(slots=True)
class AsyncLaunch:
    run_id: str
    run_dir: Path
    pid: int


def _runner_command(config_path: Path) -> list[str]:
    return [sys.executable, "-m", "subagents", "runner", str(config_path)]


def launch_async_run(
    steps: Sequence[ChainStep],
    registry: AgentRegistry,
    options: ChainOptions | None = None,
) -> AsyncLaunch:
    """Persist the run and hand it to a detached ``subagents runner`` process."""
    options = options or ChainOptions()
    steps = list(steps)
    if not steps:
        raise EmptyChainError("Chain has no steps.")
    for leaf in flatten_steps(steps):
        registry.get(leaf.agent)

    config = options.config or EngineConfig.default()
    run_id = options.run_id or uuid4().hex[:8]
    run_dir = config.async_runs.resolved_runs_dir() / run_id
    store = AsyncRunStore.create(run_dir, run_id, steps, cwd=options.cwd)

    run_config = AsyncRunConfig(
        run_id=run_id,
        run_dir=str(run_dir),
        mode=determine_mode(steps),
        steps=[step_to_dict(step) for step in steps],
        agents=registry.to_dicts(),
        engine=config.to_dict(),
        task=options.task,
        cwd=options.cwd,
        saved_templates=(
            {key: dict(value) for key, value in options.saved_templates.items()}
            if options.saved_templates
            else None
        ),
    )
    config_path = run_dir / CONFIG_FILE
    config_path.write_text(
        json.dumps(run_config.to_dict(), ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
    )

    with (run_dir / RUNNER_LOG).open("ab") as log_handle:
        process = subprocess.Popen(
            _runner_command(config_path),
            cwd=options.cwd,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            env=dict(os.environ),
        )
    store.record.pid = process.pid
    store.save()
    logger.info("Launched async run {} (pid {}) in {}", run_id, process.pid, run_dir)
    return AsyncLaunch(run_id=run_id, run_dir=run_dir, pid=process.pid)


async def _run_single(
    store: AsyncRunStore,
    step: SequentialStep,
    registry: AgentRegistry,
    worker: TaskWorker,
    config: EngineConfig,
    run_config: AsyncRunConfig,
    cancel_event: asyncio.Event,
) -> None:
    agent = registry.get(step.agent)
    task = step.task or run_config.task or ""
    store.mark_started([step])
    store.on_task_start(0, step.agent)
    result = await worker.run_task(
        agent,
        task,
        TaskOptions(
            cwd=step.cwd or run_config.cwd,
            index=0,
            run_id=run_config.run_id,
            model_override=step.model,
            cancel_event=cancel_event,
            max_output=OutputLimits(config.output.max_bytes, config.output.max_lines),
            output_log_path=store.task_output_path(0),
        ),
    )
    store.on_task_end(0, result)
    if store.cancel_requested:
        state = "cancelled"
    else:
        state = "completed" if result.exit_code == 0 else "failed"
    store.finish(state, error=result.error, result=result.to_dict())


async def execute_async_run(config_path: Path, worker: TaskWorker | None = None) -> AsyncRunStore:
    """Body of the detached runner: execute the persisted request and record its outcome."""
    run_config = AsyncRunConfig.load(config_path)
    run_dir = Path(run_config.run_dir)
    store = AsyncRunStore.open(run_dir)
    config = EngineConfig.from_dict(run_config.engine)
    worker = worker or ProcessWorker(config.worker)
    cancel_event = asyncio.Event()

    def request_cancel() -> None:
        store.cancel_requested = True
        cancel_event.set()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, request_cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler unavailable; run {} is not cancellable", run_config.run_id)

    try:
        registry = AgentRegistry.from_dicts(run_config.agents)
        steps = steps_from_dicts(run_config.steps)
        single = len(steps) == 1 and isinstance(steps[0], SequentialStep)
        if run_config.mode == "single" and single:
            await _run_single(store, steps[0], registry, worker, config, run_config, cancel_event)
        else:
            await run_chain(
                steps,
                registry,
                ChainOptions(
                    task=run_config.task,
                    run_id=run_config.run_id,
                    cwd=run_config.cwd,
                    cancel_event=cancel_event,
                    saved_templates=run_config.saved_templates,
                    max_output=OutputLimits(config.output.max_bytes, config.output.max_lines),
                    hooks=store,
                    config=config,
                ),
                worker=worker,
            )
    except ConfigurationError as exc:
        logger.error("Async run {} rejected: {}", run_config.run_id, exc)
        store.finish("failed", error=str(exc))
        raise
    except Exception as exc:
        logger.exception("Async run {} crashed", run_config.run_id)
        try:
            store.abort(f"{type(exc).__name__}: {exc}")
        except RunStateError as state_exc:
            logger.error("Could not record failure of run {}: {}", run_config.run_id, state_exc)
        raise
    finally:
        try:
            loop.remove_signal_handler(signal.SIGTERM)
        except (NotImplementedError, RuntimeError):
            pass
    logger.info("Async run {} finished: {}", run_config.run_id, store.record.state)
    return store
