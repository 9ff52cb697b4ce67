from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, cast
from uuid import uuid4

from loguru import logger

from subagents.agents import AgentRegistry
from subagents.behavior import (
    ParallelTaskOutput,
    ResolvedBehavior,
    StepOverrides,
    aggregate_parallel_outputs,
    build_chain_instructions,
    cleanup_old_chain_dirs,
    create_chain_dir,
    create_parallel_dirs,
    remove_chain_dir,
    resolve_parallel_behaviors,
    resolve_step_behavior,
    write_progress_file,
)
from subagents.config import EngineConfig
from subagents.errors import EmptyChainError
from subagents.scheduler import is_real_failure, run_parallel
from subagents.steps import (
    PREVIOUS_VARIABLE,
    ChainStep,
    ParallelStep,
    SequentialStep,
    chain_agent_labels,
    flatten_steps,
    resolve_chain_templates,
    substitute_variables,
)
from subagents.workers.base import TaskWorker
from subagents.workers.events import final_output
from subagents.workers.models import (
    ArtifactConfig,
    ArtifactPaths,
    OutputLimits,
    ProgressRecord,
    TaskOptions,
    TaskResult,
    TaskUpdate,
)
from subagents.workers.process import ProcessWorker

ChainStatus = Literal["completed", "failed", "cancelled"]


@dataclass(slots=True)
class ChainRunContext:
    """Mutable state threaded through one chain run."""

    run_id: str
    chain_dir: Path
    original_task: str
    previous_output: str = ""
    progress_file_created: bool = False
    global_task_index: int = 0


@dataclass(slots=True)
class ChainUpdate:
    results: list[TaskResult]
    progress: list[ProgressRecord]
    chain_agents: list[str]
    total_steps: int
    current_step_index: int
    text: str


@dataclass(slots=True)
class ChainPreview:
    run_id: str
    chain_dir: Path
    original_task: str
    chain_agents: list[str]
    templates: list[str | list[str]]
    behaviors: list[ResolvedBehavior | None]


@dataclass(slots=True)
class ChainResult:
    status: ChainStatus
    results: list[TaskResult] = field(default_factory=list)
    chain_dir: Path | None = None
    summary: str = ""
    failed_step_index: int | None = None
    error: str | None = None
    progress: list[ProgressRecord] = field(default_factory=list)
    artifact_paths: list[ArtifactPaths] = field(default_factory=list)
    chain_agents: list[str] = field(default_factory=list)
    total_steps: int = 0

    @property
    def is_error(self) -> bool:
        return self.status == "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "chain_dir": str(self.chain_dir) if self.chain_dir else None,
            "summary": self.summary,
            "failed_step_index": self.failed_step_index,
            "error": self.error,
            "chain_agents": list(self.chain_agents),
            "total_steps": self.total_steps,
            "results": [result.to_dict() for result in self.results],
        }


class ChainHooks:
    """Observer for chain execution; every method is a no-op by default."""

    def on_chain_start(self, run_id: str, flat_steps: Sequence[SequentialStep]) -> None:
        return None

    def on_parallel_start(self, step_index: int, agents: Sequence[str]) -> None:
        return None

    def on_task_start(self, flat_index: int, agent: str) -> None:
        return None

    def on_task_end(self, flat_index: int, result: TaskResult) -> None:
        return None

    def task_output_path(self, flat_index: int) -> Path | None:
        return None

    def on_chain_end(self, result: ChainResult) -> None:
        return None


ConfirmCallback = Callable[[ChainPreview], bool | Awaitable[bool]]


@dataclass(slots=True)
class ChainOptions:
    task: str | None = None
    run_id: str | None = None
    cwd: str | None = None
    cancel_event: asyncio.Event | None = None
    on_progress: Callable[[ChainUpdate], None] | None = None
    saved_templates: Mapping[str, Mapping[str, str]] | None = None
    artifacts_dir: Path | None = None
    artifact_config: ArtifactConfig | None = None
    max_output: OutputLimits | None = None
    confirm: ConfirmCallback | None = None
    hooks: ChainHooks | None = None
    config: EngineConfig | None = None


def _original_task(steps: Sequence[ChainStep], options: ChainOptions) -> str:
    if options.task and options.task.strip():
        return options.task
    first = steps[0]
    if isinstance(first, ParallelStep):
        return (first.parallel[0].task or "") if first.parallel else ""
    return first.task or ""


def _step_output(result: TaskResult) -> str:
    return final_output(result.messages) or result.output


def build_chain_summary(
    steps: Sequence[ChainStep],
    results: Sequence[TaskResult],
    chain_dir: Path,
    status: ChainStatus,
    *,
    failed_step_index: int | None = None,
    error: str | None = None,
) -> str:
    labels = chain_agent_labels(steps)
    flow = " -> ".join(labels)
    lines: list[str] = []
    if status == "failed" and failed_step_index is not None:
        label = labels[failed_step_index] if failed_step_index < len(labels) else "?"
        lines.append(f"Chain failed at step {failed_step_index + 1} ({label}): {flow}")
        if error:
            lines.extend(["", error])
    else:
        lines.append(f"Chain completed: {flow} ({len(steps)} steps)")
        if results:
            output = _step_output(results[-1]).strip()
            if output:
                lines.extend(["", output])
    lines.extend(["", f"Chain directory: {chain_dir}"])
    return "\n".join(lines)


async def _confirm(callback: ConfirmCallback, preview: ChainPreview) -> bool:
    decision = callback(preview)
    if inspect.isawaitable(decision):
        decision = await decision
    return bool(decision)


class _ChainRun:
    def __init__(
        self,
        steps: list[ChainStep],
        registry: AgentRegistry,
        options: ChainOptions,
        worker: TaskWorker,
        context: ChainRunContext,
        templates: list[str | list[str]],
    ) -> None:
        self.steps = steps
        self.registry = registry
        self.options = options
        self.worker = worker
        self.context = context
        self.templates = templates
        self.config = options.config or EngineConfig.default()
        self.hooks = options.hooks or ChainHooks()
        self.chain_agents = chain_agent_labels(steps)
        self.results: list[TaskResult] = []
        self.progress: list[ProgressRecord] = []
        self.artifact_paths: list[ArtifactPaths] = []

    def _task_options(self, flat_index: int, step_index: int, cwd: str | None) -> TaskOptions:
        on_progress = None
        if self.options.on_progress is not None:
            listener = self.options.on_progress

            def on_progress(update: TaskUpdate) -> None:
                listener(
                    ChainUpdate(
                        results=[*self.results, update.result],
                        progress=[*self.progress, update.progress],
                        chain_agents=self.chain_agents,
                        total_steps=len(self.steps),
                        current_step_index=step_index,
                        text=update.text,
                    )
                )

        return TaskOptions(
            cwd=cwd or self.options.cwd,
            index=flat_index,
            run_id=self.context.run_id,
            cancel_event=self.options.cancel_event,
            on_progress=on_progress,
            artifacts_dir=self.options.artifacts_dir,
            artifact_config=self.options.artifact_config,
            max_output=self.options.max_output,
            output_log_path=self.hooks.task_output_path(flat_index),
        )

    def _render(self, template: str, behavior: ResolvedBehavior, is_first_progress: bool) -> str:
        chain_dir = str(self.context.chain_dir)
        has_previous = PREVIOUS_VARIABLE in template
        text = substitute_variables(
            template,
            task=self.context.original_task,
            previous=self.context.previous_output,
            chain_dir=chain_dir,
        )
        return text + build_chain_instructions(
            behavior,
            chain_dir,
            is_first_progress,
            None if has_previous else self.context.previous_output,
        )

    async def _run_leaf(
        self, step: SequentialStep, task_text: str, flat_index: int, step_index: int
    ) -> TaskResult:
        self.hooks.on_task_start(flat_index, step.agent)
        agent = self.registry.get(step.agent)
        options = self._task_options(flat_index, step_index, step.cwd)
        options.model_override = step.model
        result = await self.worker.run_task(agent, task_text, options)
        self.hooks.on_task_end(flat_index, result)
        return result

    def _collect(self, result: TaskResult) -> None:
        self.results.append(result)
        if result.progress is not None:
            self.progress.append(result.progress)
        if result.artifact_paths is not None:
            self.artifact_paths.append(result.artifact_paths)

    def _finish(
        self,
        status: ChainStatus,
        *,
        failed_step_index: int | None = None,
        error: str | None = None,
    ) -> ChainResult:
        summary = build_chain_summary(
            self.steps,
            self.results,
            self.context.chain_dir,
            status,
            failed_step_index=failed_step_index,
            error=error,
        )
        return ChainResult(
            status=status,
            results=self.results,
            chain_dir=self.context.chain_dir,
            summary=summary,
            failed_step_index=failed_step_index,
            error=error,
            progress=self.progress,
            artifact_paths=self.artifact_paths,
            chain_agents=self.chain_agents,
            total_steps=len(self.steps),
        )

    async def _run_sequential(self, step: SequentialStep, step_index: int) -> ChainResult | None:
        template = cast(str, self.templates[step_index])
        agent = self.registry.get(step.agent)
        behavior = resolve_step_behavior(agent, StepOverrides.from_step(step))
        is_first_progress = behavior.progress and not self.context.progress_file_created
        if is_first_progress:
            self.context.progress_file_created = True

        task_text = self._render(template, behavior, is_first_progress)
        flat_index = self.context.global_task_index
        result = await self._run_leaf(step, task_text, flat_index, step_index)
        self.context.global_task_index += 1
        self._collect(result)

        if result.exit_code != 0:
            logger.info(
                "Chain {} failed at step {} ({})", self.context.run_id, step_index, step.agent
            )
            return self._finish(
                "failed",
                failed_step_index=step_index,
                error=result.error or "Chain failed",
            )
        self.context.previous_output = _step_output(result)
        return None

    async def _run_parallel(self, step: ParallelStep, step_index: int) -> ChainResult | None:
        if not step.parallel:
            logger.debug("Skipping empty parallel group at step {}", step_index)
            return None
        templates = cast(list[str], self.templates[step_index])
        agents = [task.agent for task in step.parallel]
        create_parallel_dirs(self.context.chain_dir, step_index, agents)
        behaviors = resolve_parallel_behaviors(step.parallel, self.registry, step_index)
        needs_progress = any(behavior.progress for behavior in behaviors)
        if needs_progress and not self.context.progress_file_created:
            write_progress_file(self.context.chain_dir)
            self.context.progress_file_created = True

        self.hooks.on_parallel_start(step_index, agents)
        base_index = self.context.global_task_index

        async def run_one(task: SequentialStep, task_index: int) -> TaskResult:
            template = templates[task_index] if task_index < len(templates) else PREVIOUS_VARIABLE
            task_text = self._render(template, behaviors[task_index], False)
            return await self._run_leaf(task, task_text, base_index + task_index, step_index)

        limit = step.concurrency or self.config.chain.max_concurrency
        results = await run_parallel(step.parallel, run_one, limit=limit, fail_fast=step.fail_fast)
        self.context.global_task_index += len(step.parallel)
        for task_index, result in enumerate(results):
            if result.skipped:
                self.hooks.on_task_end(base_index + task_index, result)
            self._collect(result)

        failures = [
            (task_index, result)
            for task_index, result in enumerate(results)
            if is_real_failure(result)
        ]
        if failures:
            details = "\n".join(
                f"- Task {task_index + 1} ({result.agent}): {result.error or 'failed'}"
                for task_index, result in failures
            )
            return self._finish(
                "failed",
                failed_step_index=step_index,
                error=f"Parallel step {step_index + 1} failed:\n{details}",
            )

        self.context.previous_output = aggregate_parallel_outputs(
            [
                ParallelTaskOutput(
                    agent=result.agent,
                    output=_step_output(result),
                    exit_code=result.exit_code,
                    error=result.error,
                    skipped=result.skipped,
                )
                for result in results
            ]
        )
        return None

    async def execute(self) -> ChainResult:
        for step_index, step in enumerate(self.steps):
            if isinstance(step, ParallelStep):
                outcome = await self._run_parallel(step, step_index)
            else:
                outcome = await self._run_sequential(step, step_index)
            if outcome is not None:
                return outcome
        return self._finish("completed")


async def run_chain(
    steps: Sequence[ChainStep],
    registry: AgentRegistry,
    options: ChainOptions | None = None,
    worker: TaskWorker | None = None,
) -> ChainResult:
    """Run ``steps`` in order, feeding each step's output to the next as ``{previous}``."""
    options = options or ChainOptions()
    steps = list(steps)
    if not steps:
        raise EmptyChainError("Chain has no steps.")
    flat = flatten_steps(steps)
    for leaf in flat:
        registry.get(leaf.agent)
    original_task = _original_task(steps, options)
    if not original_task.strip():
        raise EmptyChainError("The first chain step needs a task.")

    config = options.config or EngineConfig.default()
    worker = worker or ProcessWorker(config.worker)
    root = config.chain.resolved_runs_dir()
    cleanup_old_chain_dirs(root, config.chain.dir_max_age_hours)
    run_id = options.run_id or uuid4().hex[:8]
    chain_dir = create_chain_dir(run_id, root)
    templates = resolve_chain_templates(steps, options.saved_templates)

    if options.confirm is not None:
        behaviors: list[ResolvedBehavior | None] = [
            None
            if isinstance(step, ParallelStep)
            else resolve_step_behavior(registry.get(step.agent), StepOverrides.from_step(step))
            for step in steps
        ]
        preview = ChainPreview(
            run_id=run_id,
            chain_dir=chain_dir,
            original_task=original_task,
            chain_agents=chain_agent_labels(steps),
            templates=templates,
            behaviors=behaviors,
        )
        if not await _confirm(options.confirm, preview):
            remove_chain_dir(chain_dir)
            logger.info("Chain {} cancelled before start", run_id)
            return ChainResult(
                status="cancelled",
                summary="Chain cancelled",
                chain_agents=preview.chain_agents,
                total_steps=len(steps),
            )

    context = ChainRunContext(run_id=run_id, chain_dir=chain_dir, original_task=original_task)
    hooks = options.hooks or ChainHooks()
    hooks.on_chain_start(run_id, flat)
    logger.info("Chain {} started: {}", run_id, " -> ".join(chain_agent_labels(steps)))
    run = _ChainRun(steps, registry, options, worker, context, templates)
    result = await run.execute()
    hooks.on_chain_end(result)
    return result
