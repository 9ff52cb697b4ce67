from __future__ import annotations

import os
import shutil
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from subagents.agents import AgentConfig, AgentRegistry
from subagents.steps import SequentialStep

PROGRESS_FILE_NAME = "progress.md"
PROGRESS_TEMPLATE = (
    "# Progress\n\n## Status\nIn Progress\n\n## Tasks\n\n## Files Changed\n\n## Notes\n"
)


@dataclass(frozen=True, slots=True)
class ResolvedBehavior:
    """Effective file-I/O behavior of one task; ``False`` means disabled."""

    output: str | bool = False
    reads: tuple[str, ...] | bool = False
    progress: bool = False


@dataclass(frozen=True, slots=True)
class StepOverrides:
    output: str | bool | None = None
    reads: Sequence[str] | bool | None = None
    progress: bool | None = None

    @classmethod
    def from_step(cls, step: SequentialStep) -> StepOverrides:
        return cls(output=step.output, reads=step.reads, progress=step.progress)


def _normalize_reads(reads: Sequence[str] | bool | None) -> tuple[str, ...] | bool:
    if not reads:
        return False
    if reads is True:
        return False
    return tuple(str(item) for item in reads)


def resolve_step_behavior(agent: AgentConfig, overrides: StepOverrides) -> ResolvedBehavior:
    """Resolve each field independently: override, then agent default, then disabled."""
    output = overrides.output if overrides.output is not None else agent.default_output
    reads = overrides.reads if overrides.reads is not None else agent.default_reads
    progress = overrides.progress if overrides.progress is not None else agent.default_progress
    return ResolvedBehavior(
        output=output or False,
        reads=_normalize_reads(reads),
        progress=bool(progress),
    )


def parallel_subdir(step_index: int, task_index: int, agent: str) -> str:
    return f"parallel-{step_index}/{task_index}-{agent}"


def resolve_parallel_behaviors(
    tasks: Sequence[SequentialStep],
    registry: AgentRegistry,
    step_index: int,
) -> list[ResolvedBehavior]:
    """Resolve behaviors for a parallel group, namespacing relative outputs per task."""
    behaviors: list[ResolvedBehavior] = []
    for task_index, task in enumerate(tasks):
        agent = registry.get(task.agent)
        subdir = parallel_subdir(step_index, task_index, task.agent)

        output: str | bool = False
        if task.output is not None:
            if task.output is False:
                output = False
            elif os.path.isabs(str(task.output)):
                output = str(task.output)
            else:
                output = f"{subdir}/{task.output}"
        elif agent.default_output:
            output = f"{subdir}/{agent.default_output}"

        base = resolve_step_behavior(
            agent, StepOverrides(reads=task.reads, progress=task.progress)
        )
        behaviors.append(ResolvedBehavior(output=output, reads=base.reads, progress=base.progress))
    return behaviors


def resolve_chain_path(file_path: str, chain_dir: str) -> str:
    if os.path.isabs(file_path):
        return file_path
    return f"{chain_dir}/{file_path}"


def build_chain_instructions(
    behavior: ResolvedBehavior,
    chain_dir: str,
    is_first_progress: bool,
    previous_summary: str | None = None,
) -> str:
    instructions: list[str] = []

    if previous_summary and previous_summary.strip():
        instructions.append(f"Previous step summary:\n\n{previous_summary.strip()}")

    if behavior.reads:
        files = ", ".join(resolve_chain_path(item, chain_dir) for item in behavior.reads)
        instructions.append(f"Read these files: {files}")

    if behavior.output:
        target = resolve_chain_path(str(behavior.output), chain_dir)
        instructions.append(f"Write your output to: {target}")

    if behavior.progress:
        progress_path = f"{chain_dir}/{PROGRESS_FILE_NAME}"
        if is_first_progress:
            instructions.append(f"Create and maintain: {progress_path}")
            instructions.append("Format: Status, Tasks (checkboxes), Files Changed, Notes")
        else:
            instructions.append(f"Read and update: {progress_path}")

    if not instructions:
        return ""
    return "\n\n---\n**Chain Instructions:**\n" + "\n".join(f"- {item}" for item in instructions)


def create_chain_dir(run_id: str, root: Path) -> Path:
    chain_dir = root / run_id
    chain_dir.mkdir(parents=True, exist_ok=True)
    return chain_dir


def remove_chain_dir(chain_dir: Path) -> None:
    shutil.rmtree(chain_dir, ignore_errors=True)


def cleanup_old_chain_dirs(root: Path, max_age_hours: float) -> list[Path]:
    if not root.is_dir():
        return []
    cutoff = time.time() - max_age_hours * 3600
    removed: list[Path] = []
    for entry in root.iterdir():
        try:
            if entry.is_dir() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry)
                removed.append(entry)
        except OSError as exc:
            logger.warning("Could not remove stale chain dir {}: {}", entry, exc)
    return removed


def create_parallel_dirs(chain_dir: Path, step_index: int, agents: Sequence[str]) -> list[Path]:
    paths: list[Path] = []
    for task_index, agent in enumerate(agents):
        subdir = chain_dir / f"parallel-{step_index}" / f"{task_index}-{agent}"
        subdir.mkdir(parents=True, exist_ok=True)
        paths.append(subdir)
    return paths


def write_progress_file(chain_dir: Path) -> Path:
    progress_path = chain_dir / PROGRESS_FILE_NAME
    progress_path.write_text(PROGRESS_TEMPLATE, encoding="utf-8")
    return progress_path


@dataclass(slots=True)
class ParallelTaskOutput:
    agent: str
    output: str
    exit_code: int
    error: str | None = None
    skipped: bool = False


def aggregate_parallel_outputs(results: Sequence[ParallelTaskOutput]) -> str:
    """Join parallel outputs under numbered headers so the next step can tell them apart."""
    sections: list[str] = []
    for index, result in enumerate(results):
        header = f"=== Parallel Task {index + 1} ({result.agent}) ==="
        body = result.output
        if result.skipped:
            body = "⚠️ SKIPPED"
        elif result.exit_code != 0:
            marker = f"⚠️ FAILED (exit code {result.exit_code})"
            if result.error:
                marker += f": {result.error}"
            body = f"{marker}\n{result.output}" if result.output.strip() else marker
        elif not result.output.strip():
            body = "⚠️ EMPTY OUTPUT"
        sections.append(f"{header}\n{body}")
    return "\n\n".join(sections)
