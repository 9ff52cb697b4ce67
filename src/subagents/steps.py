from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from subagents.errors import ConfigurationError

TASK_VARIABLE = "{task}"
PREVIOUS_VARIABLE = "{previous}"
CHAIN_DIR_VARIABLE = "{chain_dir}"
_VARIABLE_PATTERN = re.compile(r"\{(?:task|previous|chain_dir)\}")


@dataclass(slots=True)
class SequentialStep:
    """A single agent invocation.

    Override fields use ``None`` for "not set" and ``False`` for "disabled".
    """

    agent: str
    task: str | None = None
    cwd: str | None = None
    output: str | bool | None = None
    reads: list[str] | bool | None = None
    progress: bool | None = None
    model: str | None = None


@dataclass(slots=True)
class ParallelStep:
    parallel: list[SequentialStep] = field(default_factory=list)
    concurrency: int | None = None
    fail_fast: bool = False


ChainStep: TypeAlias = SequentialStep | ParallelStep


def is_parallel_step(step: ChainStep) -> bool:
    return isinstance(step, ParallelStep)


def is_sequential_step(step: ChainStep) -> bool:
    return isinstance(step, SequentialStep)


def step_agents(step: ChainStep) -> list[str]:
    if isinstance(step, ParallelStep):
        return [task.agent for task in step.parallel]
    return [step.agent]


def flatten_steps(steps: Iterable[ChainStep]) -> list[SequentialStep]:
    flat: list[SequentialStep] = []
    for step in steps:
        if isinstance(step, ParallelStep):
            flat.extend(step.parallel)
        else:
            flat.append(step)
    return flat


def chain_key(agent_names: Iterable[str]) -> str:
    return "->".join(agent_names)


def chain_agent_labels(steps: Iterable[ChainStep]) -> list[str]:
    labels: list[str] = []
    for step in steps:
        if isinstance(step, ParallelStep):
            labels.append("[" + "+".join(task.agent for task in step.parallel) + "]")
        else:
            labels.append(step.agent)
    return labels


def _override(data: Mapping[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is False:
        return False
    if value is True and key != "progress":
        return None
    return value


def _sequential_from_dict(data: Mapping[str, Any]) -> SequentialStep:
    agent = str(data.get("agent") or "").strip()
    if not agent:
        raise ConfigurationError("Chain step is missing an 'agent' field.")
    reads = _override(data, "reads")
    if reads not in (None, False):
        if isinstance(reads, str):
            reads = [item.strip() for item in reads.split(",") if item.strip()]
        else:
            reads = [str(item) for item in reads]
    progress = _override(data, "progress")
    return SequentialStep(
        agent=agent,
        task=data.get("task") or None,
        cwd=data.get("cwd") or None,
        output=_override(data, "output"),
        reads=reads,
        progress=bool(progress) if progress is not None else None,
        model=data.get("model") or None,
    )


def step_from_dict(data: Mapping[str, Any]) -> ChainStep:
    parallel = data.get("parallel")
    if isinstance(parallel, list):
        concurrency = data.get("concurrency")
        return ParallelStep(
            parallel=[_sequential_from_dict(item) for item in parallel],
            concurrency=int(concurrency) if concurrency is not None else None,
            fail_fast=bool(data.get("fail_fast", data.get("failFast", False))),
        )
    return _sequential_from_dict(data)


def steps_from_dicts(payload: Iterable[Mapping[str, Any]]) -> list[ChainStep]:
    return [step_from_dict(item) for item in payload]


def _sequential_to_dict(step: SequentialStep) -> dict[str, Any]:
    payload: dict[str, Any] = {"agent": step.agent}
    for key in ("task", "cwd", "output", "reads", "progress", "model"):
        value = getattr(step, key)
        if value is not None:
            payload[key] = list(value) if isinstance(value, list) else value
    return payload


def step_to_dict(step: ChainStep) -> dict[str, Any]:
    if isinstance(step, ParallelStep):
        payload: dict[str, Any] = {
            "parallel": [_sequential_to_dict(task) for task in step.parallel],
            "fail_fast": step.fail_fast,
        }
        if step.concurrency is not None:
            payload["concurrency"] = step.concurrency
        return payload
    return _sequential_to_dict(step)


# Per step: a template string for sequential steps, one string per task for
# parallel groups.
ResolvedTemplates: TypeAlias = list[str | list[str]]


def resolve_chain_templates(
    steps: list[ChainStep],
    saved_templates: Mapping[str, Mapping[str, str]] | None = None,
) -> ResolvedTemplates:
    """Resolve the task template of every step: inline > saved > default."""
    saved: Mapping[str, str] = {}
    if saved_templates:
        key = chain_key(agent for step in steps for agent in step_agents(step))
        saved = saved_templates.get(key) or {}

    templates: ResolvedTemplates = []
    for index, step in enumerate(steps):
        if isinstance(step, ParallelStep):
            templates.append([task.task or PREVIOUS_VARIABLE for task in step.parallel])
            continue
        if step.task:
            templates.append(step.task)
        elif saved.get(step.agent):
            templates.append(saved[step.agent])
        else:
            templates.append(TASK_VARIABLE if index == 0 else PREVIOUS_VARIABLE)
    return templates


def substitute_variables(template: str, *, task: str, previous: str, chain_dir: str) -> str:
    """Expand template variables in one pass; substituted text is never expanded again."""
    values = {TASK_VARIABLE: task, PREVIOUS_VARIABLE: previous, CHAIN_DIR_VARIABLE: chain_dir}
    return _VARIABLE_PATTERN.sub(lambda match: values[match.group(0)], template)
