from __future__ import annotations

import asyncio
import json
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from loguru import logger

from subagents.agents import AgentRegistry, load_agents
from subagents.chain import ChainOptions, ChainUpdate, run_chain
from subagents.config import load_config, save_config
from subagents.errors import ConfigurationError, SubagentError
from subagents.state import (
    execute_async_run,
    launch_async_run,
    read_async_events,
    read_async_status,
    resolve_run_steps,
)
from subagents.state.launcher import RUNNER_LOG, AsyncRunConfig
from subagents.steps import ChainStep, steps_from_dicts
from subagents.workers import OutputLimits, ProcessWorker, TaskOptions, TaskUpdate, run_task

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
    "{message}"
)


def _configure_logging(level: str = "WARNING") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


@dataclass(slots=True)
class ChainFile:
    steps: list[ChainStep]
    task: str | None
    agents: list[dict[str, Any]]
    saved_templates: dict[str, dict[str, str]] | None


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _read_structured(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot read {path}: {exc}") from exc
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return tomllib.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Cannot parse {path}: {exc}") from exc


def _load_chain_file(path: Path) -> ChainFile:
    data = _read_structured(path)
    if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
        raise click.ClickException(f"Chain file {path} must define a 'steps' list.")
    agents = data.get("agents") or []
    templates = data.get("templates")
    try:
        steps = steps_from_dicts(data["steps"])
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    return ChainFile(
        steps=steps,
        task=data.get("task"),
        agents=[item for item in agents if isinstance(item, dict)],
        saved_templates=templates if isinstance(templates, dict) else None,
    )


def _load_registry(
    agents_value: str | None, inline: list[dict[str, Any]] | None = None
) -> AgentRegistry:
    registry = AgentRegistry()
    try:
        if agents_value:
            registry = load_agents(Path(agents_value))
        if inline:
            for agent in AgentRegistry.from_dicts(inline):
                registry.agents.setdefault(agent.name, agent)
    except (OSError, ValueError, SubagentError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not registry.agents:
        raise click.ClickException("No agents defined. Pass --agents FILE.")
    return registry


def _echo_task_progress(update: TaskUpdate) -> None:
    progress = update.progress
    tool = progress.current_tool or "-"
    click.echo(
        f"[{progress.agent}] tools={progress.tool_count} tokens={progress.tokens} current={tool}",
        err=True,
    )


def _echo_chain_progress(update: ChainUpdate) -> None:
    if update.progress:
        _echo_task_progress(
            TaskUpdate(text=update.text, result=update.results[-1], progress=update.progress[-1])
        )


@click.group()
@click.option("--log-level", default="WARNING", show_default=True)
def cli(log_level: str) -> None:
    """Subagent execution engine CLI."""
    _configure_logging(log_level)


@cli.command("init")
@click.option("--config", "config_value", default="subagents.toml", show_default=True)
def init_command(config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Worker binary: {config.worker.binary}")


@cli.command("run")
@click.argument("agent")
@click.argument("task")
@click.option("--agents", "agents_value", required=True, help="Agent definitions (TOML/JSON).")
@click.option("--cwd", default=None)
@click.option("--model", default=None)
@click.option("--async", "run_async", is_flag=True, default=False)
@click.option("--progress", "show_progress", is_flag=True, default=False)
@click.option("--config", "config_value", default="subagents.toml", show_default=True)
def run_command(
    agent: str,
    task: str,
    agents_value: str,
    cwd: str | None,
    model: str | None,
    run_async: bool,
    show_progress: bool,
    config_value: str,
) -> None:
    config = load_config(_resolve_config_path(config_value))
    registry = _load_registry(agents_value)
    try:
        if run_async:
            steps = resolve_run_steps(agent=agent, task=task)
            if model:
                steps[0].model = model  # type: ignore[union-attr]
            launch = launch_async_run(
                steps, registry, ChainOptions(task=task, cwd=cwd, config=config)
            )
            click.echo(f"Run ID: {launch.run_id}")
            click.echo(f"Run directory: {launch.run_dir}")
            return
        result = asyncio.run(
            run_task(
                registry,
                agent,
                task,
                TaskOptions(
                    cwd=cwd,
                    model_override=model,
                    on_progress=_echo_task_progress if show_progress else None,
                    max_output=OutputLimits(config.output.max_bytes, config.output.max_lines),
                ),
                worker=ProcessWorker(config.worker),
            )
        )
    except SubagentError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(result.output)
    if result.exit_code != 0:
        raise click.ClickException(
            f"{agent} failed (exit {result.exit_code}): {result.error or 'no error output'}"
        )


@cli.command("chain")
@click.argument("chain_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--agents", "agents_value", default=None, help="Agent definitions (TOML/JSON).")
@click.option("--task", "task_text", default=None)
@click.option("--cwd", default=None)
@click.option("--async", "run_async", is_flag=True, default=False)
@click.option("--progress", "show_progress", is_flag=True, default=False)
@click.option("--config", "config_value", default="subagents.toml", show_default=True)
def chain_command(
    chain_file: Path,
    agents_value: str | None,
    task_text: str | None,
    cwd: str | None,
    run_async: bool,
    show_progress: bool,
    config_value: str,
) -> None:
    config = load_config(_resolve_config_path(config_value))
    definition = _load_chain_file(chain_file)
    registry = _load_registry(agents_value, definition.agents)
    options = ChainOptions(
        task=task_text or definition.task,
        cwd=cwd,
        saved_templates=definition.saved_templates,
        on_progress=_echo_chain_progress if show_progress else None,
        max_output=OutputLimits(config.output.max_bytes, config.output.max_lines),
        config=config,
    )
    try:
        steps = resolve_run_steps(chain=definition.steps)
        if run_async:
            launch = launch_async_run(steps, registry, options)
            click.echo(f"Run ID: {launch.run_id}")
            click.echo(f"Run directory: {launch.run_dir}")
            return
        result = asyncio.run(run_chain(steps, registry, options))
    except SubagentError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(result.summary)
    if result.is_error:
        raise click.ClickException(result.error or "Chain failed")


@cli.command("status")
@click.argument("run_ref")
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default="subagents.toml", show_default=True)
def status_command(run_ref: str, show_events: bool, config_value: str) -> None:
    config = load_config(_resolve_config_path(config_value))
    root = config.async_runs.resolved_runs_dir()
    record = read_async_status(run_ref, root)
    if record is None:
        raise click.ClickException(f"Run not found: {run_ref}")
    payload: dict[str, Any] = {"status": record.to_dict()}
    if show_events:
        run_dir = Path(run_ref) if Path(run_ref).is_dir() else root / run_ref
        payload["events"] = read_async_events(run_dir)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("runner", hidden=True)
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def runner_command(config_path: Path) -> None:
    try:
        run_dir = Path(AsyncRunConfig.load(config_path).run_dir)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    # stdout and stderr already go to runner.log; keep a single sink
    logger.remove()
    logger.add(run_dir / RUNNER_LOG, level="DEBUG", format=LOG_FORMAT)
    try:
        store = asyncio.run(execute_async_run(config_path))
    except SubagentError as exc:
        raise click.ClickException(str(exc)) from exc
    if store.record.state != "completed":
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
