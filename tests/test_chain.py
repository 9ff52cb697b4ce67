import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest

from subagents.agents import AgentConfig, AgentRegistry
from subagents.chain import ChainHooks, ChainOptions, ChainPreview, ChainResult, run_chain
from subagents.config import EngineConfig
from subagents.errors import EmptyChainError, UnknownAgentError
from subagents.steps import ParallelStep, SequentialStep
from subagents.workers.base import TaskWorker
from subagents.workers.models import ProgressRecord, TaskOptions, TaskResult


class FakeWorker(TaskWorker):
    """Echoes the task back, failing for agents listed in ``failing``."""

    def __init__(self, failing: Sequence[str] = (), outputs: dict[str, str] | None = None) -> None:
        self.failing = set(failing)
        self.outputs = outputs or {}
        self.calls: list[tuple[str, str, TaskOptions]] = []
        self.observed_progress_file: list[bool] = []

    async def run_task(self, agent: AgentConfig, task: str, options: TaskOptions) -> TaskResult:
        self.calls.append((agent.name, task, options))
        await asyncio.sleep(0)
        output = self.outputs.get(agent.name, f"{agent.name} output")
        if agent.name in self.failing:
            return TaskResult(
                agent=agent.name,
                task=task,
                exit_code=2,
                error=f"{agent.name} exploded",
                progress=ProgressRecord(index=options.index, agent=agent.name, status="failed"),
            )
        message = {"role": "assistant", "content": [{"type": "text", "text": output}]}
        return TaskResult(
            agent=agent.name,
            task=task,
            output=output,
            messages=[message],
            progress=ProgressRecord(index=options.index, agent=agent.name, status="completed"),
        )


class RecordingHooks(ChainHooks):
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_chain_start(self, run_id: str, flat_steps: Sequence[SequentialStep]) -> None:
        self.events.append(("chain_start", run_id, [step.agent for step in flat_steps]))

    def on_parallel_start(self, step_index: int, agents: Sequence[str]) -> None:
        self.events.append(("parallel_start", step_index, list(agents)))

    def on_task_start(self, flat_index: int, agent: str) -> None:
        self.events.append(("task_start", flat_index, agent))

    def on_task_end(self, flat_index: int, result: TaskResult) -> None:
        self.events.append(("task_end", flat_index, result.agent, result.exit_code))

    def on_chain_end(self, result: ChainResult) -> None:
        self.events.append(("chain_end", result.status))


def _registry(*names: str, **overrides: AgentConfig) -> AgentRegistry:
    agents = [AgentConfig(name=name) for name in names]
    agents.extend(overrides.values())
    return AgentRegistry.from_agents(agents)


def _options(tmp_path: Path, **kwargs) -> ChainOptions:
    config = EngineConfig.default()
    config.chain.runs_dir = str(tmp_path / "chains")
    return ChainOptions(config=config, **kwargs)


def test_sequential_chain_feeds_previous_output(tmp_path: Path) -> None:
    worker = FakeWorker(outputs={"a": "A-OUT"})
    steps = [SequentialStep(agent="a", task="Analyze {task}"), SequentialStep(agent="b")]

    result = asyncio.run(
        run_chain(steps, _registry("a", "b"), _options(tmp_path, task="the repo"), worker=worker)
    )

    assert result.status == "completed"
    assert [call[0] for call in worker.calls] == ["a", "b"]
    assert worker.calls[0][1].startswith("Analyze the repo")
    assert "A-OUT" in worker.calls[1][1]
    assert result.summary.startswith("Chain completed: a -> b (2 steps)")
    assert f"Chain directory: {result.chain_dir}" in result.summary
    assert result.chain_dir is not None and result.chain_dir.is_dir()


def test_previous_summary_is_appended_when_template_omits_previous(tmp_path: Path) -> None:
    worker = FakeWorker(outputs={"a": "found three bugs"})
    steps = [SequentialStep(agent="a", task="scan"), SequentialStep(agent="b", task="fix all")]

    asyncio.run(run_chain(steps, _registry("a", "b"), _options(tmp_path), worker=worker))

    second_task = worker.calls[1][1]
    assert second_task.startswith("fix all")
    assert "Previous step summary:\n\nfound three bugs" in second_task


def test_chain_stops_at_first_failed_step(tmp_path: Path) -> None:
    worker = FakeWorker(failing=["b"])
    steps = [
        SequentialStep(agent="a", task="go"),
        SequentialStep(agent="b"),
        SequentialStep(agent="c"),
    ]

    result = asyncio.run(run_chain(steps, _registry("a", "b", "c"), _options(tmp_path), worker))

    assert result.is_error
    assert result.failed_step_index == 1
    assert [call[0] for call in worker.calls] == ["a", "b"]
    assert result.error == "b exploded"
    assert result.summary.startswith("Chain failed at step 2 (b): a -> b -> c")
    assert result.chain_dir is not None and result.chain_dir.is_dir()


def test_parallel_failure_names_failing_task(tmp_path: Path) -> None:
    worker = FakeWorker(failing=["b"])
    steps = [
        ParallelStep(
            parallel=[
                SequentialStep(agent="a", task="one"),
                SequentialStep(agent="b", task="two"),
                SequentialStep(agent="c", task="three"),
            ]
        ),
        SequentialStep(agent="d"),
    ]

    result = asyncio.run(
        run_chain(steps, _registry("a", "b", "c", "d"), _options(tmp_path), worker=worker)
    )

    assert result.status == "failed"
    assert result.failed_step_index == 0
    assert result.error is not None
    assert result.error.startswith("Parallel step 1 failed:")
    assert "- Task 2 (b): b exploded" in result.error
    assert "d" not in [call[0] for call in worker.calls]
    assert len(result.results) == 3
    assert result.chain_dir is not None and result.chain_dir.is_dir()


def test_signal_killed_parallel_task_fails_the_chain(tmp_path: Path) -> None:
    class SignalledWorker(FakeWorker):
        async def run_task(
            self, agent: AgentConfig, task: str, options: TaskOptions
        ) -> TaskResult:
            if agent.name == "b":
                self.calls.append((agent.name, task, options))
                return TaskResult(agent="b", task=task, exit_code=-1)
            return await super().run_task(agent, task, options)

    hooks = RecordingHooks()
    worker = SignalledWorker()
    steps = [
        ParallelStep(
            parallel=[SequentialStep(agent="a", task="one"), SequentialStep(agent="b", task="two")]
        ),
        SequentialStep(agent="c"),
    ]

    result = asyncio.run(
        run_chain(steps, _registry("a", "b", "c"), _options(tmp_path, hooks=hooks), worker)
    )

    assert result.status == "failed"
    assert result.failed_step_index == 0
    assert "c" not in [call[0] for call in worker.calls]
    assert ("task_end", 1, "b", -1) in hooks.events


def test_parallel_outputs_are_aggregated_for_next_step(tmp_path: Path) -> None:
    worker = FakeWorker(outputs={"a": "alpha", "b": "beta"})
    steps = [
        SequentialStep(agent="s", task="seed"),
        ParallelStep(parallel=[SequentialStep(agent="a"), SequentialStep(agent="b")]),
        SequentialStep(agent="m", task="merge:\n{previous}"),
    ]

    result = asyncio.run(
        run_chain(steps, _registry("s", "a", "b", "m"), _options(tmp_path), worker=worker)
    )

    assert result.status == "completed"
    merge_task = worker.calls[-1][1]
    assert "=== Parallel Task 1 (a) ===\nalpha" in merge_task
    assert "=== Parallel Task 2 (b) ===\nbeta" in merge_task
    parallel_tasks = [call[1] for call in worker.calls if call[0] in ("a", "b")]
    assert all(task.startswith("s output") for task in parallel_tasks)
    assert result.chain_dir is not None
    assert (result.chain_dir / "parallel-1" / "0-a").is_dir()
    assert (result.chain_dir / "parallel-1" / "1-b").is_dir()


def test_single_step_chain_returns_one_result(tmp_path: Path) -> None:
    result = asyncio.run(
        run_chain(
            [SequentialStep(agent="a", task="solo")],
            _registry("a"),
            _options(tmp_path),
            worker=FakeWorker(),
        )
    )

    assert len(result.results) == 1
    assert result.chain_dir is not None and result.chain_dir.exists()


def test_unknown_agent_fails_before_chain_dir_is_created(tmp_path: Path) -> None:
    worker = FakeWorker()
    options = _options(tmp_path, run_id="abc123")

    with pytest.raises(UnknownAgentError, match="ghost"):
        asyncio.run(
            run_chain(
                [SequentialStep(agent="a", task="x"), SequentialStep(agent="ghost")],
                _registry("a"),
                options,
                worker=worker,
            )
        )
    assert worker.calls == []
    assert not (tmp_path / "chains" / "abc123").exists()


def test_empty_chain_and_missing_task_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(EmptyChainError):
        asyncio.run(run_chain([], _registry("a"), _options(tmp_path), worker=FakeWorker()))
    with pytest.raises(EmptyChainError):
        asyncio.run(
            run_chain(
                [SequentialStep(agent="a")], _registry("a"), _options(tmp_path), FakeWorker()
            )
        )


def test_progress_file_exists_before_parallel_tasks_launch(tmp_path: Path) -> None:
    class ProgressWatcher(FakeWorker):
        async def run_task(
            self, agent: AgentConfig, task: str, options: TaskOptions
        ) -> TaskResult:
            chain_dir = tmp_path / "chains" / "run-p"
            self.observed_progress_file.append((chain_dir / "progress.md").exists())
            return await super().run_task(agent, task, options)

    worker = ProgressWatcher()
    steps = [
        ParallelStep(
            parallel=[
                SequentialStep(agent="a", task="x", progress=True),
                SequentialStep(agent="b", task="y", progress=True),
            ]
        )
    ]

    asyncio.run(run_chain(steps, _registry("a", "b"), _options(tmp_path, run_id="run-p"), worker))

    assert worker.observed_progress_file == [True, True]
    assert all("Read and update:" in call[1] for call in worker.calls)


def test_empty_parallel_group_is_skipped(tmp_path: Path) -> None:
    worker = FakeWorker(outputs={"a": "A-OUT"})
    steps = [
        SequentialStep(agent="a", task="start"),
        ParallelStep(parallel=[]),
        SequentialStep(agent="b", task="{previous}"),
    ]

    result = asyncio.run(run_chain(steps, _registry("a", "b"), _options(tmp_path), worker))

    assert result.status == "completed"
    assert worker.calls[1][1].startswith("A-OUT")


def test_hooks_observe_flat_indices(tmp_path: Path) -> None:
    hooks = RecordingHooks()
    steps = [
        SequentialStep(agent="a", task="go"),
        ParallelStep(
            parallel=[SequentialStep(agent="b"), SequentialStep(agent="c")], fail_fast=True
        ),
    ]

    asyncio.run(
        run_chain(
            steps,
            _registry("a", "b", "c"),
            _options(tmp_path, run_id="r1", hooks=hooks),
            FakeWorker(),
        )
    )

    assert hooks.events[0] == ("chain_start", "r1", ["a", "b", "c"])
    assert ("parallel_start", 1, ["b", "c"]) in hooks.events
    ends = sorted(event[1] for event in hooks.events if event[0] == "task_end")
    assert ends == [0, 1, 2]
    assert hooks.events[-1] == ("chain_end", "completed")


def test_declined_confirmation_cancels_and_removes_dir(tmp_path: Path) -> None:
    previews: list[ChainPreview] = []

    async def decline(preview: ChainPreview) -> bool:
        previews.append(preview)
        return False

    worker = FakeWorker()
    result = asyncio.run(
        run_chain(
            [SequentialStep(agent="a", task="x {task}")],
            _registry("a"),
            _options(tmp_path, task="T", confirm=decline, run_id="c1"),
            worker,
        )
    )

    assert result.status == "cancelled"
    assert result.summary == "Chain cancelled"
    assert worker.calls == []
    assert previews[0].templates == ["x {task}"]
    assert not (tmp_path / "chains" / "c1").exists()


def test_step_model_overrides_agent_model(tmp_path: Path) -> None:
    worker = FakeWorker()
    asyncio.run(
        run_chain(
            [SequentialStep(agent="a", task="x", model="big-model")],
            _registry(a=AgentConfig(name="a", model="small")),
            _options(tmp_path),
            worker,
        )
    )

    assert worker.calls[0][2].model_override == "big-model"
