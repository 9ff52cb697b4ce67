from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any

from loguru import logger

from subagents.agents import AgentConfig, AgentRegistry
from subagents.config import WorkerConfig
from subagents.errors import WorkerProcessError
from subagents.workers.artifacts import (
    get_artifact_paths,
    truncate_output,
    write_artifact,
    write_metadata,
)
from subagents.workers.base import TaskWorker
from subagents.workers.command import build_worker_command, worker_environment
from subagents.workers.events import ProgressThrottle, TaskEventTracker
from subagents.workers.jsonl import StreamGate, create_jsonl_writer
from subagents.workers.models import (
    ArtifactConfig,
    ArtifactPaths,
    ProgressRecord,
    TaskOptions,
    TaskResult,
    TaskUpdate,
)

READ_CHUNK_BYTES = 64 * 1024


class ProcessWorker(TaskWorker):
    """Runs one task per child process and folds its JSON event stream into a result."""

    def __init__(
        self,
        config: WorkerConfig | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.config = config or WorkerConfig()
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def run_task(
        self,
        agent: AgentConfig,
        task: str,
        options: TaskOptions,
    ) -> TaskResult:
        command = build_worker_command(
            [self.config.binary, *self.config.binary_args],
            agent,
            task,
            model_override=options.model_override,
            extra_args=self.config.extra_args,
        )
        result = TaskResult(agent=agent.name, task=task, model=command.model)
        progress = ProgressRecord(index=options.index, agent=agent.name, task=task)
        result.progress = progress
        tracker = TaskEventTracker(result, progress, max_messages=self.config.max_messages)
        artifact_paths = self._prepare_artifacts(agent.name, task, options)
        artifact_config = options.artifact_config or ArtifactConfig()
        jsonl_path = (
            artifact_paths.jsonl_path
            if artifact_paths is not None and artifact_config.include_jsonl
            else None
        )

        throttle: ProgressThrottle | None = None
        if options.on_progress is not None:
            on_progress = options.on_progress

            def publish() -> None:
                progress.duration_ms = tracker.elapsed_ms()
                on_progress(
                    TaskUpdate(
                        text=result.output or "(running...)",
                        result=result,
                        progress=progress,
                    )
                )

            throttle = ProgressThrottle(publish, self.config.progress_throttle_ms)

        self._emit(
            {
                "event": "worker_start",
                "agent": agent.name,
                "index": options.index,
                "model": command.model,
            }
        )
        logger.debug("Spawning worker for {} (index {})", agent.name, options.index)
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command.argv,
                    cwd=options.cwd,
                    env=worker_environment(),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                error = WorkerProcessError(
                    f"Worker binary could not be started: {self.config.binary} ({exc})",
                    binary=self.config.binary,
                )
                logger.warning("{}", error)
                result.exit_code = 1
                result.error = str(error)
                self._finalize(result, progress, tracker, options, artifact_paths)
                return result

            if process.stdout is None or process.stderr is None:
                raise WorkerProcessError(
                    "Worker process did not expose stdout/stderr.", binary=self.config.binary
                )
            exit_code, stderr_text = await self._drive(
                process, tracker, jsonl_path, throttle, options, result
            )
        finally:
            if throttle is not None:
                throttle.close()
            if command.prompt_dir is not None:
                shutil.rmtree(command.prompt_dir, ignore_errors=True)

        result.exit_code = exit_code
        result.stderr = stderr_text
        if exit_code != 0 and stderr_text.strip() and not result.error:
            result.error = stderr_text.strip()
        failure = tracker.last_tool_failure
        if exit_code == 0 and not result.error and failure is not None:
            result.exit_code = failure.exit_code or 1
            result.error = failure.describe()
            logger.info("Hidden failure in {}: {}", agent.name, result.error)

        self._finalize(result, progress, tracker, options, artifact_paths)
        self._emit(
            {
                "event": "worker_exit",
                "agent": agent.name,
                "index": options.index,
                "exit_code": result.exit_code,
                "cancelled": result.cancelled,
            }
        )
        return result

    async def _drive(
        self,
        process: asyncio.subprocess.Process,
        tracker: TaskEventTracker,
        jsonl_path: Path | None,
        throttle: ProgressThrottle | None,
        options: TaskOptions,
        result: TaskResult,
    ) -> tuple[int, str]:
        gate = StreamGate()
        writer = create_jsonl_writer(jsonl_path, gate)
        output_log: IO[bytes] | None = None
        if options.output_log_path is not None:
            options.output_log_path.parent.mkdir(parents=True, exist_ok=True)
            output_log = options.output_log_path.open("ab")

        stderr_task = asyncio.create_task(self._read_stderr(process.stderr))
        watcher: asyncio.Task[None] | None = None
        if options.cancel_event is not None:
            watcher = asyncio.create_task(
                self._watch_cancel(process, options.cancel_event, result)
            )
        try:
            await self._pump_stdout(process.stdout, tracker, writer, gate, throttle, output_log)
            exit_code = await process.wait()
            stderr_text = await stderr_task
        except BaseException:
            self._kill(process)
            stderr_task.cancel()
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
            await writer.close()
            if output_log is not None:
                output_log.close()
        return exit_code, stderr_text

    async def _pump_stdout(
        self,
        stdout: asyncio.StreamReader,
        tracker: TaskEventTracker,
        writer: Any,
        gate: StreamGate,
        throttle: ProgressThrottle | None,
        output_log: IO[bytes] | None,
    ) -> None:
        while True:
            await gate.wait()
            chunk = await stdout.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            if output_log is not None:
                output_log.write(chunk)
                output_log.flush()
            for line in tracker.feed(chunk):
                writer.write_line(line)
                force = tracker.handle_line(line)
                if throttle is not None:
                    throttle.schedule(force=force)
            if throttle is not None:
                throttle.schedule()

        tail = tracker.flush()
        if tail is not None:
            writer.write_line(tail)
            tracker.handle_line(tail)

    async def _read_stderr(self, stderr: asyncio.StreamReader) -> str:
        limit = max(0, self.config.max_stderr_bytes)
        captured = bytearray()
        while True:
            chunk = await stderr.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            captured.extend(chunk)
            if len(captured) > limit:
                del captured[: len(captured) - limit]
        return captured.decode("utf-8", errors="replace")

    async def _watch_cancel(
        self,
        process: asyncio.subprocess.Process,
        cancel_event: asyncio.Event,
        result: TaskResult,
    ) -> None:
        await cancel_event.wait()
        if process.returncode is not None:
            return
        result.cancelled = True
        logger.info("Cancelling worker pid {} for {}", process.pid, result.agent)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_grace_seconds)
        except TimeoutError:
            logger.warning("Worker pid {} ignored SIGTERM, killing", process.pid)
            self._kill(process)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _prepare_artifacts(
        self, agent_name: str, task: str, options: TaskOptions
    ) -> ArtifactPaths | None:
        config = options.artifact_config or ArtifactConfig()
        if options.artifacts_dir is None or not config.enabled:
            return None
        paths = get_artifact_paths(
            options.artifacts_dir, options.run_id or "run", agent_name, options.index
        )
        options.artifacts_dir.mkdir(parents=True, exist_ok=True)
        if config.include_input:
            write_artifact(paths.input_path, f"# Task for {agent_name}\n\n{task}")
        return paths

    def _finalize(
        self,
        result: TaskResult,
        progress: ProgressRecord,
        tracker: TaskEventTracker,
        options: TaskOptions,
        artifact_paths: ArtifactPaths | None,
    ) -> None:
        progress.status = "completed" if result.exit_code == 0 else "failed"
        progress.duration_ms = tracker.elapsed_ms()
        if result.error:
            progress.error = result.error
            if progress.current_tool:
                progress.failed_tool = progress.current_tool

        full_output = result.output
        if artifact_paths is not None:
            config = options.artifact_config or ArtifactConfig()
            result.artifact_paths = artifact_paths
            if config.include_output:
                write_artifact(artifact_paths.output_path, full_output)
            if config.include_metadata:
                write_metadata(
                    artifact_paths.metadata_path,
                    {
                        "runId": options.run_id,
                        "agent": result.agent,
                        "task": result.task,
                        "exitCode": result.exit_code,
                        "usage": result.usage.to_dict(),
                        "model": result.model,
                        "durationMs": progress.duration_ms,
                        "toolCount": progress.tool_count,
                        "error": result.error,
                        "cancelled": result.cancelled,
                        "timestamp": int(time.time() * 1000),
                    },
                )

        if options.max_output is not None:
            artifact_path = artifact_paths.output_path if artifact_paths is not None else None
            text, info = truncate_output(
                full_output,
                options.max_output.max_bytes,
                options.max_output.max_lines,
                artifact_path,
            )
            if info.truncated:
                result.output = text
                result.truncation = info


async def run_task(
    registry: AgentRegistry,
    agent_name: str,
    task: str,
    options: TaskOptions | None = None,
    worker: TaskWorker | None = None,
    config: WorkerConfig | None = None,
) -> TaskResult:
    agent = registry.get(agent_name)
    runner = worker or ProcessWorker(config)
    return await runner.run_task(agent, task, options or TaskOptions())
