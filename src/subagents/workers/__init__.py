from subagents.workers.base import TaskWorker
from subagents.workers.models import (
    SKIPPED_EXIT_CODE,
    ArtifactConfig,
    OutputLimits,
    ProgressRecord,
    TaskOptions,
    TaskResult,
    TaskUpdate,
    skipped_result,
)
from subagents.workers.process import ProcessWorker, run_task

__all__ = [
    "ArtifactConfig",
    "OutputLimits",
    "ProcessWorker",
    "ProgressRecord",
    "SKIPPED_EXIT_CODE",
    "TaskOptions",
    "TaskResult",
    "TaskUpdate",
    "TaskWorker",
    "run_task",
    "skipped_result",
]
