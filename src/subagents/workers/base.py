from __future__ import annotations

from abc import ABC, abstractmethod

from subagents.agents import AgentConfig
from subagents.workers.models import TaskOptions, TaskResult


class TaskWorker(ABC):
    @abstractmethod
    async def run_task(
        self,
        agent: AgentConfig,
        task: str,
        options: TaskOptions,
    ) -> TaskResult:
        """Execute one task and return its frozen result."""
