from subagents.agents import AgentConfig, AgentRegistry, load_agents
from subagents.behavior import ResolvedBehavior, StepOverrides, resolve_step_behavior
from subagents.chain import ChainHooks, ChainOptions, ChainResult, ChainUpdate, run_chain
from subagents.config import EngineConfig, load_config, save_config
from subagents.state import AsyncRunRecord, launch_async_run, read_async_status
from subagents.steps import ParallelStep, SequentialStep
from subagents.workers import ProcessWorker, TaskOptions, TaskResult, run_task

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentRegistry",
    "AsyncRunRecord",
    "ChainHooks",
    "ChainOptions",
    "ChainResult",
    "ChainUpdate",
    "EngineConfig",
    "ParallelStep",
    "ProcessWorker",
    "ResolvedBehavior",
    "SequentialStep",
    "StepOverrides",
    "TaskOptions",
    "TaskResult",
    "__version__",
    "launch_async_run",
    "load_agents",
    "load_config",
    "read_async_status",
    "resolve_step_behavior",
    "run_chain",
    "run_task",
    "save_config",
]
