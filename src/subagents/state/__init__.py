from subagents.state.launcher import (
    AsyncLaunch,
    AsyncRunConfig,
    execute_async_run,
    launch_async_run,
    resolve_run_steps,
)
from subagents.state.run_store import (
    AsyncRunRecord,
    AsyncRunStore,
    FlatStepStatus,
    read_async_events,
    read_async_status,
)

__all__ = [
    "AsyncLaunch",
    "AsyncRunConfig",
    "AsyncRunRecord",
    "AsyncRunStore",
    "FlatStepStatus",
    "execute_async_run",
    "launch_async_run",
    "read_async_events",
    "read_async_status",
    "resolve_run_steps",
]
