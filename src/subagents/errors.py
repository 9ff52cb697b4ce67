from __future__ import annotations


class SubagentError(RuntimeError):
    """Base class for engine errors surfaced to callers."""


class ConfigurationError(SubagentError):
    """Raised before any worker process is spawned."""


class UnknownAgentError(ConfigurationError):
    def __init__(self, agent: str, available: list[str] | None = None) -> None:
        message = f"Unknown agent: {agent}"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(message)
        self.agent = agent
        self.available = list(available or [])


class EmptyChainError(ConfigurationError):
    """Raised when a chain has no steps or no seed task."""


class AmbiguousModeError(ConfigurationError):
    """Raised when a run request names both a single task and a chain."""


class ReservedArgumentError(ConfigurationError):
    """Raised when extra worker args collide with engine-owned flags."""


class WorkerProcessError(SubagentError):
    """Raised when a worker process cannot be started."""

    def __init__(self, message: str, *, binary: str | None = None) -> None:
        super().__init__(message)
        self.binary = binary


class RunStateError(SubagentError):
    """Raised when async run state cannot be persisted."""
