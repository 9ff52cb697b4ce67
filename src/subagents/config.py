from __future__ import annotations

import json
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class WorkerConfig:
    binary: str = "pi"
    binary_args: list[str] = field(default_factory=list)
    extra_args: list[str] = field(default_factory=list)
    kill_grace_seconds: float = 3.0
    progress_throttle_ms: int = 50
    max_messages: int = 200
    max_stderr_bytes: int = 64 * 1024


@dataclass(slots=True)
class OutputConfig:
    max_bytes: int = 200 * 1024
    max_lines: int = 5000


@dataclass(slots=True)
class ChainConfig:
    runs_dir: str = ""
    max_concurrency: int = 4
    dir_max_age_hours: float = 24.0

    def resolved_runs_dir(self) -> Path:
        if self.runs_dir:
            return Path(self.runs_dir).expanduser()
        return Path(tempfile.gettempdir()) / "subagent-chains"


@dataclass(slots=True)
class AsyncConfig:
    runs_dir: str = ""

    def resolved_runs_dir(self) -> Path:
        if self.runs_dir:
            return Path(self.runs_dir).expanduser()
        return Path(tempfile.gettempdir()) / "subagent-runs"


@dataclass(slots=True)
class EngineConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    async_runs: AsyncConfig = field(default_factory=AsyncConfig)

    @classmethod
    def default(cls) -> EngineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        return cls(
            worker=WorkerConfig(**data.get("worker", {})),
            output=OutputConfig(**data.get("output", {})),
            chain=ChainConfig(**data.get("chain", {})),
            async_runs=AsyncConfig(**data.get("async", {})),
        )

    def to_dict(self) -> dict:
        return {
            "worker": {
                "binary": self.worker.binary,
                "binary_args": list(self.worker.binary_args),
                "extra_args": list(self.worker.extra_args),
                "kill_grace_seconds": self.worker.kill_grace_seconds,
                "progress_throttle_ms": self.worker.progress_throttle_ms,
                "max_messages": self.worker.max_messages,
                "max_stderr_bytes": self.worker.max_stderr_bytes,
            },
            "output": {
                "max_bytes": self.output.max_bytes,
                "max_lines": self.output.max_lines,
            },
            "chain": {
                "runs_dir": self.chain.runs_dir,
                "max_concurrency": self.chain.max_concurrency,
                "dir_max_age_hours": self.chain.dir_max_age_hours,
            },
            "async": {
                "runs_dir": self.async_runs.runs_dir,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: EngineConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("worker", "output", "chain", "async"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> EngineConfig:
    if not path.exists():
        return EngineConfig.default()
    return EngineConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: EngineConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
