from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from subagents.agents import AgentConfig
from subagents.errors import ReservedArgumentError

RESERVED_ARGS = ("--mode", "-p", "--print", "--no-session", "--session")
THINKING_LEVELS = ("off", "minimal", "low", "medium", "high", "xhigh")
DEPTH_ENV_VAR = "SUBAGENT_DEPTH"
_EXTENSION_SUFFIXES = (".py", ".ts", ".js")


def apply_thinking_suffix(model: str | None, thinking: str | None) -> str | None:
    if not model or not thinking or thinking == "off":
        return model
    _, sep, suffix = model.rpartition(":")
    if sep and suffix in THINKING_LEVELS:
        return model
    return f"{model}:{thinking}"


def validate_extra_args(extra_args: Iterable[str]) -> list[str]:
    args = [str(arg) for arg in extra_args]
    for arg in args:
        for reserved in RESERVED_ARGS:
            if arg == reserved or arg.startswith(f"{reserved}="):
                raise ReservedArgumentError(
                    f'Worker arg "{arg}" is reserved for the engine. '
                    f"Reserved args: {', '.join(RESERVED_ARGS)}"
                )
    return args


def is_extension_tool(tool: str) -> bool:
    return "/" in tool or tool.endswith(_EXTENSION_SUFFIXES)


@dataclass(slots=True)
class WorkerCommand:
    argv: list[str]
    model: str | None
    prompt_dir: Path | None = None


def write_system_prompt(agent_name: str, prompt: str) -> tuple[Path, Path]:
    """Write the prompt into a private temp dir; the caller removes the dir."""
    prompt_dir = Path(tempfile.mkdtemp(prefix="subagent-"))
    safe_name = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in agent_name)
    prompt_path = prompt_dir / f"prompt-{safe_name}.md"
    prompt_path.write_text(prompt, encoding="utf-8")
    return prompt_dir, prompt_path


def build_worker_command(
    binary: str | list[str],
    agent: AgentConfig,
    task: str,
    *,
    model_override: str | None = None,
    extra_args: Iterable[str] = (),
) -> WorkerCommand:
    prefix = [binary] if isinstance(binary, str) else list(binary)
    argv = [*prefix, "--mode", "json", "-p", "--no-session"]
    argv.extend(validate_extra_args(extra_args))

    model = apply_thinking_suffix(model_override or agent.model, agent.thinking)
    if model:
        argv.extend(["--models", model])

    tool_extensions: list[str] = []
    if agent.tools:
        builtin = [tool for tool in agent.tools if not is_extension_tool(tool)]
        tool_extensions = [tool for tool in agent.tools if is_extension_tool(tool)]
        if builtin:
            argv.extend(["--tools", ",".join(builtin)])
    if agent.extensions is not None:
        argv.append("--no-extensions")
        for extension in agent.extensions:
            argv.extend(["--extension", extension])
    else:
        for extension in tool_extensions:
            argv.extend(["--extension", extension])

    prompt_dir: Path | None = None
    system_prompt = agent.system_prompt.strip()
    if system_prompt:
        prompt_dir, prompt_path = write_system_prompt(agent.name, system_prompt)
        argv.extend(["--append-system-prompt", str(prompt_path)])

    argv.append(f"Task: {task}")
    return WorkerCommand(argv=argv, model=model, prompt_dir=prompt_dir)


def worker_environment(base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    try:
        depth = int(env.get(DEPTH_ENV_VAR, "0"))
    except ValueError:
        depth = 0
    env[DEPTH_ENV_VAR] = str(depth + 1)
    return env
