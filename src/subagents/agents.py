from __future__ import annotations

import json
import tomllib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from subagents.errors import ConfigurationError, UnknownAgentError


@dataclass(slots=True)
class AgentConfig:
    """Agent definition as supplied by the agent registry.

    ``default_output``, ``default_reads`` and ``default_progress`` are ``None``
    when the agent declares no default for that field.
    """

    name: str
    description: str = ""
    model: str | None = None
    thinking: str | None = None
    tools: list[str] | None = None
    extensions: list[str] | None = None
    system_prompt: str = ""
    default_output: str | None = None
    default_reads: list[str] | None = None
    default_progress: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ConfigurationError("Agent definition is missing a name.")
        reads = data.get("default_reads", data.get("defaultReads"))
        progress = data.get("default_progress", data.get("defaultProgress"))
        return cls(
            name=name,
            description=str(data.get("description") or ""),
            model=data.get("model") or None,
            thinking=data.get("thinking") or None,
            tools=list(data["tools"]) if data.get("tools") else None,
            extensions=list(data["extensions"]) if data.get("extensions") is not None else None,
            system_prompt=str(data.get("system_prompt", data.get("systemPrompt")) or ""),
            default_output=data.get("default_output", data.get("output")) or None,
            default_reads=list(reads) if reads else None,
            default_progress=bool(progress) if progress is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "model": self.model,
            "thinking": self.thinking,
            "tools": list(self.tools) if self.tools is not None else None,
            "extensions": list(self.extensions) if self.extensions is not None else None,
            "system_prompt": self.system_prompt,
            "default_output": self.default_output,
            "default_reads": list(self.default_reads) if self.default_reads is not None else None,
            "default_progress": self.default_progress,
        }


@dataclass(slots=True)
class AgentRegistry:
    agents: dict[str, AgentConfig] = field(default_factory=dict)

    @classmethod
    def from_agents(cls, agents: Iterable[AgentConfig]) -> AgentRegistry:
        return cls({agent.name: agent for agent in agents})

    @classmethod
    def from_dicts(cls, payload: Iterable[dict[str, Any]]) -> AgentRegistry:
        return cls.from_agents(AgentConfig.from_dict(item) for item in payload)

    def get(self, name: str) -> AgentConfig:
        agent = self.agents.get(name)
        if agent is None:
            raise UnknownAgentError(name, available=self.names())
        return agent

    def names(self) -> list[str]:
        return sorted(self.agents)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [agent.to_dict() for agent in self.agents.values()]

    def __contains__(self, name: object) -> bool:
        return name in self.agents

    def __iter__(self) -> Iterator[AgentConfig]:
        return iter(self.agents.values())

    def __len__(self) -> int:
        return len(self.agents)


def load_agents(path: Path) -> AgentRegistry:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = tomllib.loads(text)
    if isinstance(data, list):
        items = data
    else:
        items = data.get("agents", [])
    if not isinstance(items, list):
        raise ConfigurationError(f"Agent file {path} must contain an 'agents' list.")
    return AgentRegistry.from_dicts(item for item in items if isinstance(item, dict))
