"""
AgentConfig - portable JSON definition of an agent.

An AgentConfig describes everything about an agent except its backend and
model, which are bound at spawn time:

    config = AgentConfig.from_file("researcher.json")
    handle = runtime.spawn_agent(backend, "claude-sonnet-4-5-20250929", config)

Tool names follow a namespaced convention:
- "calc"              -> builtin tool registered on the runtime
- "@git/git_status"   -> tool "git_status" on the external server "git"

External servers are declared under `servers`, keyed by server id:

    {
        "name": "repo-helper",
        "system_prompt": "You help with git repositories.",
        "tools": ["@git/git_status"],
        "servers": {
            "git": {"type": "local", "command": "uvx", "args": ["mcp-server-git"]}
        }
    }

Unknown keys are preserved in `extra` so configs written by newer versions
still load.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from agent_mailbox.interfaces import SamplingConfig, ToolSpec

SPEC_VERSION = "2025-07-20"

DEFAULT_PROMPT = (
    "You are a helpful assistant designed for basic knowledge tasks. "
    "Always respond even if it means asking for guidance."
)


@dataclass
class LocalServerConfig:
    """An external tool server launched as a subprocess speaking over stdio."""

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "type": "local",
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
        }
        if self.cwd:
            result["cwd"] = self.cwd
        return result


@dataclass
class RemoteServerConfig:
    """
    A remote tool server.

    Configuration placeholder only: the runtime does not speak a remote
    transport, so calls to remote tools resolve to ServerUnavailable errors.
    """

    url: str
    credentials: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": "remote",
            "url": self.url,
            "credentials": dict(self.credentials),
        }


ExternalServerConfig = Union[LocalServerConfig, RemoteServerConfig]


def server_config_from_dict(data: dict) -> ExternalServerConfig:
    """Parse an external server config, inferring the type when absent."""
    server_type = data.get("type")
    if server_type is None:
        server_type = "remote" if "url" in data else "local"

    if server_type == "local":
        return LocalServerConfig(
            command=data["command"],
            args=list(data.get("args", [])),
            env=dict(data.get("env", {})),
            cwd=data.get("cwd"),
        )
    if server_type == "remote":
        return RemoteServerConfig(
            url=data["url"],
            credentials=dict(data.get("credentials", {})),
        )
    raise ValueError(f"Unknown external server type: {server_type!r}")


@dataclass(frozen=True)
class ToolName:
    """A parsed tool name: builtin when namespace is None, external otherwise."""

    name: str
    namespace: Optional[str] = None

    @property
    def is_builtin(self) -> bool:
        return self.namespace is None

    @classmethod
    def parse(cls, value: str) -> "ToolName":
        namespace, sep, name = value.partition("/")
        if not sep:
            return cls(name=value)
        if not namespace.startswith("@"):
            raise ValueError(f"Tool namespace must start with '@': {value!r}")
        if not name or len(namespace) < 2:
            raise ValueError(f"Invalid tool name: {value!r}")
        return cls(name=name, namespace=namespace[1:])

    def __str__(self) -> str:
        if self.namespace is None:
            return self.name
        return f"@{self.namespace}/{self.name}"


@dataclass
class ModelPreferences:
    """Hints for choosing a model; informational only."""

    preferred_family: Optional[str] = None
    preferred_metrics: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "preferred_family": self.preferred_family,
            "preferred_metrics": list(self.preferred_metrics),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelPreferences":
        return cls(
            preferred_family=data.get("preferred_family"),
            preferred_metrics=list(data.get("preferred_metrics", [])),
        )


_KNOWN_KEYS = {
    "spec_version",
    "name",
    "description",
    "system_prompt",
    "prompt",
    "temperature",
    "max_tokens",
    "model_preferences",
    "tools",
    "client_tools",
    "servers",
    "mcp_servers",
    "extra",
}


@dataclass
class AgentConfig:
    """Canonical configuration for an agent."""

    name: str = "conversational-agent"
    description: str = "A simple conversational agent with no tools."
    system_prompt: str = DEFAULT_PROMPT
    temperature: float = 0.5
    max_tokens: Optional[int] = None

    # Tool names (see module docstring) and caller-resolved tool specs
    tools: list[str] = field(default_factory=list)
    client_tools: list[ToolSpec] = field(default_factory=list)

    # External tool servers, keyed by server id
    servers: dict[str, ExternalServerConfig] = field(default_factory=dict)

    model_preferences: ModelPreferences = field(default_factory=ModelPreferences)
    spec_version: str = SPEC_VERSION

    # Unknown keys from newer configs, kept for round-tripping
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        for tool in self.tools:
            tool_name = ToolName.parse(tool)
            if not tool_name.is_builtin and tool_name.namespace not in self.servers:
                raise ValueError(
                    f"Tool {tool!r} refers to server {tool_name.namespace!r}, "
                    f"which is not declared in servers"
                )

    @property
    def tool_names(self) -> list[ToolName]:
        return [ToolName.parse(t) for t in self.tools]

    def sampling(self, default_max_tokens: int = 4096) -> SamplingConfig:
        return SamplingConfig(
            temperature=self.temperature,
            max_tokens=self.max_tokens or default_max_tokens,
        )

    def to_dict(self) -> dict:
        """Serialize to dictionary (JSON-compatible)."""
        result = dict(self.extra)
        result.update({
            "spec_version": self.spec_version,
            "name": self.name,
            "description": self.description,
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "tools": list(self.tools),
            "client_tools": [t.to_dict() for t in self.client_tools],
            "servers": {k: v.to_dict() for k, v in self.servers.items()},
            "model_preferences": self.model_preferences.to_dict(),
        })
        return result

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def save(self, path: Union[str, Path]) -> None:
        Path(path).write_text(self.to_json())

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        """Load from dictionary. Unknown keys are kept in `extra`."""
        servers_data = data.get("servers", data.get("mcp_servers", {})) or {}
        extra = dict(data.get("extra", {}))
        extra.update({k: v for k, v in data.items() if k not in _KNOWN_KEYS})

        defaults = cls.__dataclass_fields__
        return cls(
            name=data.get("name", defaults["name"].default),
            description=data.get("description", defaults["description"].default),
            system_prompt=data.get("system_prompt", data.get("prompt", DEFAULT_PROMPT)),
            temperature=data.get("temperature", 0.5),
            max_tokens=data.get("max_tokens"),
            tools=list(data.get("tools", [])),
            client_tools=[ToolSpec.from_dict(t) for t in data.get("client_tools", [])],
            servers={k: server_config_from_dict(v) for k, v in servers_data.items()},
            model_preferences=ModelPreferences.from_dict(data.get("model_preferences") or {}),
            spec_version=data.get("spec_version", SPEC_VERSION),
            extra=extra,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "AgentConfig":
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "AgentConfig":
        return cls.from_json(Path(path).read_text())
