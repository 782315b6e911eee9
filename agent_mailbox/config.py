"""
Runtime configuration.

Configuration is resolved in this order:
1. Values passed explicitly (Runtime(config=...), configure(...))
2. AGENT_MAILBOX_* environment variables
3. Defaults defined on RuntimeConfig

Example:
    from agent_mailbox.config import configure, get_config

    configure(retry_limit=5, max_tool_turns=10)
    config = get_config()

A Runtime always holds its own RuntimeConfig; get_config() only supplies
the default when none is passed.
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENT_MAILBOX_"


@dataclass
class RuntimeConfig:
    """Tunables for the runtime, agents, tools and backends."""

    # Retry policy for backend failures
    retry_limit: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0

    # Turn limits and timeouts
    max_tool_turns: int = 25
    call_timeout_seconds: Optional[float] = 120.0
    tool_timeout_seconds: float = 30.0

    # Scheduling
    max_concurrent_calls: int = 16
    mailbox_capacity: int = 256
    cancel_grace_seconds: float = 5.0

    # External tool servers
    server_max_restarts: int = 3
    server_restart_window_seconds: float = 60.0
    server_start_timeout_seconds: float = 30.0

    # Persistence
    snapshot_dir: Path = field(default_factory=lambda: Path.cwd() / ".agent_mailbox" / "snapshots")

    # Backends
    model_provider: str = "anthropic"
    default_model: Optional[str] = None
    default_max_tokens: int = 4096
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None

    debug: bool = False

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the given (1-based) attempt number."""
        if attempt < 1:
            return 0.0
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self.backoff_max_seconds)

    def get_anthropic_api_key(self) -> Optional[str]:
        return self.anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY")

    def get_openai_api_key(self) -> Optional[str]:
        return self.openai_api_key or os.environ.get("OPENAI_API_KEY")

    def with_overrides(self, **kwargs) -> "RuntimeConfig":
        """Return a copy with the given fields replaced."""
        _check_field_names(kwargs)
        return replace(self, **kwargs)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "RuntimeConfig":
        """Build a config from AGENT_MAILBOX_* environment variables."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                values[f.name] = _coerce(f.name, raw, getattr(cls(), f.name))
            except ValueError:
                logger.warning(f"Ignoring invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")
        return cls(**values)


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Coerce an environment string to the type of the field's default."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path):
        return Path(raw)
    if default is None and name.endswith("_seconds"):
        return None if raw.strip().lower() in ("", "none") else float(raw)
    return raw


def _check_field_names(kwargs: dict) -> None:
    known = {f.name for f in fields(RuntimeConfig)}
    unknown = set(kwargs) - known
    if unknown:
        raise TypeError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")


_config: Optional[RuntimeConfig] = None


def get_config() -> RuntimeConfig:
    """Get the process-wide default configuration, building it from the environment."""
    global _config
    if _config is None:
        _config = RuntimeConfig.from_env()
    return _config


def configure(**kwargs) -> RuntimeConfig:
    """
    Update the process-wide default configuration.

    Example:
        configure(anthropic_api_key="sk-ant-...", retry_limit=5)
    """
    global _config
    _config = get_config().with_overrides(**kwargs)
    return _config


def reset_config() -> None:
    """Forget the process-wide configuration. Useful for testing."""
    global _config
    _config = None
