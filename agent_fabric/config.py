"""Runtime layer configuration.

Defaults come from ``FABRIC_*`` environment variables; a YAML file can
override any field.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _default_base_dir() -> str:
    return os.getenv(
        "FABRIC_BASE_DIR",
        str(Path(tempfile.gettempdir()) / "agent-fabric"),
    )


@dataclass
class FabricConfig:
    """Configuration for the runtime manager and its backends."""

    # Host layout
    base_dir: str = field(default_factory=_default_base_dir)
    default_team: str = field(default_factory=lambda: os.getenv("FABRIC_DEFAULT_TEAM", "default"))

    # Selection
    preference: str = field(default_factory=lambda: os.getenv("FABRIC_RUNTIME", "auto"))
    fallback_chain: list[str] = field(
        default_factory=lambda: _env_list("FABRIC_FALLBACK_CHAIN", "container,tmux")
    )

    # Naming
    session_prefix: str = field(default_factory=lambda: os.getenv("FABRIC_SESSION_PREFIX", "agent-"))
    container_prefix: str = field(default_factory=lambda: os.getenv("FABRIC_CONTAINER_PREFIX", "agent-"))
    volume_prefix: str = field(default_factory=lambda: os.getenv("FABRIC_VOLUME_PREFIX", "fabric-team-"))

    # Container backend
    default_image: str = field(default_factory=lambda: os.getenv("FABRIC_DEFAULT_IMAGE", "python:3.11-slim"))
    pool_enabled: bool = field(default_factory=lambda: os.getenv("FABRIC_POOL", "true").lower() == "true")
    pool_archetypes: list[str] = field(
        default_factory=lambda: _env_list(
            "FABRIC_POOL_ARCHETYPES", "frontend-engineer,backend-engineer,qa-testing"
        )
    )
    pool_images: dict[str, str] = field(default_factory=dict)  # archetype -> image

    # Binaries
    docker_binary: str = field(default_factory=lambda: os.getenv("FABRIC_DOCKER", "docker"))
    tmux_binary: str = field(default_factory=lambda: os.getenv("FABRIC_TMUX", "tmux"))

    # Behaviour
    status_log_lines: int = field(default_factory=lambda: int(os.getenv("FABRIC_STATUS_LOG_LINES", "50")))
    exec_poll_interval: float = field(
        default_factory=lambda: float(os.getenv("FABRIC_EXEC_POLL_INTERVAL", "0.1"))
    )
    shutdown_timeout: float = field(default_factory=lambda: float(os.getenv("FABRIC_SHUTDOWN_TIMEOUT", "10.0")))

    # Capability ceilings reported by each backend
    max_agents: dict[str, int] = field(
        default_factory=lambda: {"container": 100, "tmux": 50}
    )

    def image_for(self, archetype: str) -> str:
        """Image used to provision (or pre-warm) an archetype."""
        return self.pool_images.get(archetype, self.default_image)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FabricConfig:
        """Build a config, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if isinstance(values.get("fallback_chain"), str):
            values["fallback_chain"] = [
                item.strip() for item in values["fallback_chain"].split(",") if item.strip()
            ]
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> FabricConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data.get("fabric", data))


# Process-wide default, set by the entry point
_config: FabricConfig | None = None


def get_fabric_config() -> FabricConfig:
    """Get the process configuration."""
    global _config
    if _config is None:
        _config = FabricConfig()
    return _config


def set_fabric_config(config: FabricConfig) -> None:
    """Set the process configuration."""
    global _config
    _config = config
