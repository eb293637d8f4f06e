"""
Shared types for the runtime layer.

AgentConfig is the opaque request handed in by the agent-definition
collaborator; everything else is produced by a backend.
"""

# mypy: disable-error-code="misc"

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_fabric.errors import ConfigurationWarning, InvalidStateError


class IsolationLevel(str, Enum):
    """How strongly a backend separates agents from each other."""

    PROCESS = "process"    # Separate process groups, shared kernel view
    KERNEL = "kernel"      # Namespaces/cgroups via containers


class AgentState(str, Enum):
    """Lifecycle state of an agent session."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    WORKING = "working"
    IDLE = "idle"
    COMPLETED = "completed"
    ERROR = "error"
    DESTROYED = "destroyed"


# Allowed transitions. DESTROYED is reachable from everywhere; INITIALIZING is
# re-entered only through reset_agent.
_TRANSITIONS: dict[AgentState, set[AgentState]] = {
    AgentState.INITIALIZING: {AgentState.RUNNING, AgentState.ERROR},
    AgentState.RUNNING: {
        AgentState.WORKING,
        AgentState.IDLE,
        AgentState.COMPLETED,
        AgentState.ERROR,
        AgentState.INITIALIZING,
    },
    AgentState.WORKING: {
        AgentState.IDLE,
        AgentState.COMPLETED,
        AgentState.ERROR,
        AgentState.INITIALIZING,
    },
    AgentState.IDLE: {
        AgentState.WORKING,
        AgentState.COMPLETED,
        AgentState.ERROR,
        AgentState.INITIALIZING,
    },
    AgentState.COMPLETED: {AgentState.INITIALIZING},
    AgentState.ERROR: {AgentState.INITIALIZING},
    AgentState.DESTROYED: set(),
}


# ============================================================================
# Request
# ============================================================================


class AgentConfig(BaseModel):
    """
    Immutable request to create an agent.

    Accepts camelCase keys (``agentType``, ``teamId``...) as produced by
    agent definition files, or snake_case names.
    """

    agent_type: str = Field(alias="agentType", default="generic")
    agent_id: str | None = Field(alias="agentId", default=None)
    team_id: str | None = Field(alias="teamId", default=None)
    tools: frozenset[str] = Field(default_factory=frozenset)
    memory_limit: str | None = Field(alias="memoryLimit", default=None)
    cpu_limit: float | None = Field(alias="cpuLimit", default=None)
    environment: dict[str, str] = Field(default_factory=dict)
    base_image: str | None = Field(alias="baseImage", default=None)
    dependencies: list[str] = Field(default_factory=list)
    seed_path: str | None = Field(alias="seedPath", default=None)
    workflow: str | None = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("agent_type")
    @classmethod
    def validate_agent_type(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("agent_type must not be empty")
        return v.strip()

    @field_validator("cpu_limit")
    @classmethod
    def validate_cpu_limit(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("cpu_limit must be positive")
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(key): str(value) for key, value in v.items()}
        return v

    @classmethod
    def from_file(cls, path: str | Path) -> AgentConfig:
        """Load an agent config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def sorted_tools(self) -> list[str]:
        return sorted(self.tools)


@dataclass
class CommandOptions:
    """Options for a single command execution."""

    timeout: float | None = None          # Seconds; None means unbounded
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None                # Relative to the agent workspace
    detach: bool = False                  # Send and return without waiting


# ============================================================================
# Results
# ============================================================================


@dataclass
class ResourceSnapshot:
    """Best-effort resource usage of one agent."""

    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    disk_mb: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "cpu": round(self.cpu_percent, 2),
            "memory": round(self.memory_mb, 2),
            "disk": round(self.disk_mb, 2),
        }


@dataclass
class CommandResult:
    """Complete outcome of one command execution."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration: float = 0.0                 # Seconds
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration": self.duration,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CapabilitySet:
    """Static description of what a backend can do."""

    isolation_level: IsolationLevel
    has_hard_resource_limits: bool
    supports_network_isolation: bool
    supports_persistence: bool
    max_concurrent_agents: int
    supports_custom_images: bool = False
    sharing: str = "directory"            # directory | volume
    portability: str = "local"            # local | universal

    def to_dict(self) -> dict[str, Any]:
        return {
            "isolation_level": self.isolation_level.value,
            "has_hard_resource_limits": self.has_hard_resource_limits,
            "supports_network_isolation": self.supports_network_isolation,
            "supports_persistence": self.supports_persistence,
            "max_concurrent_agents": self.max_concurrent_agents,
            "supports_custom_images": self.supports_custom_images,
            "sharing": self.sharing,
            "portability": self.portability,
        }


@dataclass
class AgentSession:
    """Live handle for an agent, owned by the backend that created it."""

    agent_id: str
    agent_type: str
    team_id: str
    runtime_type: str
    session_id: str
    workspace_path: str
    status: AgentState = AgentState.INITIALIZING
    start_time: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    resources: ResourceSnapshot = field(default_factory=ResourceSnapshot)
    warnings: list[ConfigurationWarning] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    config: AgentConfig | None = None

    def transition(self, target: AgentState) -> None:
        """Move to a new state, enforcing the lifecycle."""
        if target == self.status:
            return
        if target != AgentState.DESTROYED and target not in _TRANSITIONS[self.status]:
            raise InvalidStateError(self.agent_id, self.status.value, target.value)
        self.status = target

    def touch(self) -> None:
        self.last_activity = datetime.now()

    @property
    def alive(self) -> bool:
        return self.status != AgentState.DESTROYED

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    def mark_completed(self) -> None:
        """Called by the orchestration layer when the agent's work is done."""
        self.transition(AgentState.COMPLETED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_type": self.agent_type,
            "team_id": self.team_id,
            "status": self.status.value,
            "runtime_type": self.runtime_type,
            "session_id": self.session_id,
            "workspace_path": self.workspace_path,
            "start_time": self.start_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "resources": self.resources.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class AgentStatus:
    """Point-in-time view of an agent."""

    agent_id: str
    status: AgentState
    current_task: str | None = None
    resources: ResourceSnapshot = field(default_factory=ResourceSnapshot)
    logs: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    last_update: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "status": self.status.value,
            "current_task": self.current_task,
            "resources": self.resources.to_dict(),
            "logs": self.logs,
            "files": self.files,
            "last_update": self.last_update.isoformat(),
        }


@dataclass
class TeamWorkspace:
    """A group of agents sharing a host directory (and, for containers, a volume)."""

    team_id: str
    workspace_path: str
    shared_path: str
    agents: set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_id": self.team_id,
            "workspace_path": self.workspace_path,
            "shared_path": self.shared_path,
            "agents": sorted(self.agents),
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class TransferReport:
    """Per-file outcome of a transfer between two agents."""

    from_agent: str
    to_agent: str
    transferred: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "transferred": self.transferred,
            "failed": self.failed,
        }
