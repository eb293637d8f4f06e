"""
Agent Fabric - Isolated runtimes for agent teams.

Supports:
- Container: docker, kernel-level isolation with hard limits and a warm pool
- Tmux: multiplexed sessions, process-level isolation

The RuntimeManager detects which backends work on the host and routes
every lifecycle call to the active one:
- Availability detection (concurrent probes)
- Preference with fallback chain
- Runtime switching
"""

from agent_fabric.base import RuntimeBackend
from agent_fabric.config import FabricConfig, get_fabric_config, set_fabric_config
from agent_fabric.container import ContainerBackend
from agent_fabric.errors import (
    AgentError,
    BackendUnavailableError,
    CommandCancelledError,
    CommandTimeoutError,
    ConfigurationWarning,
    DuplicateAgentError,
    FabricError,
    InvalidStateError,
    NotInitializedError,
    ProvisionError,
    SelectionError,
    UnknownAgentError,
)
from agent_fabric.events import Event, EventBus, EventType
from agent_fabric.manager import RuntimeManager
from agent_fabric.models import (
    AgentConfig,
    AgentSession,
    AgentState,
    AgentStatus,
    CapabilitySet,
    CommandOptions,
    CommandResult,
    IsolationLevel,
    ResourceSnapshot,
    TeamWorkspace,
    TransferReport,
)
from agent_fabric.pool import ContainerPool, PoolEntry
from agent_fabric.registry import RuntimeRegistry, default_backends
from agent_fabric.selector import RuntimeSelector
from agent_fabric.tmux import TmuxBackend

__all__ = [
    # Manager
    "RuntimeManager",
    "RuntimeRegistry",
    "RuntimeSelector",
    "default_backends",
    # Backends
    "RuntimeBackend",
    "ContainerBackend",
    "TmuxBackend",
    "ContainerPool",
    "PoolEntry",
    # Models
    "AgentConfig",
    "AgentSession",
    "AgentState",
    "AgentStatus",
    "CapabilitySet",
    "CommandOptions",
    "CommandResult",
    "IsolationLevel",
    "ResourceSnapshot",
    "TeamWorkspace",
    "TransferReport",
    # Config
    "FabricConfig",
    "get_fabric_config",
    "set_fabric_config",
    # Events
    "Event",
    "EventBus",
    "EventType",
    # Errors
    "FabricError",
    "AgentError",
    "BackendUnavailableError",
    "CommandCancelledError",
    "CommandTimeoutError",
    "ConfigurationWarning",
    "DuplicateAgentError",
    "InvalidStateError",
    "NotInitializedError",
    "ProvisionError",
    "SelectionError",
    "UnknownAgentError",
]

__version__ = "0.1.0"
