"""
Tests for shared types, configuration, errors and resource helpers.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from agent_fabric.base import safe_name
from agent_fabric.config import FabricConfig
from agent_fabric.errors import (
    CommandTimeoutError,
    ConfigurationWarning,
    ErrorSeverity,
    InvalidStateError,
    NotInitializedError,
    RecoveryStrategy,
)
from agent_fabric.models import (
    AgentConfig,
    AgentSession,
    AgentState,
    CapabilitySet,
    IsolationLevel,
    ResourceSnapshot,
    TransferReport,
)
from agent_fabric.resources import list_files, parse_docker_stats, parse_size


def make_session(**kwargs) -> AgentSession:
    defaults = dict(
        agent_id="a1",
        agent_type="backend-engineer",
        team_id="t1",
        runtime_type="tmux",
        session_id="agent-t1-backend-engineer-a1",
        workspace_path="/tmp/ws",
    )
    defaults.update(kwargs)
    return AgentSession(**defaults)


# ============================================================================
# AgentConfig Tests
# ============================================================================


class TestAgentConfig:
    """Test AgentConfig."""

    def test_accepts_camel_case(self) -> None:
        """Test keys as written in agent definition files."""
        config = AgentConfig.model_validate({
            "agentType": "frontend-engineer",
            "teamId": "web",
            "memoryLimit": "512m",
            "cpuLimit": 1.5,
            "baseImage": "node:20",
            "tools": ["git", "npm"],
        })

        assert config.agent_type == "frontend-engineer"
        assert config.team_id == "web"
        assert config.memory_limit == "512m"
        assert config.cpu_limit == 1.5
        assert config.base_image == "node:20"
        assert config.sorted_tools() == ["git", "npm"]

    def test_accepts_snake_case(self) -> None:
        config = AgentConfig(agent_type="qa-testing", team_id="qa")
        assert config.agent_type == "qa-testing"
        assert config.team_id == "qa"

    def test_is_immutable(self) -> None:
        config = AgentConfig(agent_type="qa-testing")
        with pytest.raises(ValidationError):
            config.agent_type = "other"  # type: ignore[misc]

    def test_rejects_non_positive_cpu(self) -> None:
        with pytest.raises(ValidationError):
            AgentConfig(agent_type="x", cpu_limit=0)

    def test_environment_values_become_strings(self) -> None:
        config = AgentConfig(agent_type="x", environment={"PORT": 8080, "DEBUG": True})
        assert config.environment == {"PORT": "8080", "DEBUG": "True"}

    def test_from_file(self, tmp_path: Path) -> None:
        """Test loading a YAML agent file."""
        path = tmp_path / "agent.yaml"
        path.write_text(
            "agentType: backend-engineer\n"
            "agentId: be-1\n"
            "tools: [git, python]\n"
            "environment:\n"
            "  LOG_LEVEL: debug\n"
        )

        config = AgentConfig.from_file(path)

        assert config.agent_id == "be-1"
        assert config.tools == frozenset({"git", "python"})
        assert config.environment["LOG_LEVEL"] == "debug"


# ============================================================================
# State Machine Tests
# ============================================================================


class TestAgentStateMachine:
    """Test AgentSession state transitions."""

    def test_happy_path(self) -> None:
        session = make_session()
        for state in (AgentState.RUNNING, AgentState.WORKING, AgentState.IDLE,
                      AgentState.WORKING, AgentState.IDLE):
            session.transition(state)
        session.mark_completed()
        assert session.status == AgentState.COMPLETED

    def test_illegal_transition_raises(self) -> None:
        session = make_session()
        with pytest.raises(InvalidStateError):
            session.transition(AgentState.WORKING)

    def test_error_only_leaves_through_initializing(self) -> None:
        session = make_session(status=AgentState.ERROR)
        with pytest.raises(InvalidStateError):
            session.transition(AgentState.RUNNING)

        session.transition(AgentState.INITIALIZING)
        session.transition(AgentState.RUNNING)
        assert session.status == AgentState.RUNNING

    @pytest.mark.parametrize("state", list(AgentState))
    def test_destroyed_reachable_from_any_state(self, state: AgentState) -> None:
        session = make_session(status=state)
        session.transition(AgentState.DESTROYED)
        assert not session.alive

    def test_destroyed_is_final(self) -> None:
        session = make_session(status=AgentState.DESTROYED)
        with pytest.raises(InvalidStateError):
            session.transition(AgentState.INITIALIZING)

    def test_degraded_when_warnings_recorded(self) -> None:
        session = make_session()
        assert not session.degraded
        session.warnings.append(ConfigurationWarning("a1", "git-identity", "git not found"))
        assert session.degraded
        assert session.to_dict()["warnings"][0]["step"] == "git-identity"


# ============================================================================
# Result Types Tests
# ============================================================================


class TestResultTypes:
    """Test result dataclasses."""

    def test_resource_snapshot_keys(self) -> None:
        snapshot = ResourceSnapshot(cpu_percent=12.345, memory_mb=100.0, disk_mb=2.5)
        assert snapshot.to_dict() == {"cpu": 12.35, "memory": 100.0, "disk": 2.5}

    def test_capability_set_serializes_isolation(self) -> None:
        caps = CapabilitySet(
            isolation_level=IsolationLevel.KERNEL,
            has_hard_resource_limits=True,
            supports_network_isolation=True,
            supports_persistence=True,
            max_concurrent_agents=100,
        )
        assert caps.to_dict()["isolation_level"] == "kernel"

    def test_transfer_report_ok(self) -> None:
        report = TransferReport(from_agent="a", to_agent="b", transferred=["x"])
        assert report.ok
        report.failed["y"] = "missing"
        assert not report.ok


# ============================================================================
# Configuration Tests
# ============================================================================


class TestFabricConfig:
    """Test FabricConfig."""

    def test_environment_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FABRIC_RUNTIME", "tmux")
        monkeypatch.setenv("FABRIC_FALLBACK_CHAIN", "tmux, container")
        monkeypatch.setenv("FABRIC_BASE_DIR", "/srv/agents")

        config = FabricConfig()

        assert config.preference == "tmux"
        assert config.fallback_chain == ["tmux", "container"]
        assert config.base_dir == "/srv/agents"

    def test_from_dict_ignores_unknown_keys(self) -> None:
        config = FabricConfig.from_dict({"preference": "container", "colour": "blue"})
        assert config.preference == "container"

    def test_from_dict_splits_chain_string(self) -> None:
        config = FabricConfig.from_dict({"fallback_chain": "tmux,container"})
        assert config.fallback_chain == ["tmux", "container"]

    def test_from_file_with_section(self, tmp_path: Path) -> None:
        path = tmp_path / "fabric.yaml"
        path.write_text(
            "fabric:\n"
            "  default_image: node:20\n"
            "  pool_images:\n"
            "    qa-testing: mcr.microsoft.com/playwright:v1.40.0\n"
        )

        config = FabricConfig.from_file(path)

        assert config.image_for("backend-engineer") == "node:20"
        assert config.image_for("qa-testing") == "mcr.microsoft.com/playwright:v1.40.0"

    def test_from_file_rejects_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "fabric.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            FabricConfig.from_file(path)


# ============================================================================
# Error Tests
# ============================================================================


class TestErrors:
    """Test the error hierarchy."""

    def test_timeout_error_details(self) -> None:
        error = CommandTimeoutError("a1", "sleep 100", 2.0)

        data = error.to_dict()
        assert data["code"] == "COMMAND_TIMEOUT"
        assert data["context"]["agent_id"] == "a1"
        assert error.timeout == 2.0

    def test_not_initialized_names_operation(self) -> None:
        error = NotInitializedError("create_agent")
        assert "create_agent" in str(error)
        assert error.severity == ErrorSeverity.HIGH
        assert error.recovery == RecoveryStrategy.ABORT


# ============================================================================
# Helper Tests
# ============================================================================


class TestHelpers:
    """Test naming and resource helpers."""

    def test_safe_name(self) -> None:
        assert safe_name("team one", "backend/engineer", "a.1") == "team-one-backend-engineer-a-1"
        assert safe_name("", "x") == "x"

    def test_parse_size(self) -> None:
        assert parse_size("512B") == 512
        assert parse_size("1KiB") == 1024
        assert parse_size("1.5GB") == 1.5e9
        assert parse_size("garbage") == 0.0

    def test_parse_docker_stats(self) -> None:
        cpu, memory = parse_docker_stats({"CPUPerc": "3.25%", "MemUsage": "64MiB / 7.6GiB"})
        assert cpu == 3.25
        assert memory == 64.0

    def test_list_files(self, tmp_path: Path) -> None:
        (tmp_path / "output").mkdir()
        (tmp_path / "output" / "b.txt").write_text("b")
        (tmp_path / "a.txt").write_text("a")

        assert list_files(tmp_path) == ["a.txt", str(Path("output") / "b.txt")]
        assert list_files(tmp_path / "missing") == []

    def test_list_files_skips_excluded_dirs(self, tmp_path: Path) -> None:
        (tmp_path / "state" / ".exec").mkdir(parents=True)
        (tmp_path / "state" / ".exec" / "abc.out").write_text("x")
        (tmp_path / "state" / "agent.env").write_text("y")

        assert list_files(tmp_path, ["state/.exec"]) == [str(Path("state") / "agent.env")]
