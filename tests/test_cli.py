"""Tests for the agent-fabric CLI."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from agent_fabric.cli import app
from agent_fabric.manager import RuntimeManager
from conftest import FakeBackend

cli = CliRunner()


@pytest.fixture
def fake_manager(fabric_config, event_bus):
    """Patch the CLI so every manager it builds uses in-memory backends."""
    built: list[RuntimeManager] = []

    def factory(config=None):
        manager = RuntimeManager(
            fabric_config,
            event_bus,
            backends=[
                FakeBackend("container", fabric_config, event_bus, available=False),
                FakeBackend("tmux", fabric_config, event_bus),
            ],
        )
        built.append(manager)
        return manager

    with patch("agent_fabric.cli.RuntimeManager", side_effect=factory):
        yield built


def test_help() -> None:
    result = cli.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "check" in result.stdout
    assert "sweep" in result.stdout


def test_check_lists_every_backend(fake_manager) -> None:
    result = cli.invoke(app, ["check"])

    assert result.exit_code == 0
    assert "container" in result.stdout
    assert "tmux" in result.stdout


def test_status_reports_active_runtime(fake_manager) -> None:
    result = cli.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "Active runtime" in result.stdout
    assert "tmux" in result.stdout
    assert fake_manager[0].initialized is False


def test_run_executes_and_cleans_up(fake_manager) -> None:
    result = cli.invoke(app, ["run", "echo hi", "--type", "qa-testing", "--id", "qa-1"])

    assert result.exit_code == 0
    assert "ran echo hi" in result.stdout
    backend = fake_manager[0].registry.get("tmux")
    assert backend.executed == ["echo hi"]
    assert backend.torn_down == ["qa-1"]


def test_run_reads_agent_file(fake_manager, tmp_path) -> None:
    agent_file = tmp_path / "agent.yaml"
    agent_file.write_text("agentType: backend-engineer\nagentId: be-7\ntools: [git]\n")

    result = cli.invoke(app, ["run", "make test", "--agent", str(agent_file)])

    assert result.exit_code == 0
    assert fake_manager[0].registry.get("tmux").torn_down == ["be-7"]


def test_no_runtime_available(fabric_config, event_bus) -> None:
    def factory(config=None):
        return RuntimeManager(
            fabric_config,
            event_bus,
            backends=[FakeBackend("tmux", fabric_config, event_bus, available=False)],
        )

    with patch("agent_fabric.cli.RuntimeManager", side_effect=factory):
        result = cli.invoke(app, ["run", "true"])

    assert result.exit_code == 1
