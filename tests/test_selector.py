"""
Tests for runtime selection and switching.
"""

from __future__ import annotations

import pytest

from agent_fabric.errors import BackendUnavailableError, SelectionError
from agent_fabric.events import EventType
from agent_fabric.models import IsolationLevel
from agent_fabric.registry import RuntimeRegistry
from agent_fabric.selector import RuntimeSelector


async def build(make_backend, event_bus, **availability):
    registry = RuntimeRegistry()
    backends = {}
    for name in ("container", "tmux"):
        backends[name] = make_backend(
            name,
            available=availability.get(name, True),
            isolation=IsolationLevel.KERNEL if name == "container" else IsolationLevel.PROCESS,
        )
        registry.register(backends[name])
    await registry.detect_available_runtimes()
    return RuntimeSelector(registry, ["container", "tmux"], event_bus), backends


class TestSelection:
    """Test RuntimeSelector.select."""

    @pytest.mark.asyncio
    async def test_auto_picks_first_in_chain(self, make_backend, event_bus) -> None:
        selector, backends = await build(make_backend, event_bus)

        backend = await selector.select("auto")

        assert backend is backends["container"]
        assert backends["container"].setup_calls == 1
        assert backends["tmux"].setup_calls == 0

    @pytest.mark.asyncio
    async def test_auto_skips_unavailable(self, make_backend, event_bus) -> None:
        selector, backends = await build(make_backend, event_bus, container=False)
        assert (await selector.select()).name == "tmux"

    @pytest.mark.asyncio
    async def test_explicit_preference_honored(self, make_backend, event_bus) -> None:
        selector, _ = await build(make_backend, event_bus)
        assert (await selector.select("tmux")).name == "tmux"

    @pytest.mark.asyncio
    async def test_unavailable_preference_falls_back(self, make_backend, event_bus) -> None:
        """Test availability wins over preference without raising."""
        selector, _ = await build(make_backend, event_bus, tmux=False)
        assert (await selector.select("tmux")).name == "container"

    @pytest.mark.asyncio
    async def test_unknown_preference_falls_back(self, make_backend, event_bus) -> None:
        selector, _ = await build(make_backend, event_bus)
        assert (await selector.select("firecracker")).name == "container"

    @pytest.mark.asyncio
    async def test_configurable_chain(self, make_backend, event_bus) -> None:
        selector, _ = await build(make_backend, event_bus)
        selector.fallback_chain = ["tmux", "container"]
        assert (await selector.select()).name == "tmux"

    @pytest.mark.asyncio
    async def test_initialize_failure_is_selection_error(self, make_backend, event_bus) -> None:
        selector, backends = await build(make_backend, event_bus)

        async def broken_setup() -> None:
            raise OSError("disk full")

        backends["container"]._setup = broken_setup
        with pytest.raises(SelectionError):
            await selector.select()
        assert selector.active is None

    @pytest.mark.asyncio
    async def test_selection_event(self, make_backend, event_bus) -> None:
        selector, _ = await build(make_backend, event_bus)
        await selector.select()

        events = event_bus.get_history(EventType.RUNTIME_SELECTED)
        assert events[-1].payload["runtime"] == "container"
        assert events[-1].payload["capabilities"]["isolation_level"] == "kernel"


class TestSwitching:
    """Test RuntimeSelector.switch."""

    @pytest.mark.asyncio
    async def test_switch_to_active_is_noop(self, make_backend, event_bus) -> None:
        selector, backends = await build(make_backend, event_bus)
        await selector.select()

        await selector.switch("container")

        assert backends["container"].shutdown_calls == 0
        assert backends["container"].setup_calls == 1
        assert event_bus.get_history(EventType.RUNTIME_SWITCHED) == []

    @pytest.mark.asyncio
    async def test_switch_to_unavailable_rejected(self, make_backend, event_bus) -> None:
        selector, backends = await build(make_backend, event_bus, tmux=False)
        await selector.select()

        with pytest.raises(BackendUnavailableError):
            await selector.switch("tmux")
        assert selector.active is backends["container"]
        assert backends["container"].shutdown_calls == 0

    @pytest.mark.asyncio
    async def test_switch_tears_down_old_backend(self, make_backend, event_bus) -> None:
        selector, backends = await build(make_backend, event_bus)
        old = await selector.select()
        await old.create_agent("a1", {"agentType": "qa-testing"})

        new = await selector.switch("tmux")

        assert new is backends["tmux"]
        assert selector.active is new
        assert old.shutdown_calls == 1
        assert old.list_agents() == []
        assert old.torn_down == ["a1"]
        assert new.setup_calls == 1

        switched = event_bus.get_history(EventType.RUNTIME_SWITCHED)[-1].payload
        assert switched["from_runtime"] == "container"
        assert switched["to_runtime"] == "tmux"
        assert switched["from_capabilities"]["isolation_level"] == "kernel"
        assert switched["to_capabilities"]["isolation_level"] == "process"
