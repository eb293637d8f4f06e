"""
Tests for the event bus.
"""

from __future__ import annotations

import pytest

from agent_fabric.events import Event, EventBus, EventType


class TestEventBus:
    """Test EventBus."""

    @pytest.mark.asyncio
    async def test_subscribe_and_emit(self) -> None:
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        bus.subscribe(EventType.AGENT_CREATED, handler)
        await bus.emit(EventType.AGENT_CREATED, {"agent_id": "a1"}, source_id="a1")
        await bus.emit(EventType.AGENT_DESTROYED, {"agent_id": "a1"})

        assert len(received) == 1
        assert received[0].payload["agent_id"] == "a1"
        assert received[0].source_id == "a1"

    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        unsubscribe = bus.subscribe(EventType.TEAM_CREATED, handler)
        unsubscribe()
        await bus.emit(EventType.TEAM_CREATED, {"team_id": "t"})

        assert received == []

    @pytest.mark.asyncio
    async def test_subscribe_all(self) -> None:
        bus = EventBus()
        seen: list[EventType] = []

        async def handler(event: Event) -> None:
            seen.append(event.event_type)

        bus.subscribe_all(handler)
        await bus.emit(EventType.RUNTIME_SELECTED, {})
        await bus.emit(EventType.POOL_CLAIMED, {})

        assert seen == [EventType.RUNTIME_SELECTED, EventType.POOL_CLAIMED]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_propagate(self) -> None:
        bus = EventBus()
        received: list[Event] = []

        async def broken(event: Event) -> None:
            raise RuntimeError("handler bug")

        async def healthy(event: Event) -> None:
            received.append(event)

        bus.subscribe(EventType.AGENT_ERROR, broken)
        bus.subscribe(EventType.AGENT_ERROR, healthy)
        await bus.emit(EventType.AGENT_ERROR, {"error": "x"})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_history_filter_and_limit(self) -> None:
        bus = EventBus(max_history=3)
        for i in range(4):
            await bus.emit(EventType.AGENT_COMMAND_EXECUTED, {"n": i})
        await bus.emit(EventType.AGENT_RESET, {})

        history = bus.get_history()
        assert len(history) == 3
        assert history[-1].event_type == EventType.AGENT_RESET

        executed = bus.get_history(EventType.AGENT_COMMAND_EXECUTED, limit=1)
        assert [e.payload["n"] for e in executed] == [3]

        bus.clear_history()
        assert bus.get_history() == []

    def test_event_to_dict(self) -> None:
        event = Event(event_type=EventType.FILES_TRANSFERRED, payload={"transferred": ["a"]})
        data = event.to_dict()
        assert data["event_type"] == "files.transferred"
        assert data["payload"] == {"transferred": ["a"]}
