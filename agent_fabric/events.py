"""
Agent Fabric - Event System

Lifecycle events emitted by the runtime layer. The orchestration layer
subscribes to these for progress reporting; nothing here assumes how the
events are rendered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine
from uuid import uuid4

logger = logging.getLogger("fabric.events")


class EventType(str, Enum):
    """Types of events emitted by the runtime layer."""

    # Runtime events
    RUNTIME_INITIALIZED = "runtime.initialized"
    RUNTIME_SELECTED = "runtime.selected"
    RUNTIME_SWITCHED = "runtime.switched"
    PREFERENCE_CHANGED = "runtime.preference_changed"
    RUNTIME_SHUTDOWN = "runtime.shutdown"

    # Agent events
    AGENT_CREATED = "agent.created"
    AGENT_COMMAND_EXECUTED = "agent.command_executed"
    AGENT_RESET = "agent.reset"
    AGENT_DESTROYED = "agent.destroyed"
    AGENT_ERROR = "agent.error"
    FILES_TRANSFERRED = "files.transferred"

    # Team events
    TEAM_CREATED = "team.created"
    TEAM_DESTROYED = "team.destroyed"

    # Pool events
    POOL_CLAIMED = "pool.claimed"
    POOL_REPLENISHED = "pool.replenished"
    POOL_REPLENISH_FAILED = "pool.replenish_failed"


@dataclass
class Event:
    """Represents an event in the system."""

    event_type: EventType
    payload: dict[str, Any]
    source_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "source_id": self.source_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


# Type alias for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """
    Event bus for runtime lifecycle events.

    Supports:
    - Async event handlers
    - Multiple handlers per event type
    - Catch-all subscribers
    - Event history for debugging and tests
    """

    def __init__(self, max_history: int = 1000) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._catch_all: list[EventHandler] = []
        self._history: list[Event] = []
        self._max_history = max_history

    def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to
            handler: Async function to call when event occurs

        Returns:
            Unsubscribe function
        """
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed handler to {event_type.value}")

        def unsubscribe() -> None:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to every event type."""
        self._catch_all.append(handler)

        def unsubscribe() -> None:
            if handler in self._catch_all:
                self._catch_all.remove(handler)

        return unsubscribe

    async def publish(self, event: Event) -> None:
        """
        Publish an event to all subscribers.

        Handler failures are logged and never propagate to the emitter.
        """
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        handlers = self._handlers.get(event.event_type, []) + self._catch_all
        if not handlers:
            return

        results = await asyncio.gather(
            *(handler(event) for handler in handlers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for {event.event_type.value}: {result}")

    async def emit(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        source_id: str | None = None,
        **metadata: Any,
    ) -> Event:
        """
        Create and publish an event.

        Args:
            event_type: Type of event
            payload: Event data
            source_id: ID of the event source (runtime name or agent id)
            **metadata: Additional metadata

        Returns:
            The created event
        """
        event = Event(
            event_type=event_type,
            payload=payload,
            source_id=source_id,
            metadata=metadata,
        )
        await self.publish(event)
        return event

    def get_history(
        self,
        event_type: EventType | None = None,
        limit: int = 100,
    ) -> list[Event]:
        """
        Get event history.

        Args:
            event_type: Filter by event type (optional)
            limit: Maximum events to return

        Returns:
            List of events (most recent last)
        """
        events = self._history
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()
