"""
Container Pool - Pre-warmed instances for fast agent spawning.

Keeps at most one started-but-unconfigured instance per archetype. A claim
removes the entry before anything awaits, so two concurrent claims for the
same archetype can never receive the same instance, and schedules a tracked
replenishment task. Replenishment failures are logged and emitted, never
raised to the claimer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from agent_fabric.events import EventBus, EventType

logger = logging.getLogger("fabric.pool")


@dataclass
class PoolEntry:
    """One pending (unclaimed) pooled instance."""

    archetype: str
    name: str                      # Container name
    image: str
    staging_path: str              # Host directory mounted at /workspace
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "archetype": self.archetype,
            "name": self.name,
            "image": self.image,
            "staging_path": self.staging_path,
            "created_at": self.created_at.isoformat(),
        }


# Creates a pooled instance for an archetype
Provisioner = Callable[[str], Awaitable[PoolEntry]]
# Removes an unclaimed pooled instance
Discarder = Callable[[PoolEntry], Awaitable[None]]


class ContainerPool:
    """
    Pool of pre-warmed instances keyed by archetype.

    The pool does not know how instances are made; it is handed a
    provisioner and a discarder by the container backend.
    """

    def __init__(
        self,
        provision: Provisioner,
        discard: Discarder,
        events: EventBus | None = None,
    ) -> None:
        self._provision = provision
        self._discard = discard
        self._events = events
        self._entries: dict[str, PoolEntry] = {}
        self._replenishing: dict[str, asyncio.Task[None]] = {}
        self._closed = False

        # Counters
        self.hits = 0
        self.misses = 0
        self.replenish_failures = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, archetype: object) -> bool:
        return archetype in self._entries

    @property
    def archetypes(self) -> list[str]:
        return sorted(self._entries)

    def peek(self, archetype: str) -> PoolEntry | None:
        return self._entries.get(archetype)

    async def warm(self, archetypes: list[str]) -> int:
        """
        Pre-warm one instance per archetype, concurrently.

        Returns:
            Number of archetypes with a pending instance afterwards
        """
        logger.info(f"Warming container pool for {len(archetypes)} archetypes")
        await asyncio.gather(*(self._fill(a) for a in archetypes))
        logger.info(f"Container pool has {len(self._entries)} pre-warmed instances")
        return len(self._entries)

    def claim(self, archetype: str, image: str | None = None) -> PoolEntry | None:
        """
        Take the pending instance for an archetype.

        Args:
            archetype: Agent archetype tag
            image: Required image; a pooled instance built from another
                image does not match

        Returns:
            The claimed entry, or None on a miss
        """
        entry = self._entries.get(archetype)
        if entry is None or (image is not None and entry.image != image):
            self.misses += 1
            return None

        del self._entries[archetype]
        self.hits += 1
        logger.info(f"Claimed pooled instance {entry.name} for {archetype}")
        self.schedule_replenish(archetype)
        return entry

    def schedule_replenish(self, archetype: str) -> asyncio.Task[None] | None:
        """Start a background replenishment unless one is already running."""
        if self._closed:
            return None
        running = self._replenishing.get(archetype)
        if running and not running.done():
            return running

        task = asyncio.create_task(self.replenish(archetype), name=f"pool-replenish-{archetype}")
        self._replenishing[archetype] = task
        task.add_done_callback(lambda t: self._forget(archetype, t))
        return task

    def _forget(self, archetype: str, task: asyncio.Task[None]) -> None:
        if self._replenishing.get(archetype) is task:
            del self._replenishing[archetype]

    async def replenish(self, archetype: str) -> None:
        """Create a pending instance for an archetype if none exists. Never raises."""
        if archetype in self._entries or self._closed:
            return
        await self._fill(archetype)
        if archetype in self._entries:
            await self._emit(
                EventType.POOL_REPLENISHED,
                {"archetype": archetype, "name": self._entries[archetype].name},
            )

    async def _fill(self, archetype: str) -> None:
        try:
            entry = await self._provision(archetype)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.replenish_failures += 1
            logger.warning(f"Failed to pre-warm instance for {archetype}: {e}")
            await self._emit(
                EventType.POOL_REPLENISH_FAILED,
                {"archetype": archetype, "error": str(e)},
            )
            return

        if self._closed or archetype in self._entries:
            # Pool closed, or another fill won the race: drop the surplus
            await self._safe_discard(entry)
            return
        self._entries[archetype] = entry
        logger.debug(f"Pooled instance {entry.name} ready for {archetype}")

    async def wait_idle(self) -> None:
        """Wait for every in-flight replenishment to finish."""
        while self._replenishing:
            await asyncio.gather(*list(self._replenishing.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel replenishment and discard every pending instance."""
        self._closed = True
        tasks = list(self._replenishing.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._replenishing.clear()

        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._safe_discard(entry)
        logger.info(f"Container pool shut down ({len(entries)} instances discarded)")

    def reopen(self) -> None:
        """Allow the pool to be warmed again after shutdown."""
        self._closed = False

    async def _safe_discard(self, entry: PoolEntry) -> None:
        try:
            await self._discard(entry)
        except Exception as e:
            logger.warning(f"Failed to discard pooled instance {entry.name}: {e}")

    async def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self._events is not None:
            await self._events.emit(event_type, payload, source_id="pool")

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "entries": {a: e.to_dict() for a, e in self._entries.items()},
            "replenishing": sorted(self._replenishing),
            "hits": self.hits,
            "misses": self.misses,
            "replenish_failures": self.replenish_failures,
        }
