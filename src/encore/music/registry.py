"""Explicit owner of the one-controller-per-guild invariant."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .controller import PlaybackController
from .stores import SnapshotStore

__all__ = ["PlayerRegistry"]

ControllerFactory = Callable[[int, int], Awaitable[PlaybackController]]


class PlayerRegistry:
    """Live controllers keyed by guild id.

    ``factory(guild_id, voice_channel_id)`` joins the voice channel and returns
    a started controller. The registry owns every controller it hands out and
    is the only place that creates or closes them.
    """

    def __init__(
        self,
        factory: ControllerFactory,
        snapshots: SnapshotStore,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.factory = factory
        self.snapshots = snapshots
        self.logger = logger or logging.getLogger("encore.music.registry")
        self._controllers: Dict[int, PlaybackController] = {}
        self._creation_locks: Dict[int, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def __contains__(self, guild_id: object) -> bool:
        return guild_id in self._controllers

    def get(self, guild_id: int) -> Optional[PlaybackController]:
        return self._controllers.get(guild_id)

    def guild_ids(self) -> List[int]:
        return list(self._controllers)

    async def get_or_create(self, guild_id: int, voice_channel_id: int) -> PlaybackController:
        existing = self._controllers.get(guild_id)
        if existing is not None and not existing.closed:
            return existing
        lock = self._creation_locks.setdefault(guild_id, asyncio.Lock())
        async with lock:
            existing = self._controllers.get(guild_id)
            if existing is not None and not existing.closed:
                return existing
            controller = await self.factory(guild_id, voice_channel_id)
            self._controllers[guild_id] = controller
            self.logger.info(
                "Created playback controller",
                extra={"guild_id": guild_id, "voice_channel_id": voice_channel_id},
            )
            return controller

    async def remove(
        self,
        guild_id: int,
        *,
        discard_snapshot: bool = False,
        disconnect: bool = True,
    ) -> bool:
        controller = self._controllers.pop(guild_id, None)
        if controller is not None:
            await controller.close(disconnect=disconnect)
        lock = self._creation_locks.get(guild_id)
        # A held lock belongs to a creation still in flight.
        if lock is not None and not lock.locked():
            del self._creation_locks[guild_id]
        if discard_snapshot:
            await self.snapshots.delete(guild_id)
        return controller is not None

    async def close_all(self) -> None:
        """Flush a last snapshot for every guild, then close the controllers.

        Snapshots are kept so the next process start can resume playback.
        """

        controllers = list(self._controllers.values())
        self._controllers.clear()
        self._creation_locks.clear()
        for controller in controllers:
            await controller.snapshotter.force_update()
        await asyncio.gather(*(controller.close() for controller in controllers))
