"""Periodic persistence of a controller's live playback state."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Callable, Optional

from .metrics import PlaybackMetrics
from .state import PlaybackSnapshot, utcnow
from .stores import SnapshotStore

__all__ = ["StateSnapshotter"]

SnapshotSource = Callable[[dt.datetime], Optional[PlaybackSnapshot]]


class StateSnapshotter:
    """Write ``source(now)`` to the snapshot store every ``interval`` seconds.

    ``source`` is the owning controller's synchronous ``capture_snapshot``; it
    returns ``None`` while nothing is playing or paused, in which case the tick
    writes nothing and the previous record stays untouched. Writes are
    serialised, so ``last_update_time`` never goes backwards for the guild.
    """

    def __init__(
        self,
        guild_id: int,
        source: SnapshotSource,
        store: SnapshotStore,
        *,
        interval: float = 1.0,
        clock: Callable[[], dt.datetime] = utcnow,
        metrics: Optional[PlaybackMetrics] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.guild_id = guild_id
        self.source = source
        self.store = store
        self.interval = interval
        self.clock = clock
        self.metrics = metrics
        self.logger = logger or logging.getLogger("encore.music.snapshotter")
        self._write_lock = asyncio.Lock()
        self._last_written: Optional[dt.datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("Snapshotter has been closed")
        if self.running:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"encore-snapshot-{self.guild_id}"
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> Optional[PlaybackSnapshot]:
        """Write one snapshot if the controller is active; never raises."""

        if self._closed:
            return None
        return await self._write()

    async def force_update(self) -> Optional[PlaybackSnapshot]:
        """Write immediately, outside the timer. Used before shutdown and on seek."""

        if self._closed:
            return None
        return await self._write()

    async def _write(self) -> Optional[PlaybackSnapshot]:
        async with self._write_lock:
            now = self.clock()
            if self._last_written is not None and now < self._last_written:
                now = self._last_written
            try:
                snapshot = self.source(now)
            except Exception as exc:
                self.logger.warning(
                    "Could not capture playback state",
                    extra={"guild_id": self.guild_id, "error": str(exc)},
                )
                return None
            if snapshot is None:
                return None
            try:
                await self.store.set(snapshot)
            except Exception as exc:
                if self.metrics:
                    self.metrics.record_snapshot_write(ok=False)
                self.logger.warning(
                    "Snapshot write failed",
                    extra={"guild_id": self.guild_id, "error": str(exc)},
                )
                return None
            if self.metrics:
                self.metrics.record_snapshot_write(ok=True)
            self._last_written = snapshot.last_update_time
            return snapshot

    async def close(self) -> None:
        """Stop the timer. Safe to call repeatedly."""

        self._closed = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
