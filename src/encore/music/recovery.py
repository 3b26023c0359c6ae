"""Resume playback after a process restart from persisted snapshots."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import nextcord

from .errors import MissingResourceError, StaleStateError
from .metrics import PlaybackMetrics
from .registry import PlayerRegistry
from .state import PlaybackSnapshot, utcnow
from .stores import MusicStores

__all__ = [
    "RecoveryCoordinator",
    "RecoveryOutcome",
    "RecoveryReport",
    "NextcordGuildDirectory",
    "STALENESS_THRESHOLD",
]

STALENESS_THRESHOLD = dt.timedelta(minutes=15)


class RecoveryOutcome(str, Enum):
    RECOVERED = "recovered"
    NO_SNAPSHOT = "no_snapshot"
    STALE = "stale"
    MISSING = "missing"
    FAILED = "failed"


@dataclass
class RecoveryReport:
    outcomes: Dict[int, RecoveryOutcome] = field(default_factory=dict)

    def count(self, outcome: RecoveryOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value is outcome)

    @property
    def recovered(self) -> List[int]:
        return sorted(g for g, o in self.outcomes.items() if o is RecoveryOutcome.RECOVERED)

    def summary(self) -> Dict[str, int]:
        return dict(Counter(outcome.value for outcome in self.outcomes.values()))


class GuildDirectory(Protocol):
    """Lookups against the live guild roster."""

    def voice_channel(self, guild_id: int, channel_id: int) -> Any:
        """Return the channel or raise :class:`MissingResourceError`."""

    def notification_channel(self, guild_id: int, configured_id: Optional[int]) -> Optional[Any]:
        ...


class NextcordGuildDirectory:
    def __init__(self, bot: Any) -> None:
        self.bot = bot

    def _guild(self, guild_id: int) -> Any:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise MissingResourceError(f"Guild {guild_id} is not available")
        return guild

    def voice_channel(self, guild_id: int, channel_id: int) -> Any:
        channel = self._guild(guild_id).get_channel(channel_id)
        if not isinstance(channel, (nextcord.VoiceChannel, nextcord.StageChannel)):
            raise MissingResourceError(
                f"Voice channel {channel_id} no longer exists in guild {guild_id}"
            )
        return channel

    def notification_channel(self, guild_id: int, configured_id: Optional[int]) -> Optional[Any]:
        try:
            guild = self._guild(guild_id)
        except MissingResourceError:
            return None
        me = guild.me

        def _can_send(channel: Any) -> bool:
            return channel is not None and channel.permissions_for(me).send_messages

        if configured_id:
            configured = guild.get_channel(configured_id)
            if isinstance(configured, nextcord.TextChannel) and _can_send(configured):
                return configured
        for channel in guild.text_channels:
            if _can_send(channel):
                return channel
        return guild.system_channel


def _format_position(ms: int) -> str:
    seconds = max(0, ms // 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


class RecoveryCoordinator:
    """Restore every guild with a usable snapshot, at most ``concurrency`` at once.

    Each guild is recovered in isolation: a failure is logged, its snapshot is
    discarded and the other guilds carry on. A snapshot is deleted after every
    attempt except a cancelled one, so a later restart can retry that guild.
    """

    def __init__(
        self,
        stores: MusicStores,
        registry: PlayerRegistry,
        directory: GuildDirectory,
        *,
        concurrency: int = 5,
        staleness: dt.timedelta = STALENESS_THRESHOLD,
        clock: Callable[[], dt.datetime] = utcnow,
        metrics: Optional[PlaybackMetrics] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.stores = stores
        self.registry = registry
        self.directory = directory
        self.concurrency = max(1, concurrency)
        self.staleness = staleness
        self.clock = clock
        self.metrics = metrics
        self.logger = logger or logging.getLogger("encore.music.recovery")
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def run(self, guild_ids: Iterable[int]) -> RecoveryReport:
        if self._started:
            raise RuntimeError("Recovery has already run for this process")
        self._started = True
        targets = sorted(set(guild_ids))
        semaphore = asyncio.Semaphore(self.concurrency)
        report = RecoveryReport()

        async def _bounded(guild_id: int) -> None:
            async with semaphore:
                report.outcomes[guild_id] = await self.recover_guild(guild_id)

        self.logger.info("Starting playback recovery", extra={"guild_count": len(targets)})
        await asyncio.gather(*(_bounded(guild_id) for guild_id in targets))
        self.logger.info("Playback recovery finished", extra={"outcomes": report.summary()})
        return report

    async def recover_guild(self, guild_id: int) -> RecoveryOutcome:
        try:
            snapshot = await self.stores.snapshots.get(guild_id)
        except Exception as exc:
            self.logger.error(
                "Could not read playback snapshot",
                extra={"guild_id": guild_id, "error": str(exc)},
            )
            await self._discard(guild_id)
            return self._record(RecoveryOutcome.FAILED)
        if snapshot is None:
            return self._record(RecoveryOutcome.NO_SNAPSHOT)

        try:
            await self._restore(snapshot)
            outcome = RecoveryOutcome.RECOVERED
        except asyncio.CancelledError:
            self.logger.warning(
                "Recovery cancelled, keeping snapshot for the next start",
                extra={"guild_id": guild_id},
            )
            raise
        except StaleStateError as exc:
            self.logger.info("Discarding stale snapshot", extra={"guild_id": guild_id, "reason": str(exc)})
            outcome = RecoveryOutcome.STALE
        except MissingResourceError as exc:
            self.logger.warning(
                "Recovery skipped: %s", exc, extra={"guild_id": guild_id}
            )
            outcome = RecoveryOutcome.MISSING
        except Exception as exc:
            self.logger.error(
                "Recovery failed", exc_info=exc, extra={"guild_id": guild_id}
            )
            outcome = RecoveryOutcome.FAILED

        await self._discard(guild_id)
        return self._record(outcome)

    async def _restore(self, snapshot: PlaybackSnapshot) -> None:
        guild_id = snapshot.guild_id
        now = self.clock()
        if snapshot.is_stale(self.staleness, now):
            raise StaleStateError(f"snapshot is {snapshot.age(now)} old")

        channel = self.directory.voice_channel(guild_id, snapshot.voice_channel_id)

        queue, current = await self.stores.queues.load(guild_id)
        if not len(queue):
            raise MissingResourceError(f"Queue for guild {guild_id} is empty")
        if current is None:
            raise MissingResourceError(f"Guild {guild_id} has no current track")

        settings = await self.stores.settings.get(guild_id)
        notify_channel = self.directory.notification_channel(guild_id, settings.music_channel_id)

        controller = await self.registry.get_or_create(guild_id, getattr(channel, "id", snapshot.voice_channel_id))
        try:
            playing = await controller.resume_from(snapshot, current)
            if playing is None:
                raise MissingResourceError(f"Nothing in guild {guild_id}'s queue could be loaded")
        except Exception:
            await self._abandon(guild_id)
            raise

        self.logger.info(
            "Resumed playback: %s",
            playing.title,
            extra={
                "guild_id": guild_id,
                "entry_index": playing.index,
                "position": snapshot.position,
                "paused": snapshot.is_paused,
            },
        )
        await self._notify(notify_channel, guild_id, playing.title, snapshot)

    async def _notify(
        self, channel: Optional[Any], guild_id: int, title: str, snapshot: PlaybackSnapshot
    ) -> None:
        if channel is None:
            return
        state = "paused at" if snapshot.is_paused else "resumed from"
        try:
            await channel.send(
                f"▶️ Playback restored after a restart: **{title}** {state} "
                f"`{_format_position(snapshot.position)}`."
            )
        except Exception as exc:
            self.logger.warning(
                "Could not post recovery notice", extra={"guild_id": guild_id, "error": str(exc)}
            )

    async def _abandon(self, guild_id: int) -> None:
        try:
            await self.registry.remove(guild_id)
        except Exception as exc:
            self.logger.warning(
                "Could not tear down controller after failed recovery",
                extra={"guild_id": guild_id, "error": str(exc)},
            )

    async def _discard(self, guild_id: int) -> None:
        try:
            await self.stores.snapshots.delete(guild_id)
        except Exception as exc:
            self.logger.warning(
                "Could not delete playback snapshot",
                extra={"guild_id": guild_id, "error": str(exc)},
            )

    def _record(self, outcome: RecoveryOutcome) -> RecoveryOutcome:
        if self.metrics:
            self.metrics.record_recovery(outcome.value)
        return outcome
