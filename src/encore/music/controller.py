"""Per-guild playback controller.

One controller owns a guild's queue, current-track pointer and settings. Every
mutating entry point (slash commands, backend track events, autoplay appends)
runs under the controller's lock, so a new event for the guild is never
processed while a prior one is still in flight. Track-end decisions come from
the pure functions in :mod:`encore.music.transitions`; this module only
applies their effects to the voice session and the stores.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set

from .audio_backend import EFFECT_PRESETS, TrackHandle
from .autoplay import AutoplayService
from .errors import MissingResourceError, StoreUnavailable, TrackLoadFailure
from .metrics import PlaybackMetrics
from .queue import MusicQueue, QueueEntry
from .snapshotter import StateSnapshotter
from .state import NowPlaying, PlaybackSnapshot, PlayerSettings, RepeatMode, utcnow
from .stores import MusicStores
from .transitions import (
    PlayEntry,
    PlaybackState,
    RemoveEntry,
    StopPlayback,
    TrackEndReason,
    Transition,
    on_skip,
    on_track_end,
)

__all__ = ["PlaybackController", "VoteTally", "AUTOPLAY_REQUESTER"]

AUTOPLAY_REQUESTER = "Autoplay (Last.fm)"

Announcer = Callable[[int, NowPlaying], Awaitable[None]]
Notifier = Callable[[int, str], Awaitable[None]]


class VoiceSession(Protocol):
    """What the controller needs from a joined voice channel."""

    channel_id: Optional[int]
    position: int
    is_playing: bool
    is_paused: bool

    async def play(self, handle: TrackHandle) -> None: ...
    async def pause(self) -> None: ...
    async def resume(self) -> None: ...
    async def seek(self, position: int) -> None: ...
    async def set_volume(self, volume: int) -> None: ...
    async def stop(self) -> None: ...
    async def disconnect(self) -> None: ...
    async def apply_effect(self, name: str) -> None: ...
    async def clear_effect(self, name: str) -> None: ...
    def active_effects(self) -> List[str]: ...


@dataclass(frozen=True)
class VoteTally:
    votes: int
    required: int
    skipped: bool


class PlaybackController:
    def __init__(
        self,
        guild_id: int,
        session: VoiceSession,
        stores: MusicStores,
        *,
        autoplay: Optional[AutoplayService] = None,
        announcer: Optional[Announcer] = None,
        notifier: Optional[Notifier] = None,
        metrics: Optional[PlaybackMetrics] = None,
        snapshot_interval: float = 1.0,
        clock: Callable[[], dt.datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.guild_id = guild_id
        self.session = session
        self.stores = stores
        self.autoplay = autoplay
        self.announcer = announcer
        self.notifier = notifier
        self.metrics = metrics or PlaybackMetrics()
        self.logger = logger or logging.getLogger("encore.music.controller")
        self.snapshotter = StateSnapshotter(
            guild_id,
            self.capture_snapshot,
            stores.snapshots,
            interval=snapshot_interval,
            clock=clock,
            metrics=self.metrics,
        )
        self._lock = asyncio.Lock()
        self._queue = MusicQueue()
        self._current: Optional[QueueEntry] = None
        self._settings = PlayerSettings()
        self._votes: Set[int] = set()
        # Channel notices queued under the lock, sent once it is released.
        self._notices: List[str] = []
        self._autoplay_task: Optional[asyncio.Task] = None
        # Set when the last entry finished on its own; a late autoplay append
        # may then restart playback. An explicit stop clears it.
        self._ran_dry = False
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Load settings and queue from the stores and start the snapshot timer.

        The stored current pointer is not adopted: nothing plays on a freshly
        joined session until :meth:`play` or :meth:`resume_from` says so.
        """

        if self._started:
            return
        self._started = True
        self._settings = await self.stores.settings.get(self.guild_id)
        self._queue, _ = await self.stores.queues.load(self.guild_id)
        if self._settings.volume != 100:
            await self.session.set_volume(self._settings.volume)
        self.snapshotter.start()

    async def close(self, *, disconnect: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._autoplay_task = self._autoplay_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.snapshotter.close()
        if disconnect:
            try:
                await self.session.disconnect()
            except Exception as exc:
                self.logger.warning(
                    "Voice disconnect failed", extra={"guild_id": self.guild_id, "error": str(exc)}
                )

    @property
    def closed(self) -> bool:
        return self._closed

    def bind(self, session: VoiceSession) -> None:
        """Point the controller at a new voice session after a reconnect."""

        self.session = session

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def current(self) -> Optional[QueueEntry]:
        return self._current

    @property
    def settings(self) -> PlayerSettings:
        return self._settings

    def queue_entries(self) -> List[QueueEntry]:
        return self._queue.snapshot()

    def eta_ms(self) -> int:
        """Milliseconds until everything queued after the current entry starts."""

        if self._current is None:
            return 0
        remaining = max(self._current.handle.duration - self.session.position, 0)
        later = [e for e in self._queue if e.index > self._current.index]
        return remaining + sum(entry.handle.duration for entry in later)

    def entry_for_track(self, track: Any) -> Optional[QueueEntry]:
        """Map a backend track object back to its queue entry."""

        encoded = getattr(track, "id", None) or getattr(track, "encoded", None)
        if encoded is None:
            return None
        if self._current is not None and self._current.handle.encoded == encoded:
            return self._current
        for entry in self._queue:
            if entry.handle.encoded == encoded:
                return entry
        return None

    def now_playing(self) -> Optional[NowPlaying]:
        entry = self._current
        if entry is None:
            return None
        return NowPlaying(
            entry=entry,
            position=self.session.position,
            is_paused=self.session.is_paused,
            track_number=self._queue.position_of(entry.index),
            queue_length=len(self._queue),
            volume=self._settings.volume,
            repeat_mode=self._settings.repeat_mode,
            autoplay_count=self._settings.autoplay_count,
            effects=self.session.active_effects(),
        )

    def capture_snapshot(self, now: dt.datetime) -> Optional[PlaybackSnapshot]:
        """Current playback state, or ``None`` when idle. Never awaits."""

        if self._closed or self._current is None:
            return None
        playing = self.session.is_playing
        paused = self.session.is_paused
        channel_id = self.session.channel_id
        if not (playing or paused) or channel_id is None:
            return None
        return PlaybackSnapshot(
            guild_id=self.guild_id,
            voice_channel_id=channel_id,
            position=self.session.position,
            is_playing=playing,
            is_paused=paused,
            volume=self._settings.volume,
            repeat_mode=self._settings.repeat_mode,
            autoplay_count=self._settings.autoplay_count,
            last_update_time=now,
        )

    def has_dj(self, member: Any) -> bool:
        """Administrators and holders of the DJ role; everybody when unset."""

        role_id = self._settings.dj_role_id
        if role_id is None:
            return True
        permissions = getattr(member, "guild_permissions", None)
        if permissions is not None and getattr(permissions, "administrator", False):
            return True
        return any(role.id == role_id for role in getattr(member, "roles", ()))

    # ------------------------------------------------------------------
    # Playback commands
    # ------------------------------------------------------------------
    async def enqueue(
        self,
        handle: TrackHandle,
        *,
        requested_by: int,
        requester_display: str,
        query: str = "",
    ) -> QueueEntry:
        """Append a track; start it right away when nothing is playing."""

        async with self._lock:
            entry = self._queue.append(
                handle,
                requested_by=requested_by,
                requester_display=requester_display,
                query=query,
            )
            if self._current is None:
                await self._start_locked(entry)
            else:
                await self._persist_locked()
        await self._flush_notices()
        return entry

    async def play(self, entry: QueueEntry) -> Optional[QueueEntry]:
        """Play a queued entry immediately, replacing whatever is playing."""

        async with self._lock:
            if self._queue.get(entry.index) is None:
                raise ValueError(f"Entry {entry.index} is not queued in guild {self.guild_id}")
            await self._start_locked(entry)
            playing = self._current
        await self._flush_notices()
        return playing

    async def skip(self) -> Optional[QueueEntry]:
        """Advance past the current entry; returns the entry now playing."""

        async with self._lock:
            upcoming = await self._skip_locked()
        await self._flush_notices()
        return upcoming

    async def stop(self) -> None:
        """Stop the backend and clear the pointer. The queue is left as is."""

        async with self._lock:
            self._ran_dry = False
            self._current = None
            await self.session.stop()
            await self._persist_locked()

    async def pause(self) -> bool:
        async with self._lock:
            if self._current is None or self.session.is_paused:
                return False
            await self.session.pause()
            return True

    async def resume(self) -> bool:
        async with self._lock:
            if self._current is None or not self.session.is_paused:
                return False
            await self.session.resume()
            return True

    async def seek(self, position: int) -> int:
        async with self._lock:
            if self._current is None:
                raise MissingResourceError("Nothing is playing")
            duration = self._current.handle.duration
            target = max(0, int(position))
            if duration > 0:
                target = min(target, duration)
            await self.session.seek(target)
        await self.snapshotter.force_update()
        return target

    async def clear_queue(self) -> int:
        """Drop every entry except the one playing; returns how many went."""

        async with self._lock:
            keep = self._current.index if self._current is not None else None
            removed = 0
            for entry in self._queue.snapshot():
                if entry.index != keep:
                    self._queue.remove(entry.index)
                    removed += 1
            await self._persist_locked()
            return removed

    async def vote_skip(self, user_id: int, listeners: int) -> VoteTally:
        async with self._lock:
            if self._current is None:
                raise MissingResourceError("Nothing is playing")
            self._votes.add(user_id)
            threshold = self._settings.vote_skip_threshold
            required = max(1, math.ceil(threshold * max(listeners, 1) / 100))
            votes = len(self._votes)
            if votes < required:
                return VoteTally(votes, required, False)
            await self._skip_locked()
        await self._flush_notices()
        return VoteTally(votes, required, True)

    async def toggle_effect(self, name: str) -> bool:
        """Switch an audio effect preset on or off; returns the new state."""

        if name not in EFFECT_PRESETS:
            raise ValueError(f"Unknown effect preset: {name}")
        async with self._lock:
            if EFFECT_PRESETS[name] in self.session.active_effects():
                await self.session.clear_effect(name)
                return False
            await self.session.apply_effect(name)
            return True

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    async def set_volume(self, volume: int) -> int:
        async with self._lock:
            settings = await self._update_settings(volume=volume)
            if self._current is not None:
                await self.session.set_volume(settings.volume)
            return settings.volume

    async def set_repeat_mode(self, mode: Any) -> RepeatMode:
        async with self._lock:
            settings = await self._update_settings(repeat_mode=RepeatMode.parse(mode))
            return settings.repeat_mode

    async def set_autoplay(self, count: int) -> int:
        async with self._lock:
            settings = await self._update_settings(autoplay_count=count)
            last = self._queue.last()
            at_end = (
                self._current is not None and last is not None and last.index == self._current.index
            )
        if settings.autoplay_count and at_end:
            self._schedule_autoplay()
        return settings.autoplay_count

    async def set_dj_role(self, role_id: Optional[int]) -> None:
        async with self._lock:
            await self._update_settings(dj_role_id=role_id)

    async def set_music_channel(self, channel_id: Optional[int]) -> None:
        async with self._lock:
            await self._update_settings(music_channel_id=channel_id)

    async def set_vote_skip(self, enabled: bool, threshold: Optional[int] = None) -> PlayerSettings:
        changes: dict = {"vote_skip_enabled": bool(enabled)}
        if threshold is not None:
            changes["vote_skip_threshold"] = threshold
        async with self._lock:
            return await self._update_settings(**changes)

    # ------------------------------------------------------------------
    # Backend events
    # ------------------------------------------------------------------
    async def on_track_ended(self, item: Optional[QueueEntry], reason: Any) -> None:
        reason = TrackEndReason.parse(reason)
        async with self._lock:
            ended = self._current
            if ended is None or self._closed:
                return
            if item is not None and item.index != ended.index:
                self.logger.debug(
                    "Ignoring end event for a track that is no longer current",
                    extra={"guild_id": self.guild_id, "entry_index": item.index},
                )
                return
            if reason is TrackEndReason.LOAD_FAILED:
                self.metrics.record_load_failure(ended.title)
                self._notices.append(f"⚠️ Could not load **{ended.title}**, removed it from the queue.")
                self.logger.warning(
                    "Track failed to load: %s",
                    ended.title,
                    extra=self._log_context(ended, end_reason=reason.value),
                )
            else:
                self.logger.info(
                    "Track ended (%s): %s",
                    reason.value,
                    ended.title,
                    extra=self._log_context(ended, end_reason=reason.value),
                )
            transition = on_track_end(self._state(), ended, reason)
            await self._apply_locked(transition)
            if reason is TrackEndReason.FINISHED and self._current is None:
                self._ran_dry = True
                self._notices.append("⏹️ Queue is empty. Stopping.")
        await self._flush_notices()
        await self.snapshotter.force_update()

    async def on_track_started(self, item: Optional[QueueEntry] = None) -> None:
        async with self._lock:
            entry = item or self._current
            if entry is None or self._closed:
                return
            self._votes.clear()
            self.metrics.incr_started()
            self.logger.info(
                "Playback started: %s (%s)",
                entry.title,
                entry.handle.source,
                extra=self._log_context(entry),
            )
            view = self.now_playing()
            last = self._queue.last()
            wants_refill = (
                self._settings.autoplay_count > 0
                and last is not None
                and last.index == entry.index
            )
        if view is not None and self.announcer is not None:
            try:
                await self.announcer(self.guild_id, view)
            except Exception as exc:
                self.logger.warning(
                    "Now playing announcement failed",
                    extra={"guild_id": self.guild_id, "error": str(exc)},
                )
        if wants_refill:
            self._schedule_autoplay()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    async def resume_from(
        self, snapshot: PlaybackSnapshot, entry: QueueEntry
    ) -> Optional[QueueEntry]:
        """Replay a persisted snapshot: settings, current entry, position, pause.

        Returns the entry actually playing afterwards. When ``entry`` fails to
        load the normal load-failure path runs and the position is not applied.
        """

        async with self._lock:
            if self._queue.get(entry.index) is None:
                raise MissingResourceError(
                    f"Entry {entry.index} is no longer queued in guild {self.guild_id}"
                )
            settings = await self._update_settings(
                volume=snapshot.volume,
                repeat_mode=snapshot.repeat_mode,
                autoplay_count=snapshot.autoplay_count,
            )
            await self.session.set_volume(settings.volume)
            await self._start_locked(entry)
            playing = self._current
            if playing is not None and playing.index == entry.index:
                if snapshot.position > 0:
                    await self.session.seek(snapshot.position)
                if snapshot.is_paused:
                    await self.session.pause()
        await self._flush_notices()
        return playing

    # ------------------------------------------------------------------
    # Internals (callers hold the lock)
    # ------------------------------------------------------------------
    def _state(self) -> PlaybackState:
        return PlaybackState(
            entries=tuple(self._queue),
            current=self._current,
            repeat_mode=self._settings.repeat_mode,
        )

    async def _start_locked(self, entry: QueueEntry) -> None:
        self._ran_dry = False
        state = dataclasses.replace(self._state(), current=entry)
        await self._apply_locked(Transition(state, (PlayEntry(entry),)))

    async def _skip_locked(self) -> Optional[QueueEntry]:
        if self._current is None:
            return None
        skipped = self._current
        await self._apply_locked(on_skip(self._state()))
        self.logger.info("Skipped: %s", skipped.title, extra=self._log_context(skipped))
        return self._current

    async def _apply_locked(self, transition: Transition) -> None:
        """Run a transition's effects, then commit its pointer and queue.

        A track the backend rejects is removed and the load-failure
        transition runs next. Any other error restores the pointer, queue and
        pending notices to what they were on entry and re-raises.
        """

        previous_current = self._current
        previous_queue = MusicQueue(self._queue.snapshot(), next_index=self._queue.next_index)
        previous_notices = list(self._notices)
        try:
            while True:
                failed = await self._run_effects_locked(transition)
                self._current = transition.state.current
                await self._persist_locked()
                if failed is None:
                    return
                self._notices.append(f"⚠️ Could not load **{failed.title}**, removed it from the queue.")
                transition = on_track_end(self._state(), failed, TrackEndReason.LOAD_FAILED)
        except Exception as exc:
            self._current = previous_current
            self._queue = previous_queue
            self._notices = previous_notices
            self.logger.warning(
                "Playback change aborted, previous state kept",
                extra={"guild_id": self.guild_id, "error": f"{type(exc).__name__}: {exc}"},
            )
            await self._persist_locked()
            raise

    async def _run_effects_locked(self, transition: Transition) -> Optional[QueueEntry]:
        """Apply effects in order; returns the entry the backend refused, if any."""

        for effect in transition.effects:
            if isinstance(effect, RemoveEntry):
                self._queue.remove(effect.entry.index)
            elif isinstance(effect, StopPlayback):
                await self.session.stop()
            elif isinstance(effect, PlayEntry):
                try:
                    await self.session.play(effect.entry.handle)
                except TrackLoadFailure as exc:
                    self.metrics.record_load_failure(effect.entry.title)
                    self.logger.warning(
                        "Could not start %s",
                        effect.entry.title,
                        extra=self._log_context(effect.entry, error=str(exc)),
                    )
                    return effect.entry
        return None

    async def _flush_notices(self) -> None:
        notices, self._notices = self._notices, []
        if self.notifier is None:
            return
        for message in notices:
            try:
                await self.notifier(self.guild_id, message)
            except Exception as exc:
                self.logger.warning(
                    "Channel notice failed", extra={"guild_id": self.guild_id, "error": str(exc)}
                )

    async def _persist_locked(self) -> None:
        try:
            await self.stores.queues.save(self.guild_id, self._queue, self._current)
        except StoreUnavailable as exc:
            self.logger.warning(
                "Queue persistence failed", extra={"guild_id": self.guild_id, "error": str(exc)}
            )

    async def _update_settings(self, **changes: Any) -> PlayerSettings:
        self._settings = dataclasses.replace(self._settings, **changes)
        try:
            await self.stores.settings.set(self.guild_id, self._settings)
        except StoreUnavailable as exc:
            self.logger.warning(
                "Settings persistence failed", extra={"guild_id": self.guild_id, "error": str(exc)}
            )
        return self._settings

    def _log_context(self, entry: QueueEntry, **extra: Any) -> dict:
        context = {
            "guild_id": self.guild_id,
            "entry_index": entry.index,
            "track_title": entry.handle.title,
            "track_author": entry.handle.author,
            "track_source": entry.handle.source,
            "track_uri": entry.handle.uri,
        }
        context.update(extra)
        return context

    # ------------------------------------------------------------------
    # Autoplay
    # ------------------------------------------------------------------
    def _schedule_autoplay(self) -> None:
        if self.autoplay is None or self._closed:
            return
        if self._autoplay_task is not None and not self._autoplay_task.done():
            return
        self._autoplay_task = asyncio.create_task(
            self._refill(), name=f"encore-autoplay-{self.guild_id}"
        )

    async def _refill(self) -> None:
        assert self.autoplay is not None
        handles = await self.autoplay.recommend(
            self._queue.snapshot(), self._settings.autoplay_count
        )
        if not handles:
            return
        async with self._lock:
            if self._closed:
                return
            queued = self._queue.titles()
            appended: List[QueueEntry] = []
            for handle in handles:
                title = handle.title.strip().lower()
                if title in queued:
                    continue
                queued.add(title)
                appended.append(
                    self._queue.append(
                        handle,
                        requested_by=0,
                        requester_display=AUTOPLAY_REQUESTER,
                        query=handle.title,
                    )
                )
            if not appended:
                return
            self.metrics.add_autoplay(len(appended))
            self.logger.info(
                "Autoplay queued %s tracks",
                len(appended),
                extra={"guild_id": self.guild_id, "titles": [e.title for e in appended]},
            )
            if self._current is None and self._ran_dry:
                await self._start_locked(appended[0])
            else:
                await self._persist_locked()
        await self._flush_notices()
