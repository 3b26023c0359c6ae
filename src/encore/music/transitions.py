"""Pure track-end state machine.

The controller feeds backend events into these functions and applies the
returned effects. Nothing here awaits or touches the network, which keeps the
repeat-mode table testable with synthetic events.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, Tuple, Union

from .queue import QueueEntry, first_entry, next_entry
from .state import RepeatMode

__all__ = [
    "TrackEndReason",
    "PlaybackState",
    "PlayEntry",
    "RemoveEntry",
    "StopPlayback",
    "Transition",
    "on_track_end",
    "on_skip",
]


class TrackEndReason(str, Enum):
    FINISHED = "finished"
    LOAD_FAILED = "loadFailed"
    STOPPED = "stopped"
    REPLACED = "replaced"
    CLEANUP = "cleanup"

    @classmethod
    def parse(cls, value: Any) -> "TrackEndReason":
        """Accept our enum, ``mafic.EndReason`` or the raw Lavalink string."""

        if isinstance(value, cls):
            return value
        raw = getattr(value, "value", value)
        text = str(raw or "").replace("_", "").replace("-", "").strip().lower()
        for reason in cls:
            if text == reason.value.lower():
                return reason
        raise ValueError(f"Unknown track end reason: {value!r}")


@dataclass(frozen=True)
class PlaybackState:
    entries: Tuple[QueueEntry, ...]
    current: Optional[QueueEntry]
    repeat_mode: RepeatMode = RepeatMode.NONE

    def contains(self, entry: QueueEntry) -> bool:
        return any(item.index == entry.index for item in self.entries)


@dataclass(frozen=True)
class PlayEntry:
    entry: QueueEntry


@dataclass(frozen=True)
class RemoveEntry:
    entry: QueueEntry


@dataclass(frozen=True)
class StopPlayback:
    pass


Effect = Union[PlayEntry, RemoveEntry, StopPlayback]


@dataclass(frozen=True)
class Transition:
    state: PlaybackState
    effects: Tuple[Effect, ...] = ()


def _advance(state: PlaybackState, after_index: int, *, wrap: bool) -> Transition:
    upcoming = next_entry(state.entries, after_index)
    if upcoming is None and wrap:
        upcoming = first_entry(state.entries)
    if upcoming is None:
        return Transition(replace(state, current=None), (StopPlayback(),))
    return Transition(replace(state, current=upcoming), (PlayEntry(upcoming),))


def on_track_end(
    state: PlaybackState, ended: QueueEntry, reason: TrackEndReason
) -> Transition:
    """Return the next state and the effects to run for a finished track."""

    if reason is TrackEndReason.FINISHED:
        anchor = state.current or ended
        if state.repeat_mode is RepeatMode.TRACK and state.contains(ended):
            return Transition(replace(state, current=ended), (PlayEntry(ended),))
        return _advance(state, anchor.index, wrap=state.repeat_mode is RepeatMode.QUEUE)

    if reason is TrackEndReason.LOAD_FAILED:
        remaining = tuple(item for item in state.entries if item.index != ended.index)
        pruned = replace(state, entries=remaining)
        advanced = _advance(pruned, ended.index, wrap=False)
        return Transition(advanced.state, (RemoveEntry(ended),) + advanced.effects)

    # STOPPED is terminal; REPLACED and CLEANUP are handled by whoever replaced us.
    return Transition(state)


def on_skip(state: PlaybackState) -> Transition:
    """Explicit skip: ignores track repeat, still wraps in queue repeat."""

    if state.current is None:
        return Transition(state)
    return _advance(
        state, state.current.index, wrap=state.repeat_mode is RepeatMode.QUEUE
    )
