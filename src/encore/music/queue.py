"""Index-ordered per-guild track queue."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from .audio_backend import TrackHandle

__all__ = ["QueueEntry", "MusicQueue", "next_entry", "first_entry"]


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """A positioned track awaiting or currently in playback."""

    index: int
    handle: TrackHandle
    requested_by: int
    requester_display: str
    query: str = ""

    @property
    def title(self) -> str:
        return self.handle.title

    def to_json(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "track": self.handle.to_json(),
            "requested_by": self.requested_by,
            "requester_display": self.requester_display,
            "query": self.query,
        }

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "QueueEntry":
        return cls(
            index=int(payload["index"]),
            handle=TrackHandle.from_json(payload.get("track") or {}),
            requested_by=int(payload.get("requested_by") or 0),
            requester_display=str(payload.get("requester_display") or ""),
            query=str(payload.get("query") or ""),
        )


def next_entry(entries: Sequence[QueueEntry], after_index: int) -> Optional[QueueEntry]:
    """Return the entry with the smallest index greater than ``after_index``."""

    candidates = [entry for entry in entries if entry.index > after_index]
    if not candidates:
        return None
    return min(candidates, key=lambda entry: entry.index)


def first_entry(entries: Sequence[QueueEntry]) -> Optional[QueueEntry]:
    if not entries:
        return None
    return min(entries, key=lambda entry: entry.index)


class MusicQueue:
    """Entries kept in index order; indices are handed out once and never reused."""

    def __init__(
        self,
        entries: Iterable[QueueEntry] = (),
        *,
        next_index: Optional[int] = None,
    ) -> None:
        self._entries: List[QueueEntry] = sorted(entries, key=lambda entry: entry.index)
        highest = self._entries[-1].index + 1 if self._entries else 1
        self._next_index = max(highest, next_index or 1)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(self.snapshot())

    def __contains__(self, entry: object) -> bool:
        return isinstance(entry, QueueEntry) and self.get(entry.index) is not None

    @property
    def next_index(self) -> int:
        return self._next_index

    def snapshot(self) -> List[QueueEntry]:
        return list(self._entries)

    def get(self, index: int) -> Optional[QueueEntry]:
        for entry in self._entries:
            if entry.index == index:
                return entry
        return None

    def first(self) -> Optional[QueueEntry]:
        return self._entries[0] if self._entries else None

    def last(self) -> Optional[QueueEntry]:
        return self._entries[-1] if self._entries else None

    def next_after(self, index: int) -> Optional[QueueEntry]:
        return next_entry(self._entries, index)

    def position_of(self, index: int) -> int:
        """1-based position of the entry with ``index``; 0 when absent."""

        for position, entry in enumerate(self._entries, start=1):
            if entry.index == index:
                return position
        return 0

    def append(
        self,
        handle: TrackHandle,
        *,
        requested_by: int,
        requester_display: str,
        query: str = "",
    ) -> QueueEntry:
        entry = QueueEntry(
            index=self._next_index,
            handle=handle,
            requested_by=requested_by,
            requester_display=requester_display,
            query=query,
        )
        self._next_index += 1
        self._entries.append(entry)
        return entry

    def remove(self, index: int) -> Optional[QueueEntry]:
        for position, entry in enumerate(self._entries):
            if entry.index == index:
                del self._entries[position]
                return entry
        return None

    def clear(self) -> None:
        self._entries.clear()

    def titles(self) -> Set[str]:
        return {entry.handle.title.strip().lower() for entry in self._entries}

    def total_duration(self) -> int:
        return sum(entry.handle.duration for entry in self._entries)
