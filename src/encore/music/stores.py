"""Per-guild key/value stores for settings, queues and playback snapshots.

Each store keeps an in-memory dict as the source of truth and, when
``persist`` is enabled, mirrors it to a JSON file using a temp file plus
``Path.replace`` so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import StoreUnavailable
from .queue import MusicQueue, QueueEntry
from .state import PlaybackSnapshot, PlayerSettings

__all__ = [
    "JsonStateStore",
    "SettingsStore",
    "QueueStore",
    "SnapshotStore",
    "MusicStores",
    "open_stores",
]

_LOGGER = logging.getLogger("encore.music.stores")


class JsonStateStore:
    """Guild-keyed records, optionally persisted as one JSON document."""

    VERSION = 1

    def __init__(self, *, path: Optional[Path] = None, persist: bool = True) -> None:
        self.persist = persist and path is not None
        self.path: Optional[Path] = Path(path).expanduser() if path is not None else None
        self._records: Dict[int, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._load()

    def guild_ids(self) -> List[int]:
        return sorted(self._records)

    def _read(self, guild_id: int) -> Optional[Dict[str, Any]]:
        record = self._records.get(guild_id)
        return dict(record) if record is not None else None

    async def _write(self, guild_id: int, record: Dict[str, Any]) -> None:
        async with self._lock:
            self._records[guild_id] = record
            await self._persist_locked()

    async def _delete(self, guild_id: int) -> bool:
        async with self._lock:
            if self._records.pop(guild_id, None) is None:
                return False
            await self._persist_locked()
            return True

    def _load(self) -> None:
        if not self.persist or self.path is None or not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except Exception as exc:
            _LOGGER.warning("Failed to load state store %s: %s", self.path, exc)
            return
        records = payload.get("records") if isinstance(payload, dict) else None
        if not isinstance(records, dict):
            return
        for key, record in records.items():
            try:
                guild_id = int(key)
            except (TypeError, ValueError):
                continue
            if isinstance(record, dict):
                self._records[guild_id] = record

    async def _persist_locked(self) -> None:
        if not self.persist or self.path is None:
            return
        document = json.dumps(
            {
                "version": self.VERSION,
                "saved_at": time.time(),
                "records": {str(key): value for key, value in self._records.items()},
            },
            ensure_ascii=True,
            indent=2,
        )
        try:
            await asyncio.to_thread(self._write_file, document)
        except OSError as exc:
            raise StoreUnavailable(f"Failed to persist {self.path}: {exc}") from exc

    def _write_file(self, document: str) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        try:
            tmp_path.write_text(document, encoding="utf-8")
            tmp_path.replace(self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


class SettingsStore(JsonStateStore):
    async def get(self, guild_id: int) -> PlayerSettings:
        record = self._read(guild_id)
        if record is None:
            settings = PlayerSettings()
            self._records[guild_id] = settings.to_json()
            return settings
        return PlayerSettings.from_json(record)

    async def set(self, guild_id: int, settings: PlayerSettings) -> None:
        await self._write(guild_id, settings.to_json())

    async def update(self, guild_id: int, **changes: Any) -> PlayerSettings:
        settings = dataclasses.replace(await self.get(guild_id), **changes)
        await self.set(guild_id, settings)
        return settings


class QueueStore(JsonStateStore):
    """Ordered queue plus current-track pointer per guild."""

    async def load(self, guild_id: int) -> Tuple[MusicQueue, Optional[QueueEntry]]:
        record = self._read(guild_id) or {}
        entries = []
        for item in record.get("entries") or []:
            try:
                entries.append(QueueEntry.from_json(item))
            except (KeyError, TypeError, ValueError) as exc:
                _LOGGER.warning(
                    "Dropping malformed queue entry",
                    extra={"guild_id": guild_id, "error": str(exc)},
                )
        queue = MusicQueue(entries, next_index=record.get("next_index"))
        current_index = record.get("current")
        current = queue.get(int(current_index)) if current_index is not None else None
        return queue, current

    async def get_queue(self, guild_id: int) -> MusicQueue:
        queue, _ = await self.load(guild_id)
        return queue

    async def get_current(self, guild_id: int) -> Optional[QueueEntry]:
        _, current = await self.load(guild_id)
        return current

    async def save(
        self, guild_id: int, queue: MusicQueue, current: Optional[QueueEntry]
    ) -> None:
        if current is not None and queue.get(current.index) is None:
            raise ValueError(f"Current entry {current.index} is not queued in guild {guild_id}")
        await self._write(
            guild_id,
            {
                "entries": [entry.to_json() for entry in queue],
                "current": current.index if current is not None else None,
                "next_index": queue.next_index,
            },
        )

    async def set_current(self, guild_id: int, entry: Optional[QueueEntry]) -> None:
        queue, _ = await self.load(guild_id)
        await self.save(guild_id, queue, entry)

    async def clear(self, guild_id: int) -> None:
        queue, _ = await self.load(guild_id)
        queue.clear()
        await self.save(guild_id, queue, None)


class SnapshotStore(JsonStateStore):
    async def get(self, guild_id: int) -> Optional[PlaybackSnapshot]:
        record = self._read(guild_id)
        if record is None:
            return None
        try:
            return PlaybackSnapshot.from_json(record)
        except (KeyError, TypeError, ValueError) as exc:
            _LOGGER.warning(
                "Discarding unreadable playback snapshot",
                extra={"guild_id": guild_id, "error": str(exc)},
            )
            try:
                await self._delete(guild_id)
            except StoreUnavailable as delete_exc:
                _LOGGER.warning(
                    "Could not delete unreadable playback snapshot",
                    extra={"guild_id": guild_id, "error": str(delete_exc)},
                )
            return None

    async def set(self, snapshot: PlaybackSnapshot) -> None:
        await self._write(snapshot.guild_id, snapshot.to_json())

    async def delete(self, guild_id: int) -> bool:
        return await self._delete(guild_id)


@dataclass
class MusicStores:
    settings: SettingsStore
    queues: QueueStore
    snapshots: SnapshotStore


def open_stores(state_dir: Optional[Path] = None, *, persist: bool = True) -> MusicStores:
    """Build the three stores, backed by files in ``state_dir`` when persisting."""

    base = Path(state_dir).expanduser() if state_dir is not None else None

    def _path(name: str) -> Optional[Path]:
        return base / name if base is not None else None

    return MusicStores(
        settings=SettingsStore(path=_path("settings.json"), persist=persist),
        queues=QueueStore(path=_path("queues.json"), persist=persist),
        snapshots=SnapshotStore(path=_path("snapshots.json"), persist=persist),
    )
