"""Thread-safe counters for playback, snapshot and recovery health."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Dict, Optional

__all__ = ["PlaybackMetrics"]


class PlaybackMetrics:
    """Counters surfaced by ``/musicstats``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.plays_started = 0
        self.load_failures = 0
        self.autoplay_appended = 0
        self.snapshot_writes = 0
        self.snapshot_write_failures = 0
        self.recovery_outcomes: Counter = Counter()
        self.last_load_failure: Optional[str] = None

    def incr_started(self) -> None:
        with self._lock:
            self.plays_started += 1

    def record_load_failure(self, title: str) -> None:
        with self._lock:
            self.load_failures += 1
            self.last_load_failure = title

    def add_autoplay(self, count: int) -> None:
        with self._lock:
            self.autoplay_appended += count

    def record_snapshot_write(self, *, ok: bool) -> None:
        with self._lock:
            if ok:
                self.snapshot_writes += 1
            else:
                self.snapshot_write_failures += 1

    def record_recovery(self, outcome: str) -> None:
        with self._lock:
            self.recovery_outcomes[outcome] += 1

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "plays_started": self.plays_started,
                "load_failures": self.load_failures,
                "last_load_failure": self.last_load_failure,
                "autoplay_appended": self.autoplay_appended,
                "snapshot_writes": self.snapshot_writes,
                "snapshot_write_failures": self.snapshot_write_failures,
                "recovery_outcomes": dict(self.recovery_outcomes),
            }
