import json
import logging

from encore.music.logging_config import JsonFormatter
from encore.music.metrics import PlaybackMetrics


def _record(**extra):
    record = logging.LogRecord(
        "encore.music.controller", logging.INFO, __file__, 1, "Playback started: %s", ("Song",), None
    )
    record.__dict__.update(extra)
    return record


def test_json_formatter_merges_extra_fields():
    payload = json.loads(JsonFormatter().format(_record(guild_id=7, entry_index=3)))

    assert payload["message"] == "Playback started: Song"
    assert payload["name"] == "encore.music.controller"
    assert payload["level"] == "INFO"
    assert payload["guild_id"] == 7
    assert payload["entry_index"] == 3
    assert "args" not in payload


def test_json_formatter_stringifies_unserialisable_values():
    payload = json.loads(JsonFormatter().format(_record(titles={"a"})))
    assert payload["titles"] == "{'a'}"


def test_metrics_snapshot_reports_counters():
    metrics = PlaybackMetrics()
    metrics.incr_started()
    metrics.record_load_failure("Broken")
    metrics.add_autoplay(2)
    metrics.record_snapshot_write(ok=True)
    metrics.record_snapshot_write(ok=False)
    metrics.record_recovery("recovered")
    metrics.record_recovery("recovered")

    assert metrics.snapshot() == {
        "plays_started": 1,
        "load_failures": 1,
        "last_load_failure": "Broken",
        "autoplay_appended": 2,
        "snapshot_writes": 1,
        "snapshot_write_failures": 1,
        "recovery_outcomes": {"recovered": 2},
    }
