import pytest

from encore.music.state import RepeatMode
from encore.music.transitions import (
    PlayEntry,
    PlaybackState,
    RemoveEntry,
    StopPlayback,
    TrackEndReason,
    on_skip,
    on_track_end,
)

from _fakes import make_entry

A = make_entry(1, "A")
B = make_entry(2, "B")
C = make_entry(3, "C")


def _state(current, mode=RepeatMode.NONE, entries=(A, B)):
    return PlaybackState(entries=tuple(entries), current=current, repeat_mode=mode)


def test_finished_advances_to_next_entry():
    result = on_track_end(_state(A), A, TrackEndReason.FINISHED)
    assert result.state.current == B
    assert result.effects == (PlayEntry(B),)


def test_finished_last_entry_stops_without_repeat():
    result = on_track_end(_state(B), B, TrackEndReason.FINISHED)
    assert result.state.current is None
    assert result.effects == (StopPlayback(),)


def test_queue_repeat_wraps_to_first_entry():
    result = on_track_end(_state(B, RepeatMode.QUEUE), B, TrackEndReason.FINISHED)
    assert result.state.current == A
    assert result.effects == (PlayEntry(A),)


def test_queue_repeat_still_advances_mid_queue():
    result = on_track_end(_state(A, RepeatMode.QUEUE), A, TrackEndReason.FINISHED)
    assert result.state.current == B


@pytest.mark.parametrize("current", [A, B])
def test_track_repeat_replays_same_entry(current):
    state = _state(current, RepeatMode.TRACK)
    for _ in range(3):
        result = on_track_end(state, current, TrackEndReason.FINISHED)
        assert result.state.current == current
        assert result.effects == (PlayEntry(current),)
        state = result.state


@pytest.mark.parametrize("mode", list(RepeatMode))
def test_load_failure_removes_entry_and_advances(mode):
    result = on_track_end(_state(A, mode, entries=(A, B, C)), A, TrackEndReason.LOAD_FAILED)
    assert result.effects == (RemoveEntry(A), PlayEntry(B))
    assert result.state.current == B
    assert A not in result.state.entries


def test_load_failure_on_last_entry_stops_even_in_queue_repeat():
    result = on_track_end(_state(B, RepeatMode.QUEUE), B, TrackEndReason.LOAD_FAILED)
    assert result.effects == (RemoveEntry(B), StopPlayback())
    assert result.state.current is None
    assert result.state.entries == (A,)


@pytest.mark.parametrize(
    "reason", [TrackEndReason.STOPPED, TrackEndReason.REPLACED, TrackEndReason.CLEANUP]
)
def test_other_reasons_are_no_ops(reason):
    state = _state(A, RepeatMode.QUEUE)
    result = on_track_end(state, A, reason)
    assert result.state == state
    assert result.effects == ()


def test_next_entry_follows_index_not_position_after_removal():
    entries = (A, C)
    result = on_track_end(_state(A, entries=entries), A, TrackEndReason.FINISHED)
    assert result.state.current == C


def test_skip_ignores_track_repeat():
    result = on_skip(_state(A, RepeatMode.TRACK))
    assert result.state.current == B


def test_skip_wraps_in_queue_repeat_and_stops_otherwise():
    assert on_skip(_state(B, RepeatMode.QUEUE)).state.current == A
    stopped = on_skip(_state(B))
    assert stopped.state.current is None
    assert stopped.effects == (StopPlayback(),)


def test_skip_without_current_does_nothing():
    result = on_skip(_state(None))
    assert result.effects == ()


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("finished", TrackEndReason.FINISHED),
        ("FINISHED", TrackEndReason.FINISHED),
        ("loadFailed", TrackEndReason.LOAD_FAILED),
        ("LOAD_FAILED", TrackEndReason.LOAD_FAILED),
        ("replaced", TrackEndReason.REPLACED),
    ],
)
def test_end_reason_parsing(raw, expected):
    assert TrackEndReason.parse(raw) is expected


def test_end_reason_rejects_unknown_values():
    with pytest.raises(ValueError):
        TrackEndReason.parse("exploded")
