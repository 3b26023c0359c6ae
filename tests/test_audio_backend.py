import types

import pytest

from encore.music.audio_backend import LavalinkVoiceSession, TrackHandle
from encore.music.controller import PlaybackController
from encore.music.errors import LavalinkUnavailable, TrackLoadFailure
from encore.music.stores import open_stores

from _fakes import make_handle

# Imported after encore, which pins the library mafic binds to.
import mafic  # noqa: E402


class DummyPlayer:
    def __init__(self):
        self.guild = types.SimpleNamespace(id=1)
        self.channel = types.SimpleNamespace(id=555)
        self.connected = True
        self.current = None
        self.paused = False
        self.position = 0
        self.error = None
        self.played = []

    async def play(self, track):
        if self.error is not None:
            raise self.error
        self.current = track
        self.played.append(track)

    async def stop(self):
        self.current = None

    async def set_volume(self, volume):
        self.volume = volume


async def _controller(player, stores):
    controller = PlaybackController(1, LavalinkVoiceSession(player), stores, snapshot_interval=3600)
    await controller.start()
    for title in ("A", "B", "C", "D"):
        await controller.enqueue(make_handle(title), requested_by=7, requester_display="dj")
    return controller


@pytest.mark.asyncio
async def test_dropped_connection_during_skip_keeps_queue_and_pointer():
    player = DummyPlayer()
    stores = open_stores(persist=False)
    controller = await _controller(player, stores)
    a = controller.current
    player.error = ConnectionError("socket closed")

    with pytest.raises(LavalinkUnavailable):
        await controller.skip()

    assert [e.title for e in controller.queue_entries()] == ["A", "B", "C", "D"]
    assert controller.current == a
    queue, current = await stores.queues.load(1)
    assert [e.title for e in queue] == ["A", "B", "C", "D"]
    assert current == a
    assert controller.metrics.load_failures == 0

    player.error = None
    upcoming = await controller.skip()
    assert upcoming.title == "B"
    assert player.played == ["enc-a", "enc-b"]
    await controller.close()


@pytest.mark.asyncio
async def test_rejected_track_still_counts_as_load_failure():
    player = DummyPlayer()
    stores = open_stores(persist=False)
    controller = await _controller(player, stores)
    player.error = mafic.HTTPBadRequest("bad track")

    assert await controller.skip() is None

    # Every remaining entry was refused in turn.
    assert [e.title for e in controller.queue_entries()] == ["A"]
    assert controller.metrics.load_failures == 3
    await controller.close()


@pytest.mark.asyncio
async def test_play_classifies_backend_errors():
    player = DummyPlayer()
    session = LavalinkVoiceSession(player)
    handle = make_handle("A")

    player.error = mafic.TrackLoadException(message="gone", severity="common", cause="removed")
    with pytest.raises(TrackLoadFailure):
        await session.play(handle)

    player.error = TimeoutError()
    with pytest.raises(LavalinkUnavailable):
        await session.play(handle)

    player.error = None
    player.connected = False
    with pytest.raises(LavalinkUnavailable):
        await session.play(handle)
    assert player.played == []


@pytest.mark.asyncio
async def test_play_without_payload_is_a_load_failure():
    session = LavalinkVoiceSession(DummyPlayer())
    handle = TrackHandle(track=None, title="Ghost", author="", duration=0, uri=None, source="x")

    with pytest.raises(TrackLoadFailure):
        await session.play(handle)
