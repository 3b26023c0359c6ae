import asyncio
import datetime as dt

import pytest

from encore.music.autoplay import AutoplayService
from encore.music.controller import AUTOPLAY_REQUESTER, PlaybackController
from encore.music.errors import LavalinkUnavailable, MissingResourceError
from encore.music.recommendations import Candidate
from encore.music.state import RepeatMode
from encore.music.stores import open_stores

from _fakes import FakeRecommender, FakeResolver, FakeSession, make_handle

NOW = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


async def _controller(session=None, **kwargs):
    stores = kwargs.pop("stores", None) or open_stores(persist=False)
    controller = PlaybackController(
        1, session or FakeSession(), stores, snapshot_interval=3600, **kwargs
    )
    await controller.start()
    return controller


async def _enqueue(controller, *titles):
    entries = []
    for title in titles:
        entries.append(
            await controller.enqueue(make_handle(title), requested_by=7, requester_display="dj")
        )
    return entries


@pytest.mark.asyncio
async def test_enqueue_starts_playback_when_idle():
    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")

    assert controller.current == a
    assert session.played == ["A"]
    assert [e.index for e in controller.queue_entries()] == [a.index, b.index]
    assert a.index < b.index
    await controller.close()


@pytest.mark.asyncio
async def test_finished_track_advances_to_next_entry():
    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")

    await controller.on_track_ended(a, "finished")

    assert controller.current == b
    assert session.played == ["A", "B"]
    await controller.close()


@pytest.mark.asyncio
async def test_queue_repeat_wraps_from_last_entry():
    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")
    await controller.set_repeat_mode(RepeatMode.QUEUE)
    await controller.on_track_ended(a, "finished")

    await controller.on_track_ended(b, "finished")

    assert controller.current == a
    assert session.played == ["A", "B", "A"]
    await controller.close()


@pytest.mark.asyncio
async def test_track_repeat_replays_until_skipped():
    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")
    await controller.set_repeat_mode("track")

    await controller.on_track_ended(a, "finished")
    await controller.on_track_ended(a, "finished")
    assert session.played == ["A", "A", "A"]

    assert await controller.skip() == b
    assert session.played[-1] == "B"
    await controller.close()


@pytest.mark.asyncio
async def test_last_track_finishing_stops_and_clears_pointer():
    session = FakeSession()
    stores = open_stores(persist=False)
    controller = await _controller(session, stores=stores)
    (a,) = await _enqueue(controller, "A")

    await controller.on_track_ended(a, "finished")

    assert controller.current is None
    assert ("stop",) in session.calls
    assert await stores.queues.get_current(1) is None
    assert len(await stores.queues.get_queue(1)) == 1
    await controller.close()


@pytest.mark.asyncio
async def test_load_failures_are_removed_until_something_plays():
    session = FakeSession(fail_titles={"B", "C"})
    controller = await _controller(session)
    a, b, c, d = await _enqueue(controller, "A", "B", "C", "D")

    await controller.on_track_ended(a, "finished")

    assert controller.current == d
    assert [e.title for e in controller.queue_entries()] == ["A", "D"]
    assert controller.metrics.load_failures == 2
    await controller.close()


@pytest.mark.asyncio
async def test_load_failed_event_removes_entry():
    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")

    await controller.on_track_ended(a, "loadFailed")

    assert controller.current == b
    assert [e.title for e in controller.queue_entries()] == ["B"]
    await controller.close()


@pytest.mark.asyncio
async def test_stopped_and_replaced_events_do_nothing():
    session = FakeSession()
    controller = await _controller(session)
    a, _ = await _enqueue(controller, "A", "B")

    await controller.on_track_ended(a, "stopped")
    await controller.on_track_ended(a, "replaced")

    assert controller.current == a
    assert session.played == ["A"]
    await controller.close()


@pytest.mark.asyncio
async def test_end_event_for_a_track_that_is_no_longer_current_is_ignored():
    session = FakeSession()
    controller = await _controller(session)
    a, b, _ = await _enqueue(controller, "A", "B", "C")
    await controller.skip()

    await controller.on_track_ended(a, "finished")

    assert controller.current == b
    await controller.close()


@pytest.mark.asyncio
async def test_stop_keeps_queue_and_skip_past_end_stops():
    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")

    await controller.skip()
    assert await controller.skip() is None
    assert controller.current is None

    await controller.play(a)
    await controller.stop()
    assert controller.current is None
    assert len(controller.queue_entries()) == 2
    await controller.close()


@pytest.mark.asyncio
async def test_play_rejects_entries_that_are_not_queued():
    controller = await _controller()
    a, b = await _enqueue(controller, "A", "B")
    await controller.clear_queue()

    with pytest.raises(ValueError):
        await controller.play(b)
    assert controller.current == a
    await controller.close()


@pytest.mark.asyncio
async def test_volume_is_clamped_and_sent_to_live_session():
    session = FakeSession()
    controller = await _controller(session)
    await _enqueue(controller, "A")

    assert await controller.set_volume(150) == 100
    assert await controller.set_volume(40) == 40
    assert session.volume == 40
    assert (await controller.stores.settings.get(1)).volume == 40
    await controller.close()


@pytest.mark.asyncio
async def test_seek_is_clamped_to_track_length():
    session = FakeSession()
    controller = await _controller(session)
    await _enqueue(controller, "A")

    assert await controller.seek(999_999_999) == 180_000
    assert session.position == 180_000
    await controller.close()


@pytest.mark.asyncio
async def test_seek_without_current_track_raises():
    controller = await _controller()
    with pytest.raises(MissingResourceError):
        await controller.seek(1000)
    await controller.close()


@pytest.mark.asyncio
async def test_capture_snapshot_only_while_playing_or_paused():
    session = FakeSession()
    controller = await _controller(session)
    assert controller.capture_snapshot(NOW) is None

    await _enqueue(controller, "A")
    session.position = 5_000
    snapshot = controller.capture_snapshot(NOW)
    assert snapshot.is_playing and not snapshot.is_paused
    assert snapshot.position == 5_000
    assert snapshot.voice_channel_id == 555

    await controller.pause()
    paused = controller.capture_snapshot(NOW)
    assert paused.is_paused and not paused.is_playing
    await controller.close()


@pytest.mark.asyncio
async def test_now_playing_reports_queue_position_and_effects():
    session = FakeSession()
    controller = await _controller(session)
    a, b, _ = await _enqueue(controller, "A", "B", "C")
    await controller.skip()
    assert await controller.toggle_effect("nightcore") is True

    view = controller.now_playing()
    assert view.entry == b
    assert (view.track_number, view.queue_length) == (2, 3)
    assert view.effects == ["⚡ Nightcore"]

    assert await controller.toggle_effect("nightcore") is False
    await controller.close()


@pytest.mark.asyncio
async def test_vote_skip_needs_threshold_share_of_listeners():
    session = FakeSession()
    controller = await _controller(session)
    await _enqueue(controller, "A", "B")
    await controller.set_vote_skip(True, 50)

    first = await controller.vote_skip(10, listeners=4)
    assert (first.votes, first.required, first.skipped) == (1, 2, False)
    again = await controller.vote_skip(10, listeners=4)
    assert again.votes == 1
    second = await controller.vote_skip(11, listeners=4)
    assert second.skipped
    assert session.played[-1] == "B"

    await controller.on_track_started()
    third = await controller.vote_skip(10, listeners=4)
    assert third.votes == 1
    await controller.close()


@pytest.mark.asyncio
async def test_dj_role_gate():
    controller = await _controller()

    class Role:
        def __init__(self, id):
            self.id = id

    class Perms:
        administrator = False

    class Member:
        guild_permissions = Perms()
        roles = [Role(5)]

    assert controller.has_dj(Member())
    await controller.set_dj_role(9)
    assert not controller.has_dj(Member())
    Member.roles = [Role(9)]
    assert controller.has_dj(Member())
    await controller.close()


@pytest.mark.asyncio
async def test_track_start_announces_and_triggers_autoplay_on_last_entry():
    session = FakeSession()
    recommender = FakeRecommender(
        {"Artist B": [Candidate("A", "Artist"), Candidate("Fresh", "Someone")]}
    )
    resolver = FakeResolver()
    announced = []

    async def announcer(guild_id, view):
        announced.append((guild_id, view.entry.title))

    controller = await _controller(
        session,
        autoplay=AutoplayService(recommender, resolver),
        announcer=announcer,
    )
    a, b = await _enqueue(controller, "A", "B")
    await controller.set_autoplay(1)

    await controller.on_track_started(a)
    assert controller._autoplay_task is None

    await controller.on_track_ended(a, "finished")
    await controller.on_track_started(b)
    await controller._autoplay_task

    titles = [e.title for e in controller.queue_entries()]
    assert titles == ["A", "B", "Fresh Someone"]
    appended = controller.queue_entries()[-1]
    assert appended.requester_display == AUTOPLAY_REQUESTER
    assert appended.index > b.index
    assert announced == [(1, "A"), (1, "B")]
    assert controller.metrics.autoplay_appended == 1
    await controller.close()


@pytest.mark.asyncio
async def test_autoplay_failure_never_interrupts_playback():
    session = FakeSession()
    controller = await _controller(
        session, autoplay=AutoplayService(FakeRecommender(fail=True), FakeResolver())
    )
    (a,) = await _enqueue(controller, "A")
    await controller.set_autoplay(3)
    await controller.on_track_started(a)
    await controller._autoplay_task

    assert controller.current == a
    assert [e.title for e in controller.queue_entries()] == ["A"]
    await controller.close()


@pytest.mark.asyncio
async def test_autoplay_restarts_playback_when_queue_ran_dry_meanwhile():
    session = FakeSession()
    release = asyncio.Event()

    class SlowRecommender(FakeRecommender):
        async def search(self, query, *, limit=20):
            await release.wait()
            return [Candidate("Later", "Band")]

    controller = await _controller(
        session, autoplay=AutoplayService(SlowRecommender(), FakeResolver())
    )
    (a,) = await _enqueue(controller, "A")
    await controller.set_autoplay(1)
    await controller.on_track_started(a)
    await controller.on_track_ended(a, "finished")
    assert controller.current is None

    release.set()
    await controller._autoplay_task

    assert controller.current.title == "Later Band"
    assert session.played == ["A", "Later Band"]
    await controller.close()


@pytest.mark.asyncio
async def test_concurrent_events_are_serialised():
    session = FakeSession()
    controller = await _controller(session)
    a, b, c = await _enqueue(controller, "A", "B", "C")

    await asyncio.gather(
        controller.on_track_ended(a, "finished"),
        controller.skip(),
    )

    assert controller.current == c
    assert session.played == ["A", "B", "C"]
    await controller.close()


@pytest.mark.asyncio
async def test_resume_from_replays_position_and_pause():
    from encore.music.state import PlaybackSnapshot

    session = FakeSession()
    controller = await _controller(session)
    a, b = await _enqueue(controller, "A", "B")
    await controller.stop()

    snapshot = PlaybackSnapshot(
        guild_id=1,
        voice_channel_id=555,
        position=42_000,
        is_playing=False,
        is_paused=True,
        volume=30,
        repeat_mode=RepeatMode.QUEUE,
        autoplay_count=2,
        last_update_time=NOW,
    )
    playing = await controller.resume_from(snapshot, b)

    assert playing == b
    assert session.position == 42_000
    assert session.is_paused
    assert session.volume == 30
    assert controller.settings.repeat_mode is RepeatMode.QUEUE
    assert controller.settings.autoplay_count == 2
    await controller.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_disconnects_on_request():
    session = FakeSession()
    controller = await _controller(session)
    await controller.close(disconnect=True)
    await controller.close(disconnect=True)
    assert session.disconnected
    assert controller.snapshotter.closed


@pytest.mark.asyncio
async def test_unreachable_node_leaves_memory_store_and_backend_on_the_same_track():
    session = FakeSession()
    stores = open_stores(persist=False)
    controller = await _controller(session, stores=stores)
    a, b = await _enqueue(controller, "A", "B")
    session.unavailable = True

    with pytest.raises(LavalinkUnavailable):
        await controller.skip()
    with pytest.raises(LavalinkUnavailable):
        await controller.on_track_ended(a, "finished")

    assert controller.current == a
    assert session.current.title == "A"
    assert (await stores.queues.load(1))[1] == a
    assert controller.capture_snapshot(NOW).position == 0

    session.unavailable = False
    assert await controller.skip() == b
    assert (await stores.queues.load(1))[1] == b
    await controller.close()


@pytest.mark.asyncio
async def test_load_failure_and_empty_queue_are_posted_to_the_channel():
    session = FakeSession(fail_titles={"B"})
    notices = []

    async def notifier(guild_id, message):
        notices.append((guild_id, message))

    controller = await _controller(session, notifier=notifier)
    a, _ = await _enqueue(controller, "A", "B")

    await controller.on_track_ended(a, "finished")

    assert controller.current is None
    assert notices == [
        (1, "⚠️ Could not load **B**, removed it from the queue."),
        (1, "⏹️ Queue is empty. Stopping."),
    ]
    await controller.close()


@pytest.mark.asyncio
async def test_failing_notifier_does_not_interrupt_playback():
    session = FakeSession(fail_titles={"B"})

    async def notifier(guild_id, message):
        raise RuntimeError("missing permissions")

    controller = await _controller(session, notifier=notifier)
    a, _, c = await _enqueue(controller, "A", "B", "C")

    await controller.skip()

    assert controller.current == c
    assert session.played == ["A", "C"]
    await controller.close()
