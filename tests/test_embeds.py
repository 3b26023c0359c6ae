import pytest

from encore.music.embeds import EmbedFactory, progress_bar
from encore.music.state import NowPlaying, PlayerSettings, RepeatMode

from _fakes import make_entry


@pytest.mark.parametrize(
    "position, duration, expected",
    [
        (0, 100, "╠🔘─────────╣"),
        (50, 100, "╠═════🔘────╣"),
        (500, 100, "╠═════════🔘╣"),
        (10, 0, "╠🔘─────────╣"),
    ],
)
def test_progress_bar(position, duration, expected):
    assert progress_bar(position, duration, length=10) == expected


def _view(**overrides):
    values = dict(
        entry=make_entry(4, "Digital Love", "Daft Punk"),
        position=90_000,
        is_paused=False,
        track_number=2,
        queue_length=5,
        volume=40,
        repeat_mode=RepeatMode.QUEUE,
        autoplay_count=0,
    )
    values.update(overrides)
    return NowPlaying(**values)


def test_now_playing_embed_describes_track_and_settings():
    embed = EmbedFactory().now_playing(_view(effects=["Nightcore"]))

    assert embed.title == "🎵 Now Playing 🔁"
    assert "[Digital Love](https://example.com/digital-love)" in embed.description
    assert "**Requested by:** tester" in embed.description
    assert "`0:01:30/0:03:00 (50.0%)`" in embed.description
    assert "Track **2** of **5**" in embed.description
    assert "Nightcore" in embed.description
    assert "Autoplay" not in embed.description
    assert embed.footer.text == "🔉 Volume: 40%"


def test_now_playing_embed_marks_pause_and_autoplay():
    embed = EmbedFactory().now_playing(
        _view(is_paused=True, repeat_mode=RepeatMode.NONE, autoplay_count=3, volume=0)
    )

    assert embed.title == "🎵 Now Playing (paused)"
    assert "📻 Autoplay: **3** tracks" in embed.description
    assert embed.footer.text == "🔇 Volume: 0%"


def test_queue_page_marks_current_entry_and_paginates():
    entries = [make_entry(index, f"Song {index}") for index in range(11, 16)]
    embed = EmbedFactory().queue_page(
        entries, page=1, per_page=5, total=12, current=entries[2]
    )

    lines = embed.description.splitlines()
    assert lines[0].startswith("`6.` [Song 11]")
    assert lines[2].startswith("`8.` ▶ [Song 13]")
    assert embed.footer.text == "Page 2/3"


def test_empty_queue_page():
    embed = EmbedFactory().queue_page([], page=0, per_page=10, total=0)
    assert embed.description == "Queue is empty."
    assert embed.footer.text == "Page 1/1"


def test_queued_embed_shows_eta():
    entry = make_entry(3, "Harder")
    ready = EmbedFactory().queued(entry, position=1, eta_ms=0)
    later = EmbedFactory().queued(entry, position=3, eta_ms=245_000)

    assert ready.fields[3].value == "Ready"
    assert later.fields[2].value == "3"
    assert later.fields[3].value == "0:04:05"


def test_settings_embed_lists_every_option():
    settings = PlayerSettings(
        volume=35,
        repeat_mode=RepeatMode.TRACK,
        autoplay_count=2,
        dj_role_id=77,
        vote_skip_enabled=True,
        vote_skip_threshold=60,
    )

    fields = {field.name: field.value for field in EmbedFactory().settings(settings).fields}

    assert fields == {
        "Volume": "35%",
        "Repeat": RepeatMode.TRACK.value,
        "Autoplay": "2 tracks",
        "DJ role": "<@&77>",
        "Music channel": "Command channel",
        "Vote skip": "On at 60%",
    }


def test_settings_embed_defaults():
    fields = {field.name: field.value for field in EmbedFactory().settings(PlayerSettings()).fields}

    assert fields["Autoplay"] == "Off"
    assert fields["DJ role"] == "Everyone"
    assert fields["Vote skip"] == "Off"
