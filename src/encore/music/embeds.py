"""Embed helpers for music interactions."""

from __future__ import annotations

import datetime as dt
from typing import List, Optional, Sequence

import nextcord

from .queue import QueueEntry
from .state import NowPlaying, PlayerSettings

__all__ = ["EmbedFactory", "QueuePaginator", "progress_bar"]

BAR_LENGTH = 25


def _format_duration(ms: int) -> str:
    seconds = max(0, int(ms // 1000))
    return str(dt.timedelta(seconds=seconds))


def _volume_indicator(volume: int) -> str:
    if volume == 0:
        icon = "🔇"
    elif volume <= 33:
        icon = "🔈"
    elif volume <= 67:
        icon = "🔉"
    else:
        icon = "🔊"
    return f"{icon} Volume: {volume}%"


def progress_bar(position: int, duration: int, *, length: int = BAR_LENGTH) -> str:
    ratio = min(1.0, position / duration) if duration > 0 else 0.0
    marker = min(length - 1, int(ratio * length))
    cells = ["═" if i < marker else "🔘" if i == marker else "─" for i in range(length)]
    return "╠" + "".join(cells) + "╣"


def _link(entry: QueueEntry) -> str:
    title = entry.handle.title or entry.query or "Unknown title"
    target = entry.handle.uri or entry.query
    return f"[{title}]({target})" if target else title


class EmbedFactory:
    """Create embeds for playback events."""

    def __init__(self, *, color: int = 0x5865F2) -> None:
        self.color = color

    def now_playing(self, view: NowPlaying) -> nextcord.Embed:
        entry = view.entry
        duration = entry.handle.duration
        percentage = (min(view.position, duration) / duration * 100) if duration > 0 else 0.0
        title = "🎵 Now Playing"
        if view.repeat_mode.emoji:
            title = f"{title} {view.repeat_mode.emoji}"
        if view.is_paused:
            title = f"{title} (paused)"

        lines = [
            f"### {_link(entry)}",
            "",
            f"🎵 **Artist:** {entry.handle.author}",
            f"🎧 **Source:** {entry.handle.source}",
            f"👤 **Requested by:** {entry.requester_display}",
            "",
            progress_bar(view.position, duration),
            f"`{_format_duration(view.position)}/{_format_duration(duration)} ({percentage:.1f}%)`",
        ]
        if view.effects:
            lines += ["", "**Active effects:** " + " ".join(view.effects)]
        lines += [
            "",
            f"📑 Track **{view.track_number}** of **{view.queue_length}**",
            f"🔁 Repeat mode: **{view.repeat_mode.value}**",
        ]
        if view.autoplay_count:
            lines.append(f"📻 Autoplay: **{view.autoplay_count}** tracks")

        embed = nextcord.Embed(title=title, description="\n".join(lines), color=self.color)
        embed.set_footer(text=_volume_indicator(view.volume))
        return embed

    def queued(self, entry: QueueEntry, *, position: int, eta_ms: int) -> nextcord.Embed:
        embed = nextcord.Embed(title="Track queued", color=self.color)
        embed.description = _link(entry)
        embed.add_field(name="Channel", value=entry.handle.author, inline=True)
        embed.add_field(name="Duration", value=_format_duration(entry.handle.duration), inline=True)
        embed.add_field(name="Queue position", value=str(position), inline=True)
        embed.add_field(
            name="Estimated time",
            value=_format_duration(eta_ms) if eta_ms > 0 else "Ready",
            inline=True,
        )
        embed.set_footer(text=f"Requested by {entry.requester_display}")
        return embed

    def queue_page(
        self,
        entries: Sequence[QueueEntry],
        *,
        page: int,
        per_page: int,
        total: int,
        current: Optional[QueueEntry] = None,
    ) -> nextcord.Embed:
        embed = nextcord.Embed(title="Queue", color=self.color)
        if current:
            embed.add_field(name="Now Playing", value=_link(current), inline=False)
        if not entries:
            embed.description = "Queue is empty."
        else:
            lines: List[str] = []
            for number, entry in enumerate(entries, start=1 + page * per_page):
                marker = "▶ " if current and entry.index == current.index else ""
                duration = _format_duration(entry.handle.duration)
                lines.append(f"`{number}.` {marker}{_link(entry)} - {duration}")
            embed.description = "\n".join(lines)
        embed.set_footer(text=f"Page {page + 1}/{max(1, (total + per_page - 1) // per_page)}")
        return embed

    def settings(self, settings: PlayerSettings) -> nextcord.Embed:
        embed = nextcord.Embed(title="⚙️ Music settings", color=self.color)
        embed.add_field(name="Volume", value=f"{settings.volume}%", inline=True)
        embed.add_field(name="Repeat", value=settings.repeat_mode.value, inline=True)
        embed.add_field(
            name="Autoplay",
            value=f"{settings.autoplay_count} tracks" if settings.autoplay_count else "Off",
            inline=True,
        )
        embed.add_field(
            name="DJ role",
            value=f"<@&{settings.dj_role_id}>" if settings.dj_role_id else "Everyone",
            inline=True,
        )
        embed.add_field(
            name="Music channel",
            value=f"<#{settings.music_channel_id}>" if settings.music_channel_id else "Command channel",
            inline=True,
        )
        embed.add_field(
            name="Vote skip",
            value=f"On at {settings.vote_skip_threshold}%" if settings.vote_skip_enabled else "Off",
            inline=True,
        )
        return embed

    def info(self, title: str, message: str) -> nextcord.Embed:
        return nextcord.Embed(title=title, description=message, color=self.color)

    def failure(self, message: str) -> nextcord.Embed:
        return nextcord.Embed(title="Playback failed", description=message, color=0xFF5555)


class QueuePaginator(nextcord.ui.View):
    """Button-based pagination for queue embeds."""

    def __init__(
        self,
        factory: EmbedFactory,
        entries: Sequence[QueueEntry],
        *,
        per_page: int = 8,
        current: Optional[QueueEntry] = None,
    ) -> None:
        super().__init__(timeout=60)
        self.factory = factory
        self.entries = list(entries)
        self.per_page = per_page
        self.current = current
        self.page = 0
        self.message: Optional[nextcord.Message] = None
        self._update_buttons()

    @property
    def total_pages(self) -> int:
        return max(1, (len(self.entries) + self.per_page - 1) // self.per_page)

    def _update_buttons(self) -> None:
        self.prev_button.disabled = self.page == 0
        self.next_button.disabled = self.page >= self.total_pages - 1

    def _render(self) -> nextcord.Embed:
        start = self.page * self.per_page
        return self.factory.queue_page(
            self.entries[start : start + self.per_page],
            page=self.page,
            per_page=self.per_page,
            total=len(self.entries),
            current=self.current,
        )

    async def send_initial(self, interaction: nextcord.Interaction) -> None:
        if interaction.response.is_done():
            self.message = await interaction.followup.send(embed=self._render(), view=self)
        else:
            self.message = await interaction.send(embed=self._render(), view=self)

    async def _turn(self, interaction: nextcord.Interaction, page: int) -> None:
        self.page = max(0, min(self.total_pages - 1, page))
        self._update_buttons()
        await interaction.response.defer()
        if self.message:
            await self.message.edit(embed=self._render(), view=self)

    @nextcord.ui.button(label="‹", style=nextcord.ButtonStyle.secondary)
    async def prev_button(self, _: nextcord.ui.Button, interaction: nextcord.Interaction) -> None:
        await self._turn(interaction, self.page - 1)

    @nextcord.ui.button(label="›", style=nextcord.ButtonStyle.secondary)
    async def next_button(self, _: nextcord.ui.Button, interaction: nextcord.Interaction) -> None:
        await self._turn(interaction, self.page + 1)
