"""Nextcord music cog: slash commands and Lavalink events for the playback engine."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Dict, Optional

import nextcord
from nextcord.ext import commands

from encore.config import Config
from encore.music import (
    EFFECT_PRESETS,
    AutoplayService,
    EmbedFactory,
    LastFmRecommender,
    LavalinkAudioBackend,
    LavalinkUnavailable,
    MissingResourceError,
    NextcordGuildDirectory,
    PlaybackController,
    PlaybackMetrics,
    PlayerRegistry,
    QueuePaginator,
    RecoveryCoordinator,
    RepeatMode,
    TrackLoadFailure,
    TrackResolver,
    configure_json_logging,
    open_stores,
)
from encore.music.state import NowPlaying
from encore.utils import safe_reply

_LOGGING_INITIALISED = False
GUILD_ONLY = "This command can only be used in guilds."
NOTHING_PLAYING = "Nothing is playing right now."
NOT_DJ = "You need the DJ role to control playback."


def _ensure_logging() -> None:
    global _LOGGING_INITIALISED
    if not _LOGGING_INITIALISED:
        configure_json_logging()
        _LOGGING_INITIALISED = True


def parse_timestamp(value: str) -> int:
    """``"90"``, ``"1:30"`` or ``"1:02:03"`` to milliseconds."""

    parts = value.strip().split(":")
    if not parts or len(parts) > 3 or not all(part.strip().isdigit() for part in parts):
        raise ValueError(f"Invalid timestamp: {value!r}")
    seconds = 0
    for part in parts:
        seconds = seconds * 60 + int(part)
    return seconds * 1000


class Music(commands.Cog):
    """Slash command music cog with crash-safe playback."""

    def __init__(self, bot: commands.Bot) -> None:
        _ensure_logging()
        self.bot = bot
        self.logger = logging.getLogger("encore.music")
        # Created lazily so loading the cog does not need a Lavalink node.
        self._backend: Optional[LavalinkAudioBackend] = None
        self._resolver: Optional[TrackResolver] = None
        self.metrics = PlaybackMetrics()
        self.embed_factory = EmbedFactory()
        self.stores = open_stores(Config.STATE_DIR)
        self.recommender = LastFmRecommender(Config.LASTFM_API_KEY)
        self.registry = PlayerRegistry(self._create_controller, self.stores.snapshots)
        self.recovery = RecoveryCoordinator(
            self.stores,
            self.registry,
            NextcordGuildDirectory(bot),
            concurrency=Config.RECOVERY_CONCURRENCY,
            staleness=dt.timedelta(minutes=Config.SNAPSHOT_STALE_MINUTES),
            metrics=self.metrics,
        )
        self._text_channels: Dict[int, int] = {}
        self._now_playing_messages: Dict[int, nextcord.Message] = {}
        self._recovery_task: Optional[asyncio.Task] = None

    @property
    def backend(self) -> LavalinkAudioBackend:
        if self._backend is None:
            self._backend = LavalinkAudioBackend(self.bot)
        return self._backend

    @property
    def resolver(self) -> TrackResolver:
        if self._resolver is None:
            self._resolver = TrackResolver(self.backend)
        return self._resolver

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @commands.Cog.listener()
    async def on_ready(self) -> None:
        if self.recovery.started or self._recovery_task is not None:
            return
        self._recovery_task = asyncio.create_task(self._recover(), name="encore-recovery")

    async def _recover(self) -> None:
        if not await self.backend.wait_ready():
            self.logger.error("Lavalink is not ready; playback recovery postponed")
            self._recovery_task = None
            return
        guild_ids = self.stores.snapshots.guild_ids()
        if not guild_ids:
            return
        await self.recovery.run(guild_ids)

    async def shutdown(self) -> None:
        """Persist a final snapshot per guild and release every connection."""

        task, self._recovery_task = self._recovery_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.registry.close_all()
        await self.recommender.close()
        if self._backend is not None:
            await self._backend.close()

    def cog_unload(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self.shutdown())

    # ------------------------------------------------------------------
    # Controller wiring
    # ------------------------------------------------------------------
    async def _create_controller(self, guild_id: int, voice_channel_id: int) -> PlaybackController:
        channel = self.bot.get_channel(voice_channel_id)
        if channel is None:
            raise MissingResourceError(f"Voice channel {voice_channel_id} is not available")
        session = await self.backend.join(channel)
        controller = PlaybackController(
            guild_id,
            session,
            self.stores,
            autoplay=AutoplayService(self.recommender, self.resolver),
            announcer=self._announce,
            notifier=self._notify,
            metrics=self.metrics,
            snapshot_interval=Config.SNAPSHOT_INTERVAL,
        )
        await controller.start()
        return controller

    async def _announcement_channel(self, guild_id: int) -> Optional[nextcord.abc.Messageable]:
        settings = await self.stores.settings.get(guild_id)
        channel_id = settings.music_channel_id or self._text_channels.get(guild_id)
        if not channel_id:
            return None
        channel = self.bot.get_channel(channel_id)
        if not isinstance(channel, nextcord.abc.Messageable):
            return None
        return channel

    async def _announce(self, guild_id: int, view: NowPlaying) -> None:
        channel = await self._announcement_channel(guild_id)
        if channel is None:
            return
        previous = self._now_playing_messages.pop(guild_id, None)
        if previous is not None:
            try:
                await previous.delete()
            except nextcord.HTTPException:
                pass
        self._now_playing_messages[guild_id] = await channel.send(
            embed=self.embed_factory.now_playing(view)
        )

    async def _notify(self, guild_id: int, message: str) -> None:
        channel = await self._announcement_channel(guild_id)
        if channel is not None:
            await channel.send(message)

    async def _ensure_voice(
        self, interaction: nextcord.Interaction
    ) -> tuple[Optional[PlaybackController], Optional[str]]:
        user = interaction.user
        if user is None or not isinstance(user, nextcord.Member) or user.voice is None:
            return None, "You must join a voice channel first."
        guild = interaction.guild
        if guild is None:
            return None, GUILD_ONLY
        if not await self.backend.wait_ready():
            return None, "Lavalink node is not ready."

        channel = user.voice.channel
        try:
            session = await self.backend.join(channel)
            controller = await self.registry.get_or_create(guild.id, channel.id)
        except (LavalinkUnavailable, MissingResourceError) as exc:
            self.logger.warning("Voice connection failed", extra={"guild_id": guild.id, "error": str(exc)})
            return None, "Could not join your voice channel."
        controller.bind(session)
        if interaction.channel_id:
            self._text_channels[guild.id] = interaction.channel_id
        return controller, None

    def _controller_for(
        self, interaction: nextcord.Interaction, *, dj: bool = True
    ) -> tuple[Optional[PlaybackController], Optional[str]]:
        if interaction.guild is None:
            return None, GUILD_ONLY
        controller = self.registry.get(interaction.guild.id)
        if controller is None or controller.current is None:
            return None, NOTHING_PLAYING
        if dj and not controller.has_dj(interaction.user):
            return None, NOT_DJ
        return controller, None

    def _settings_gate(self, interaction: nextcord.Interaction) -> Optional[str]:
        if interaction.guild is None:
            return GUILD_ONLY
        controller = self.registry.get(interaction.guild.id)
        if controller is not None and not controller.has_dj(interaction.user):
            return NOT_DJ
        return None

    async def _fail(self, interaction: nextcord.Interaction, message: str) -> None:
        await safe_reply(interaction, embed=self.embed_factory.failure(message), ephemeral=True)

    async def _playback_unavailable(
        self, interaction: nextcord.Interaction, controller: PlaybackController, exc: Exception
    ) -> None:
        self.logger.warning(
            "Playback backend unavailable", extra={"guild_id": controller.guild_id, "error": str(exc)}
        )
        await self._fail(interaction, "The audio node is unavailable right now. Try again shortly.")

    async def _update_settings(self, guild_id: int, **changes) -> None:
        """Route setting changes through the live controller when there is one."""

        controller = self.registry.get(guild_id)
        if controller is None:
            await self.stores.settings.update(guild_id, **changes)
            return
        if "volume" in changes:
            await controller.set_volume(changes["volume"])
        if "repeat_mode" in changes:
            await controller.set_repeat_mode(changes["repeat_mode"])
        if "autoplay_count" in changes:
            await controller.set_autoplay(changes["autoplay_count"])
        if "dj_role_id" in changes:
            await controller.set_dj_role(changes["dj_role_id"])
        if "music_channel_id" in changes:
            await controller.set_music_channel(changes["music_channel_id"])
        if "vote_skip_enabled" in changes:
            await controller.set_vote_skip(
                changes["vote_skip_enabled"], changes.get("vote_skip_threshold")
            )

    # ------------------------------------------------------------------
    # Playback commands
    # ------------------------------------------------------------------
    @nextcord.slash_command(name="play", description="Play a track or add it to the queue")
    async def play(
        self,
        interaction: nextcord.Interaction,
        query: str = nextcord.SlashOption(description="Track name or link"),
    ) -> None:
        await interaction.response.defer(ephemeral=False)
        controller, error = await self._ensure_voice(interaction)
        if error:
            await self._fail(interaction, error)
            return
        assert controller is not None
        try:
            handle = await self.resolver.resolve_strict(query)
        except (TrackLoadFailure, LavalinkUnavailable) as exc:
            self.logger.error(
                "Track load failure", exc_info=exc, extra={"guild_id": controller.guild_id, "query": query}
            )
            await self._fail(interaction, str(exc))
            return

        eta_ms = controller.eta_ms()
        try:
            entry = await controller.enqueue(
                handle,
                requested_by=interaction.user.id if interaction.user else 0,
                requester_display=str(interaction.user),
                query=query,
            )
        except LavalinkUnavailable as exc:
            await self._playback_unavailable(interaction, controller, exc)
            return
        positions = [item.index for item in controller.queue_entries()]
        position = positions.index(entry.index) + 1 if entry.index in positions else 0
        await safe_reply(
            interaction,
            embed=self.embed_factory.queued(entry, position=position, eta_ms=eta_ms),
        )

    @nextcord.slash_command(name="skip", description="Skip the current track")
    async def skip(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        try:
            upcoming = await controller.skip()
        except LavalinkUnavailable as exc:
            await self._playback_unavailable(interaction, controller, exc)
            return
        if upcoming is None:
            await safe_reply(interaction, "Skipped. The queue is finished.")
        else:
            await safe_reply(interaction, f"Skipped. Up next: **{upcoming.title}**")

    @nextcord.slash_command(name="playnumber", description="Play a queued track right away")
    async def playnumber(
        self,
        interaction: nextcord.Interaction,
        number: int = nextcord.SlashOption(description="Position shown by /queue", min_value=1),
    ) -> None:
        await interaction.response.defer()
        controller, error = await self._ensure_voice(interaction)
        if error:
            await self._fail(interaction, error)
            return
        assert controller is not None
        if not controller.has_dj(interaction.user):
            await self._fail(interaction, NOT_DJ)
            return
        entries = controller.queue_entries()
        if not 1 <= number <= len(entries):
            message = f"Pick a number between 1 and {len(entries)}." if entries else "The queue is empty."
            await self._fail(interaction, message)
            return
        try:
            playing = await controller.play(entries[number - 1])
        except ValueError:
            await self._fail(interaction, "That track is no longer queued.")
            return
        except LavalinkUnavailable as exc:
            await self._playback_unavailable(interaction, controller, exc)
            return
        if playing is None:
            await self._fail(interaction, "That track could not be loaded.")
        else:
            await safe_reply(interaction, f"Now playing **{playing.title}**.")

    @nextcord.slash_command(name="voteskip", description="Vote to skip the current track")
    async def voteskip(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer()
        controller, error = self._controller_for(interaction, dj=False)
        if error:
            await self._fail(interaction, error)
            return
        if not controller.settings.vote_skip_enabled:
            await self._fail(interaction, "Vote skipping is disabled in this server.")
            return
        user = interaction.user
        voice = getattr(user, "voice", None)
        if voice is None or voice.channel is None or voice.channel.id != controller.session.channel_id:
            await self._fail(interaction, "Join the bot's voice channel to vote.")
            return
        listeners = len([member for member in voice.channel.members if not member.bot])
        try:
            tally = await controller.vote_skip(user.id, listeners)
        except LavalinkUnavailable as exc:
            await self._playback_unavailable(interaction, controller, exc)
            return
        if tally.skipped:
            await safe_reply(interaction, f"Vote passed ({tally.votes}/{tally.required}). Skipped.")
        else:
            await safe_reply(interaction, f"Vote recorded: {tally.votes}/{tally.required} needed to skip.")

    @nextcord.slash_command(name="stop", description="Stop playback and clear the queue")
    async def stop(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        await controller.stop()
        await controller.clear_queue()
        await safe_reply(interaction, "Playback stopped and queue cleared.")

    @nextcord.slash_command(name="pause", description="Pause playback")
    async def pause(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        changed = await controller.pause()
        await safe_reply(interaction, "Paused." if changed else "Already paused.")

    @nextcord.slash_command(name="resume", description="Resume playback")
    async def resume(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        changed = await controller.resume()
        await safe_reply(interaction, "Resumed." if changed else "Playback is not paused.")

    @nextcord.slash_command(name="seek", description="Jump to a position in the current track")
    async def seek(
        self,
        interaction: nextcord.Interaction,
        position: str = nextcord.SlashOption(description="Seconds, mm:ss or hh:mm:ss"),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        try:
            target = parse_timestamp(position)
        except ValueError:
            await self._fail(interaction, "Use seconds, mm:ss or hh:mm:ss.")
            return
        applied = await controller.seek(target)
        await safe_reply(interaction, f"Seeked to `{dt.timedelta(seconds=applied // 1000)}`.")

    @nextcord.slash_command(name="clear", description="Remove every queued track except the current one")
    async def clear(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        removed = await controller.clear_queue()
        await safe_reply(interaction, f"Removed {removed} tracks from the queue.")

    @nextcord.slash_command(name="leave", description="Disconnect and forget the current session")
    async def leave(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        guild = interaction.guild
        if guild is None:
            await self._fail(interaction, GUILD_ONLY)
            return
        controller = self.registry.get(guild.id)
        if controller is not None and not controller.has_dj(interaction.user):
            await self._fail(interaction, NOT_DJ)
            return
        if controller is not None:
            await controller.stop()
            await controller.clear_queue()
        removed = await self.registry.remove(guild.id, discard_snapshot=True)
        if not removed and self._backend is not None:
            await self._backend.leave(guild.id)
        self._now_playing_messages.pop(guild.id, None)
        await safe_reply(interaction, "Left the voice channel.")

    @nextcord.slash_command(name="effect", description="Toggle an audio effect")
    async def effect(
        self,
        interaction: nextcord.Interaction,
        name: str = nextcord.SlashOption(
            description="Effect preset", choices={label: key for key, label in EFFECT_PRESETS.items()}
        ),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        controller, error = self._controller_for(interaction)
        if error:
            await self._fail(interaction, error)
            return
        enabled = await controller.toggle_effect(name)
        state = "enabled" if enabled else "disabled"
        await safe_reply(interaction, f"{EFFECT_PRESETS[name]} {state}.")

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    @nextcord.slash_command(name="volume", description="Set the playback volume")
    async def volume(
        self,
        interaction: nextcord.Interaction,
        level: int = nextcord.SlashOption(description="0-100", min_value=0, max_value=100),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        error = self._settings_gate(interaction)
        if error:
            await self._fail(interaction, error)
            return
        await self._update_settings(interaction.guild.id, volume=level)
        await safe_reply(interaction, f"Volume set to {level}%.")

    @nextcord.slash_command(name="repeat", description="Set the repeat mode")
    async def repeat(
        self,
        interaction: nextcord.Interaction,
        mode: str = nextcord.SlashOption(
            description="What to repeat", choices={"Off": "none", "Track": "track", "Queue": "queue"}
        ),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        error = self._settings_gate(interaction)
        if error:
            await self._fail(interaction, error)
            return
        repeat_mode = RepeatMode.parse(mode)
        await self._update_settings(interaction.guild.id, repeat_mode=repeat_mode)
        await safe_reply(interaction, f"Repeat mode set to **{repeat_mode.value}** {repeat_mode.emoji}")

    @nextcord.slash_command(name="autoplay", description="Queue related tracks when the queue runs out")
    async def autoplay(
        self,
        interaction: nextcord.Interaction,
        count: int = nextcord.SlashOption(
            description="Tracks to add each time, 0 disables",
            min_value=0,
            max_value=Config.AUTOPLAY_LIMIT,
        ),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        error = self._settings_gate(interaction)
        if error:
            await self._fail(interaction, error)
            return
        count = max(0, min(count, Config.AUTOPLAY_LIMIT))
        await self._update_settings(interaction.guild.id, autoplay_count=count)
        if count and not self.recommender.configured:
            await safe_reply(interaction, "Autoplay saved, but no Last.fm API key is configured.")
            return
        await safe_reply(interaction, f"Autoplay {'disabled' if not count else f'will add {count} tracks'}.")

    @nextcord.slash_command(
        name="djrole",
        description="Set or clear the DJ role",
        default_member_permissions=nextcord.Permissions(manage_guild=True),
    )
    async def djrole(
        self,
        interaction: nextcord.Interaction,
        role: Optional[nextcord.Role] = nextcord.SlashOption(required=False, default=None),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        if interaction.guild is None:
            await self._fail(interaction, GUILD_ONLY)
            return
        await self._update_settings(interaction.guild.id, dj_role_id=role.id if role else None)
        await safe_reply(interaction, f"DJ role set to {role.mention}." if role else "DJ role cleared.")

    @nextcord.slash_command(
        name="musicchannel",
        description="Set or clear the channel for now playing messages",
        default_member_permissions=nextcord.Permissions(manage_guild=True),
    )
    async def musicchannel(
        self,
        interaction: nextcord.Interaction,
        channel: Optional[nextcord.TextChannel] = nextcord.SlashOption(required=False, default=None),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        if interaction.guild is None:
            await self._fail(interaction, GUILD_ONLY)
            return
        await self._update_settings(
            interaction.guild.id, music_channel_id=channel.id if channel else None
        )
        await safe_reply(
            interaction, f"Music channel set to {channel.mention}." if channel else "Music channel cleared."
        )

    @nextcord.slash_command(
        name="voteskipsettings",
        description="Configure vote skipping",
        default_member_permissions=nextcord.Permissions(manage_guild=True),
    )
    async def voteskipsettings(
        self,
        interaction: nextcord.Interaction,
        enabled: bool = nextcord.SlashOption(description="Allow /voteskip"),
        threshold: Optional[int] = nextcord.SlashOption(
            description="Percent of listeners needed", min_value=1, max_value=100, required=False, default=None
        ),
    ) -> None:
        await interaction.response.defer(ephemeral=True)
        if interaction.guild is None:
            await self._fail(interaction, GUILD_ONLY)
            return
        changes: dict = {"vote_skip_enabled": enabled}
        if threshold is not None:
            changes["vote_skip_threshold"] = threshold
        await self._update_settings(interaction.guild.id, **changes)
        settings = await self.stores.settings.get(interaction.guild.id)
        state = "enabled" if settings.vote_skip_enabled else "disabled"
        await safe_reply(interaction, f"Vote skip {state} at {settings.vote_skip_threshold}%.")

    @nextcord.slash_command(name="musicsettings", description="Show this server's music settings")
    async def musicsettings(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        if interaction.guild is None:
            await self._fail(interaction, GUILD_ONLY)
            return
        controller = self.registry.get(interaction.guild.id)
        if controller is not None:
            settings = controller.settings
        else:
            settings = await self.stores.settings.get(interaction.guild.id)
        await safe_reply(interaction, embed=self.embed_factory.settings(settings))

    # ------------------------------------------------------------------
    # Information
    # ------------------------------------------------------------------
    @nextcord.slash_command(name="nowplaying", description="Show the current track")
    async def nowplaying(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer()
        controller, error = self._controller_for(interaction, dj=False)
        if error:
            await self._fail(interaction, error)
            return
        view = controller.now_playing()
        if view is None:
            await self._fail(interaction, NOTHING_PLAYING)
            return
        await safe_reply(interaction, embed=self.embed_factory.now_playing(view))

    @nextcord.slash_command(name="queue", description="Show the current queue")
    async def show_queue(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        guild = interaction.guild
        if guild is None:
            await self._fail(interaction, GUILD_ONLY)
            return
        controller = self.registry.get(guild.id)
        if controller is not None:
            entries, current = controller.queue_entries(), controller.current
        else:
            queue, current = await self.stores.queues.load(guild.id)
            entries = queue.snapshot()
        if not entries:
            embed = self.embed_factory.queue_page([], page=0, per_page=8, total=0, current=current)
            await safe_reply(interaction, embed=embed)
            return
        paginator = QueuePaginator(self.embed_factory, entries, per_page=8, current=current)
        await paginator.send_initial(interaction)

    @nextcord.slash_command(name="musicstats", description="Show playback health counters")
    async def musicstats(self, interaction: nextcord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        stats = self.metrics.snapshot()
        lines = [f"**{key.replace('_', ' ')}**: {value}" for key, value in stats.items()]
        lines.append(f"**live players**: {len(self.registry)}")
        await safe_reply(interaction, embed=self.embed_factory.info("Music stats", "\n".join(lines)))

    # ------------------------------------------------------------------
    # Mafic event listeners
    # ------------------------------------------------------------------
    @commands.Cog.listener()
    async def on_track_start(self, event) -> None:
        controller = self.registry.get(event.player.guild.id)
        if controller is None:
            return
        await controller.on_track_started(controller.entry_for_track(event.track))

    @commands.Cog.listener()
    async def on_track_end(self, event) -> None:
        controller = self.registry.get(event.player.guild.id)
        if controller is None:
            return
        await controller.on_track_ended(controller.entry_for_track(event.track), event.reason)

    @commands.Cog.listener()
    async def on_track_stuck(self, event) -> None:
        controller = self.registry.get(event.player.guild.id)
        if controller is None or controller.current is None:
            return
        self.logger.warning(
            "Track stuck at %s ms, skipping: %s",
            getattr(event, "threshold_ms", None),
            controller.current.title,
            extra={"guild_id": controller.guild_id},
        )
        await controller.skip()


def setup(bot: commands.Bot) -> None:
    bot.add_cog(Music(bot))
