from __future__ import annotations

import asyncio
import logging
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from radio.audio_source import YTDLResolver
from radio.config import CROSSFADE_MAX_MS, CROSSFADE_MIN_MS, BotConfig
from radio.errors import ConnectionFailure, ResolutionError
from radio.events import EventKind, SessionEvent
from radio.models import Listener, Origin, PlaybackState
from radio.session import PlaybackSession
from radio.session_manager import SessionManager
from radio.spotify_resolver import SpotifyResolver
from radio.stats_store import JsonSongStats
from radio.url_parser import Platform, classify, is_playlist

log = logging.getLogger(__name__)


def format_duration(seconds: int | None) -> str:
    if not seconds or seconds <= 0:
        return "LIVE"
    m, s = divmod(seconds, 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


class DiscordVoiceOutput:
    """Adapts a discord.VoiceClient to the session's audio output."""

    def __init__(self, vc: discord.VoiceClient, loop: asyncio.AbstractEventLoop) -> None:
        self.vc = vc
        self._loop = loop

    @classmethod
    async def join(
        cls, channel: discord.VoiceChannel, *, timeout: float = 20.0
    ) -> DiscordVoiceOutput:
        try:
            vc = await channel.connect(self_deaf=True, timeout=timeout)
        except (asyncio.TimeoutError, discord.ClientException, OSError) as exc:
            raise ConnectionFailure(
                f"Failed to connect to Discord voice servers. This is likely a "
                f"network/firewall issue. Error: {exc}"
            ) from exc
        return cls(vc, asyncio.get_running_loop())

    def play(self, source, after) -> None:
        if not self.vc.is_connected():
            raise ConnectionFailure("Voice connection was lost")

        # discord.py calls ``after`` from its player thread
        def _after(error: Exception | None) -> None:
            self._loop.call_soon_threadsafe(after, error)

        self.vc.play(source, after=_after)

    def stop(self) -> None:
        self.vc.stop()

    def pause(self) -> None:
        self.vc.pause()

    def resume(self) -> None:
        self.vc.resume()

    def is_playing(self) -> bool:
        return self.vc.is_playing()

    def is_paused(self) -> bool:
        return self.vc.is_paused()

    def set_volume(self, gain: float) -> None:
        source = self.vc.source
        if isinstance(source, discord.PCMVolumeTransformer):
            source.volume = gain

    async def disconnect(self) -> None:
        await self.vc.disconnect()


class RadioCog(commands.Cog):
    def __init__(self, bot: commands.Bot, config: BotConfig) -> None:
        self.bot = bot
        self.config = config
        self.store = JsonSongStats(config.data_dir / "radio_stats.json")
        self.spotify = SpotifyResolver(config.spotify_client_id, config.spotify_client_secret)
        self.resolver = YTDLResolver(config.resolver, spotify=self.spotify)
        self.sessions = SessionManager(self._new_session, config.data_dir / "settings.json")
        self._text_channels: dict[int, int] = {}
        self._idle_timers: dict[int, asyncio.TimerHandle] = {}

    async def cog_unload(self) -> None:
        for handle in self._idle_timers.values():
            handle.cancel()
        self._idle_timers.clear()
        await self.sessions.shutdown()

    # ── session wiring ───────────────────────────────────────────────────

    def _new_session(self, guild_id: int) -> PlaybackSession:
        session = PlaybackSession(
            guild_id,
            resolver=self.resolver,
            store=self.store,
            listeners=lambda: self._listeners(guild_id),
            config=self.config.playback,
        )
        session.events.subscribe(lambda event: self._on_session_event(guild_id, event))
        return session

    def _listeners(self, guild_id: int) -> list[Listener]:
        guild = self.bot.get_guild(guild_id)
        if guild is None or guild.voice_client is None:
            return []
        channel = guild.voice_client.channel
        return [
            Listener(str(m.id), m.display_name)
            for m in getattr(channel, "members", [])
            if not m.bot
        ]

    async def _notify(self, guild_id: int, msg: str) -> None:
        channel_id = self._text_channels.get(guild_id)
        guild = self.bot.get_guild(guild_id)
        if channel_id is None or guild is None:
            return
        channel = guild.get_channel(channel_id)
        if channel is not None and hasattr(channel, "send"):
            try:
                await channel.send(msg)  # type: ignore[union-attr]
            except discord.HTTPException as exc:
                log.warning("Could not send notice to %s: %s", channel_id, exc)

    async def _on_session_event(self, guild_id: int, event: SessionEvent) -> None:
        if event.kind is EventKind.TRACK_STARTED and event.track is not None:
            self._cancel_idle_timer(guild_id)
            track = event.track
            prefix = "📻 " if track.requested_by.is_automatic else "🎵 "
            await self._notify(
                guild_id,
                f"{prefix}Now playing **{track.title}** by {track.artist} "
                f"[{format_duration(track.duration_seconds)}] · {track.requested_by.display_name}",
            )
        elif event.kind is EventKind.QUEUE_EMPTY:
            self._schedule_idle_timer(guild_id)
            await self._notify(guild_id, event.message)
        elif event.kind is EventKind.NOTICE:
            session = self.sessions.find(guild_id)
            if session is not None and session.state is PlaybackState.IDLE:
                self._schedule_idle_timer(guild_id)
            await self._notify(guild_id, event.message)
        elif event.kind is EventKind.ERROR:
            await self._notify(guild_id, f"❌ {event.message}")

    # ── idle disconnect ──────────────────────────────────────────────────

    def _cancel_idle_timer(self, guild_id: int) -> None:
        handle = self._idle_timers.pop(guild_id, None)
        if handle:
            handle.cancel()

    def _schedule_idle_timer(self, guild_id: int) -> None:
        self._cancel_idle_timer(guild_id)
        self._idle_timers[guild_id] = asyncio.get_running_loop().call_later(
            self.config.idle_disconnect_seconds,
            lambda: asyncio.ensure_future(self._check_idle(guild_id)),
        )

    async def _check_idle(self, guild_id: int) -> None:
        self._idle_timers.pop(guild_id, None)
        session = self.sessions.find(guild_id)
        if session is None or session.state is not PlaybackState.IDLE or session.busy:
            return
        log.info("Guild %s idle, disconnecting", guild_id)
        await self._notify(guild_id, "📻 Station sign-off. Thanks for listening!")
        await self.sessions.remove(guild_id)
        self._text_channels.pop(guild_id, None)

    # ── helpers ──────────────────────────────────────────────────────────

    async def _ensure_connected(
        self, interaction: discord.Interaction, session: PlaybackSession
    ) -> bool:
        """Join the caller's voice channel if needed. Reports failures itself."""
        voice = getattr(interaction.user, "voice", None)
        if voice is None or voice.channel is None:
            await interaction.followup.send("You need to be in a voice channel.", ephemeral=True)
            return False
        if session.connected:
            return True
        channel = voice.channel
        try:
            await session.connect(
                lambda: DiscordVoiceOutput.join(
                    channel, timeout=self.config.voice_connect_timeout
                )
            )
        except ConnectionFailure as exc:
            await interaction.followup.send(f"❌ {exc}")
            return False
        return True

    def _session_for(self, interaction: discord.Interaction) -> PlaybackSession:
        guild_id = interaction.guild.id  # type: ignore[union-attr]
        self._text_channels[guild_id] = interaction.channel_id  # type: ignore[assignment]
        return self.sessions.get(guild_id)

    async def _start(self, interaction: discord.Interaction, session: PlaybackSession) -> None:
        try:
            await session.start()
        except ConnectionFailure as exc:
            await interaction.followup.send(f"❌ {exc}")

    async def _request(
        self, interaction: discord.Interaction, url: str, *, priority: bool
    ) -> None:
        await interaction.response.defer()
        session = self._session_for(interaction)
        if classify(url)[0] is Platform.UNSUPPORTED:
            await interaction.followup.send(
                "Unsupported URL. Please use YouTube, SoundCloud, Spotify, or Deezer URLs."
            )
            return
        try:
            meta = await self.resolver.describe(url)
        except ResolutionError as exc:
            await interaction.followup.send(f"❌ {exc.message}")
            return

        user = interaction.user
        self.store.record_request(str(user.id), user.display_name, meta.url, meta.title, meta.artist)
        track = meta.to_track(Origin.user(user.id, user.display_name))
        position = session.enqueue(track, priority=priority)

        note = ""
        if is_playlist(url):
            note = "\nℹ️ Playlist URL detected - added only the first song. Use `/playlist` to add entire playlists."
        await interaction.followup.send(
            f"Queued **{track.title}** at position {position}.{note}"
        )
        if await self._ensure_connected(interaction, session):
            await self._start(interaction, session)

    # ── commands ─────────────────────────────────────────────────────────

    @app_commands.command(name="play", description="Queue a song from YouTube, SoundCloud, Spotify or Deezer")
    @app_commands.describe(url="Link to the song")
    async def play(self, interaction: discord.Interaction, url: str) -> None:
        await self._request(interaction, url, priority=False)

    @app_commands.command(name="playnext", description="Queue a song to play right after the current one")
    @app_commands.describe(url="Link to the song")
    async def playnext(self, interaction: discord.Interaction, url: str) -> None:
        await self._request(interaction, url, priority=True)

    @app_commands.command(name="playlist", description="Queue every song of a YouTube playlist")
    @app_commands.describe(url="Link to the playlist")
    async def playlist(self, interaction: discord.Interaction, url: str) -> None:
        await interaction.response.defer()
        session = self._session_for(interaction)
        try:
            entries = await self.resolver.expand_playlist(url)
        except ResolutionError as exc:
            await interaction.followup.send(f"❌ {exc.message}")
            return

        user = interaction.user
        origin = Origin.user(user.id, user.display_name)
        for meta in entries:
            self.store.record_request(str(user.id), user.display_name, meta.url, meta.title, meta.artist)
            session.enqueue(meta.to_track(origin))
        await interaction.followup.send(f"Queued **{len(entries)}** songs from the playlist.")

        if not await self._ensure_connected(interaction, session):
            return
        current = session.current
        if (
            session.state is PlaybackState.PLAYING
            and current is not None
            and current.requested_by.is_automatic
        ):
            await interaction.followup.send("🎵 Interrupting radio to play your playlist!")
            await session.skip()
        else:
            await self._start(interaction, session)

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        if session.current is None:
            await interaction.response.send_message(
                "❌ Nothing is playing. Use `/play` to queue a track.", ephemeral=True
            )
            return
        title = session.current.title
        await interaction.response.send_message(f"⏭️ Skipped **{title}**.")
        try:
            await session.skip()
        except ConnectionFailure as exc:
            await interaction.followup.send(f"❌ {exc}")

    @app_commands.command(name="pause", description="Pause playback")
    async def pause(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        if session.pause():
            await interaction.response.send_message("⏸️ Paused.")
        else:
            await interaction.response.send_message("Nothing is playing.", ephemeral=True)

    @app_commands.command(name="resume", description="Resume playback")
    async def resume(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        if session.resume():
            await interaction.response.send_message("▶️ Resumed.")
        else:
            await interaction.response.send_message("Nothing is paused.", ephemeral=True)

    @app_commands.command(name="clear", description="Remove every song waiting in the queue")
    async def clear(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        removed = session.clear()
        await interaction.response.send_message(f"🗑️ Cleared {removed} queued song(s).")

    @app_commands.command(name="queue", description="Show what's playing and what's next")
    async def queue(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        if session.current is None and not session.queue:
            await interaction.response.send_message("The queue is empty.", ephemeral=True)
            return
        lines = []
        if session.current is not None:
            lines.append(
                f"**Now:** {session.current.title} · {session.current.requested_by.display_name}"
            )
        for i, track in enumerate(list(session.queue)[:15], start=1):
            lines.append(f"**{i}.** {track.title} [{format_duration(track.duration_seconds)}]")
        if len(session.queue) > 15:
            lines.append(f"...and {len(session.queue) - 15} more")
        modes = []
        if session.radio_mode:
            modes.append("radio")
        if session.discovery_mode:
            modes.append("discovery")
        if modes:
            lines.append(f"Modes: {', '.join(modes)}")
        await interaction.response.send_message("\n".join(lines))

    @app_commands.command(name="radio", description="Turn the personalized radio on or off")
    @app_commands.choices(mode=[
        app_commands.Choice(name="on", value="on"),
        app_commands.Choice(name="off", value="off"),
    ])
    async def radio(self, interaction: discord.Interaction, mode: app_commands.Choice[str]) -> None:
        enabled = mode.value == "on"
        await interaction.response.defer()
        session = self._session_for(interaction)
        if enabled and not await self._ensure_connected(interaction, session):
            return
        await interaction.followup.send(
            "📻 Radio mode enabled! Playing songs from everyone's requests."
            if enabled else "📻 Radio mode disabled."
        )
        try:
            await session.set_radio_mode(enabled)
        except ConnectionFailure as exc:
            await interaction.followup.send(f"❌ {exc}")

    @app_commands.command(name="discovery", description="Mix new songs related to your library into the radio")
    @app_commands.choices(mode=[
        app_commands.Choice(name="on", value="on"),
        app_commands.Choice(name="off", value="off"),
    ])
    async def discovery(self, interaction: discord.Interaction, mode: app_commands.Choice[str]) -> None:
        session = self._session_for(interaction)
        enabled = mode.value == "on"
        session.set_discovery_mode(enabled)
        self.sessions.save_settings(session)
        if enabled and not session.radio_mode:
            msg = "🔍 Discovery mode enabled. It kicks in once radio mode is on (`/radio on`)."
        elif enabled:
            msg = "🔍 Discovery mode enabled!"
        else:
            msg = "🔍 Discovery mode disabled."
        await interaction.response.send_message(msg)

    @app_commands.command(name="crossfade", description="Set the crossfade length between songs")
    @app_commands.describe(seconds="Crossfade duration in seconds (1-10)")
    async def crossfade(self, interaction: discord.Interaction, seconds: int) -> None:
        session = self._session_for(interaction)
        try:
            session.set_crossfade(seconds * 1000)
        except ValueError:
            await interaction.response.send_message(
                f"Must be {CROSSFADE_MIN_MS // 1000}-{CROSSFADE_MAX_MS // 1000} seconds.",
                ephemeral=True,
            )
            return
        self.sessions.save_settings(session)
        await interaction.response.send_message(f"🎵 Crossfade: **{seconds}s**.")

    @app_commands.command(name="like", description="Add the current song to your radio library")
    async def like(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        track = session.current
        if track is None:
            await interaction.response.send_message("Nothing is playing.", ephemeral=True)
            return
        user = interaction.user
        if self.store.rating(str(user.id), track.url) == 1:
            await interaction.response.send_message(
                f"**{track.title}** is already in your library.", ephemeral=True
            )
            return
        self.store.rate(str(user.id), user.display_name, track.url, track.title, 1)
        await interaction.response.send_message(
            f"👍 Added **{track.title}** to your library.", ephemeral=True
        )

    @app_commands.command(name="dislike", description="Give the current song a thumbs-down")
    async def dislike(self, interaction: discord.Interaction) -> None:
        session = self._session_for(interaction)
        track = session.current
        if track is None:
            await interaction.response.send_message("Nothing is playing.", ephemeral=True)
            return
        user = interaction.user
        self.store.rate(str(user.id), user.display_name, track.url, track.title, -1)
        await interaction.response.send_message(
            f"👎 Noted, you don't like **{track.title}**.", ephemeral=True
        )

    @app_commands.command(name="history", description="Show the songs you heard recently")
    async def history(self, interaction: discord.Interaction) -> None:
        entries = self.store.user_history(str(interaction.user.id), limit=10)
        if not entries:
            await interaction.response.send_message(
                "No listening history yet.", ephemeral=True
            )
            return
        lines = [f"**{i}.** {e['title']}" for i, e in enumerate(entries, start=1)]
        await interaction.response.send_message(
            "🕘 Recently played for you:\n" + "\n".join(lines), ephemeral=True
        )

    @app_commands.command(name="leave", description="Stop playback and leave the voice channel")
    async def leave(self, interaction: discord.Interaction) -> None:
        guild_id = interaction.guild.id  # type: ignore[union-attr]
        if guild_id not in self.sessions:
            await interaction.response.send_message("Not connected.", ephemeral=True)
            return
        self._cancel_idle_timer(guild_id)
        await self.sessions.remove(guild_id)
        self._text_channels.pop(guild_id, None)
        await interaction.response.send_message("⏹️ Stopped and disconnected.")

    # ── voice presence ───────────────────────────────────────────────────

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Auto-disconnect when the bot is left alone."""
        if member.bot or before.channel is None:
            return
        vc: Optional[discord.VoiceClient] = member.guild.voice_client  # type: ignore[assignment]
        if vc is None or vc.channel != before.channel:
            return
        if any(not m.bot for m in before.channel.members):
            return
        guild_id = member.guild.id
        log.info("Guild %s: voice channel empty, disconnecting", guild_id)
        self._cancel_idle_timer(guild_id)
        await self.sessions.remove(guild_id)
        self._text_channels.pop(guild_id, None)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(RadioCog(bot, bot.config))  # type: ignore[attr-defined]
