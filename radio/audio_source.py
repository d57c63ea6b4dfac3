"""yt-dlp backed media resolver.

Turns a track url into an FFmpeg PCM stream wrapped in a volume transformer
so the crossfade controller can apply linear gain. Spotify and Deezer links
carry no audio of their own; they are looked up for "artist - title" and
played from the first YouTube search hit.
"""
from __future__ import annotations

import asyncio
import logging
import re

import aiohttp
import discord
import spotipy
import yt_dlp

from .config import ResolverConfig
from .errors import ResolutionError
from .models import UNKNOWN_ARTIST, ResolvedAudio, SearchResult, TrackMetadata
from .spotify_resolver import SpotifyResolver
from .url_parser import Platform, classify, normalize

log = logging.getLogger(__name__)

FFMPEG_OPTIONS = {
    "before_options": (
        "-reconnect 1 -reconnect_streamed 1 -reconnect_on_network_error 1"
        " -reconnect_on_http_error 5xx -reconnect_delay_max 5"
    ),
    "options": "-vn -ar 48000 -bufsize 64k",
}

DEEZER_API = "https://api.deezer.com"

_DEEZER_TRACK_RE = re.compile(r"/track/(\d+)")


def _artist_of(data: dict) -> str:
    return (
        data.get("artist")
        or data.get("uploader")
        or data.get("channel")
        or UNKNOWN_ARTIST
    )


def _metadata(data: dict, fallback_url: str = "") -> TrackMetadata:
    return TrackMetadata(
        url=data.get("webpage_url") or data.get("original_url") or fallback_url,
        title=data.get("title") or "Unknown",
        artist=_artist_of(data),
        duration_seconds=int(data.get("duration") or 0) or None,
        thumbnail_url=data.get("thumbnail") or None,
    )


class YTDLResolver:
    """Media resolver for YouTube and SoundCloud, with Spotify/Deezer lookups."""

    def __init__(
        self,
        config: ResolverConfig | None = None,
        *,
        spotify: SpotifyResolver | None = None,
        volume: float = 1.0,
    ) -> None:
        self.config = config or ResolverConfig()
        self.spotify = spotify
        self.volume = volume

    async def _extract(self, query: str, **overrides) -> dict:
        opts = {**self.config.ytdl_options(), **overrides}
        loop = asyncio.get_running_loop()

        def run() -> dict:
            with yt_dlp.YoutubeDL(opts) as ytdl:
                return ytdl.extract_info(query, download=False)

        try:
            data = await loop.run_in_executor(None, run)
        except yt_dlp.utils.YoutubeDLError as exc:
            raise ResolutionError(query, f"Could not load {query}: {exc}") from exc
        if not data:
            raise ResolutionError(query, f"No media found for {query}")
        return data

    # ── link translation ─────────────────────────────────────────────────

    async def _deezer_track(self, value: str) -> tuple[str, str]:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as http:
                track_id = value
                if not value.isdigit():
                    async with http.get(value) as resp:
                        m = _DEEZER_TRACK_RE.search(str(resp.url))
                        if not m:
                            raise ResolutionError(value, "Could not follow Deezer link")
                        track_id = m.group(1)
                async with http.get(f"{DEEZER_API}/track/{track_id}") as resp:
                    resp.raise_for_status()
                    data = await resp.json()
        except aiohttp.ClientError as exc:
            raise ResolutionError(value, f"Deezer lookup failed: {exc}") from exc
        if "error" in data:
            raise ResolutionError(value, f"Deezer track not found: {value}")
        return data.get("artist", {}).get("name", UNKNOWN_ARTIST), data["title"]

    async def _playable_query(self, url: str) -> tuple[str, tuple[str, str] | None]:
        """Return (yt-dlp query, (artist, title) override) for a url."""
        platform, value = classify(url)
        if platform in (Platform.YOUTUBE, Platform.YOUTUBE_PLAYLIST, Platform.SOUNDCLOUD):
            return value, None
        if platform is Platform.SPOTIFY_TRACK:
            if self.spotify is None or not self.spotify.available:
                raise ResolutionError(url, "Spotify links need Spotify credentials")
            loop = asyncio.get_running_loop()
            try:
                info = await loop.run_in_executor(None, self.spotify.resolve_track, value)
            except (spotipy.SpotifyException, OSError) as exc:
                raise ResolutionError(url, f"Spotify lookup failed: {exc}") from exc
            if info is None:
                raise ResolutionError(url, "Spotify track not found")
            return f"{self.config.search_prefix}1:{info[0]} - {info[1]}", info
        if platform is Platform.DEEZER:
            info = await self._deezer_track(value)
            return f"{self.config.search_prefix}1:{info[0]} - {info[1]}", info
        raise ResolutionError(
            url, "Unsupported URL. Please use YouTube, SoundCloud, Spotify, or Deezer URLs."
        )

    # ── resolver contract ────────────────────────────────────────────────

    async def describe(self, url: str) -> TrackMetadata:
        """Fetch metadata for a url without opening a stream."""
        url = normalize(url)
        query, override = await self._playable_query(url)
        data = await self._extract(query, noplaylist=True)
        if "entries" in data:
            entries = [e for e in data["entries"] or [] if e]
            if not entries:
                raise ResolutionError(url, "Playlist is empty or could not be loaded.")
            data = entries[0]
        meta = _metadata(data, url)
        if override is not None:
            meta.artist, meta.title = override
        return meta

    async def resolve(self, url: str) -> ResolvedAudio:
        url = normalize(url)
        query, override = await self._playable_query(url)
        data = await self._extract(query)
        if "entries" in data:
            entries = [e for e in data["entries"] or [] if e]
            if not entries:
                raise ResolutionError(url, f"No playable media for {url}")
            data = entries[0]
        stream_url = data.get("url")
        if not stream_url:
            raise ResolutionError(url, f"No audio stream for {url}")

        meta = _metadata(data, url)
        if override is not None:
            meta.artist, meta.title = override
        try:
            pcm = discord.FFmpegPCMAudio(stream_url, **FFMPEG_OPTIONS)
        except discord.ClientException as exc:
            raise ResolutionError(url, f"ffmpeg failed to start: {exc}") from exc
        return ResolvedAudio(
            url=meta.url,
            title=meta.title,
            artist=meta.artist,
            duration_seconds=meta.duration_seconds,
            thumbnail_url=meta.thumbnail_url,
            source=discord.PCMVolumeTransformer(pcm, volume=self.volume),
        )

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """Search YouTube and return lightweight results."""
        data = await self._extract(
            f"{self.config.search_prefix}{limit * 2}:{query}",
            extract_flat="in_playlist",
        )
        results: list[SearchResult] = []
        for entry in data.get("entries", []) or []:
            if entry is None:
                continue
            url = entry.get("webpage_url") or entry.get("url", "")
            if "watch?v=" not in url and "youtu.be/" not in url:
                continue
            results.append(SearchResult(
                url=url,
                title=entry.get("title", "Unknown"),
                artist=entry.get("channel") or entry.get("uploader") or UNKNOWN_ARTIST,
            ))
            if len(results) >= limit:
                break
        return results

    async def expand_playlist(self, url: str) -> list[TrackMetadata]:
        """List every entry of a YouTube playlist."""
        url = normalize(url)
        if "list=" not in url:
            raise ResolutionError(
                url, 'Invalid playlist URL. Make sure it contains "list=" parameter.'
            )
        data = await self._extract(url, noplaylist=False, extract_flat="in_playlist")
        tracks = []
        for entry in data.get("entries", []) or []:
            if not entry:
                continue
            entry_url = entry.get("url") or ""
            if entry_url and not entry_url.startswith("http"):
                entry_url = f"https://www.youtube.com/watch?v={entry_url}"
            if not entry_url:
                continue
            tracks.append(TrackMetadata(
                url=entry_url,
                title=entry.get("title") or "Unknown",
                artist=entry.get("channel") or entry.get("uploader") or UNKNOWN_ARTIST,
                duration_seconds=int(entry.get("duration") or 0) or None,
            ))
        if not tracks:
            raise ResolutionError(url, "Playlist is empty or could not be loaded.")
        return tracks
