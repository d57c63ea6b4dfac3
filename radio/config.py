"""Runtime configuration.

The engine only ever sees ``PlaybackConfig`` and ``ResolverConfig``; the host
builds them once from the environment via ``BotConfig.from_env``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

CROSSFADE_MIN_MS = 1000
CROSSFADE_MAX_MS = 10000


def validate_crossfade_ms(value: int) -> int:
    if not CROSSFADE_MIN_MS <= value <= CROSSFADE_MAX_MS:
        raise ValueError(
            f"crossfade must be between {CROSSFADE_MIN_MS} and {CROSSFADE_MAX_MS} ms, got {value}"
        )
    return value


@dataclass(frozen=True)
class PlaybackConfig:
    crossfade_ms: int = 3000
    fade_steps: int = 20
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 5000
    resolve_timeout: float = 15.0
    discovery_chance: float = 0.3
    radio_pool_limit: int = 100
    discovery_pool_limit: int = 50
    discovery_search_limit: int = 10
    max_consecutive_failures: int = 10

    def __post_init__(self) -> None:
        validate_crossfade_ms(self.crossfade_ms)
        if self.fade_steps < 1:
            raise ValueError("fade_steps must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")


@dataclass(frozen=True)
class ResolverConfig:
    """yt-dlp settings, injected once into the resolver."""

    cookie_file: str | None = None
    cookies_from_browser: str | None = None
    audio_format: str = "bestaudio[acodec=opus]/bestaudio/best"
    search_prefix: str = "ytsearch"

    def ytdl_options(self) -> dict:
        opts = {
            "format": self.audio_format,
            "noplaylist": True,
            "nocheckcertificate": True,
            "ignoreerrors": False,
            "quiet": True,
            "no_warnings": True,
            "default_search": self.search_prefix,
            "source_address": "0.0.0.0",
            "age_limit": 0,
        }
        if self.cookie_file and Path(self.cookie_file).is_file():
            opts["cookiefile"] = self.cookie_file
        elif self.cookies_from_browser:
            opts["cookiesfrombrowser"] = (self.cookies_from_browser,)
        return opts


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class BotConfig:
    token: str
    data_dir: Path = Path("/data")
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    spotify_client_id: str | None = None
    spotify_client_secret: str | None = None
    metrics_port: int = 9090
    web_port: int | None = None
    idle_disconnect_seconds: int = 300
    voice_connect_timeout: float = 20.0

    @classmethod
    def from_env(cls) -> BotConfig:
        token = os.getenv("DISCORD_TOKEN")
        if not token:
            raise SystemExit("DISCORD_TOKEN not set in .env")
        data_dir = Path(os.getenv("DATA_DIR", "/data"))
        web_port = os.getenv("WEB_PORT")
        return cls(
            token=token,
            data_dir=data_dir,
            playback=PlaybackConfig(crossfade_ms=_env_int("CROSSFADE_MS", 3000)),
            resolver=ResolverConfig(
                cookie_file=os.getenv("YTDL_COOKIE_FILE", str(data_dir / "cookies.txt")),
                cookies_from_browser=os.getenv("YTDL_COOKIES_BROWSER") or None,
            ),
            spotify_client_id=os.getenv("SPOTIFY_CLIENT_ID") or None,
            spotify_client_secret=os.getenv("SPOTIFY_CLIENT_SECRET") or None,
            metrics_port=_env_int("METRICS_PORT", 9090),
            web_port=_env_int("WEB_PORT", 0) if web_port else None,
            idle_disconnect_seconds=_env_int("IDLE_DISCONNECT_SECONDS", 300),
            voice_connect_timeout=float(_env_int("VOICE_CONNECT_TIMEOUT", 20)),
        )
