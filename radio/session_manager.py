from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from .config import validate_crossfade_ms
from .session import PlaybackSession
from .storage import atomic_write, load_json

log = logging.getLogger(__name__)

SessionFactory = Callable[[int], PlaybackSession]


class SessionManager:
    """Holds one PlaybackSession per guild plus persisted per-guild settings."""

    def __init__(
        self,
        factory: SessionFactory,
        settings_path: str | Path = "/data/settings.json",
    ) -> None:
        self._factory = factory
        self._sessions: dict[int, PlaybackSession] = {}
        self._settings_path = Path(settings_path)
        self._settings: dict[str, dict] = load_json(self._settings_path, {})

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[PlaybackSession]:
        return list(self._sessions.values())

    def find(self, guild_id: int) -> PlaybackSession | None:
        return self._sessions.get(guild_id)

    def get(self, guild_id: int) -> PlaybackSession:
        session = self._sessions.get(guild_id)
        if session is None:
            session = self._factory(guild_id)
            self._apply_settings(session)
            self._sessions[guild_id] = session
        return session

    def _apply_settings(self, session: PlaybackSession) -> None:
        saved = self._settings.get(str(session.guild_id))
        if not saved:
            return
        crossfade = saved.get("crossfade_ms")
        if crossfade is not None:
            try:
                session.set_crossfade(validate_crossfade_ms(int(crossfade)))
            except (TypeError, ValueError) as exc:
                log.warning("Ignoring saved crossfade for guild %s: %s", session.guild_id, exc)
        if saved.get("discovery_mode"):
            session.set_discovery_mode(True)

    def save_settings(self, session: PlaybackSession) -> None:
        self._settings[str(session.guild_id)] = {
            "crossfade_ms": session.crossfade_ms,
            "discovery_mode": session.discovery_mode,
        }
        atomic_write(self._settings_path, self._settings)

    async def remove(self, guild_id: int) -> None:
        """Disconnect and forget a guild's session."""
        session = self._sessions.pop(guild_id, None)
        if session is not None:
            await session.disconnect()

    async def shutdown(self) -> None:
        for guild_id in list(self._sessions):
            await self.remove(guild_id)
