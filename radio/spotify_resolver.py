from __future__ import annotations

import logging

import spotipy
from spotipy.oauth2 import SpotifyClientCredentials

log = logging.getLogger(__name__)


class SpotifyResolver:
    """Resolves Spotify track ids to (artist, title) for a YouTube search."""

    def __init__(self, client_id: str | None = None, client_secret: str | None = None) -> None:
        if not client_id or not client_secret:
            log.warning("Spotify credentials not set, Spotify links will not work.")
            self._sp = None
            return

        auth = SpotifyClientCredentials(
            client_id=client_id, client_secret=client_secret
        )
        self._sp = spotipy.Spotify(auth_manager=auth)

    @property
    def available(self) -> bool:
        return self._sp is not None

    def resolve_track(self, track_id: str) -> tuple[str, str] | None:
        """Return (artist, title) for a Spotify track id, or None if unavailable."""
        if not self._sp:
            return None
        track = self._sp.track(track_id)
        artists = track.get("artists") or []
        artist = artists[0]["name"] if artists else "Unknown"
        return artist, track["name"]
