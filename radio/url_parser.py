import re
from enum import Enum, auto


class Platform(Enum):
    YOUTUBE = auto()
    YOUTUBE_PLAYLIST = auto()
    SOUNDCLOUD = auto()
    SPOTIFY_TRACK = auto()
    DEEZER = auto()
    UNSUPPORTED = auto()


_YOUTUBE_RE = re.compile(
    r"(?:https?://)?(?:www\.|m\.|music\.)?(?:youtube\.com|youtu\.be)/?\S+"
)

_SOUNDCLOUD_RE = re.compile(
    r"(?:https?://)?(?:www\.|m\.|on\.)?soundcloud\.com/\S+"
)

_SPOTIFY_RE = re.compile(
    r"(?:https?://)?open\.spotify\.com/(?:intl-\w+/)?track/([A-Za-z0-9]+)"
)

_DEEZER_RE = re.compile(
    r"(?:https?://)?(?:www\.)?(?:deezer\.com/(?:\w{2}/)?track/(\d+)|deezer\.page\.link/\S+)"
)


def normalize(url: str) -> str:
    """Strip whitespace and rewrite YouTube Music links to plain YouTube."""
    url = url.strip()
    return url.replace("music.youtube.com", "www.youtube.com")


def classify(url: str) -> tuple[Platform, str]:
    """Return (Platform, cleaned_value) for a track url.

    For YouTube and SoundCloud the cleaned value is the normalized URL.
    For Spotify it's the track ID, for Deezer the track ID or short link.
    """
    url = normalize(url)

    m = _SPOTIFY_RE.search(url)
    if m:
        return Platform.SPOTIFY_TRACK, m.group(1)

    m = _DEEZER_RE.match(url)
    if m:
        return Platform.DEEZER, m.group(1) or url

    if _YOUTUBE_RE.match(url):
        if "list=" in url and "watch?v=" not in url and "youtu.be/" not in url:
            return Platform.YOUTUBE_PLAYLIST, url
        return Platform.YOUTUBE, url

    if _SOUNDCLOUD_RE.match(url):
        return Platform.SOUNDCLOUD, url

    return Platform.UNSUPPORTED, url


def is_playlist(url: str) -> bool:
    return "list=" in normalize(url)
