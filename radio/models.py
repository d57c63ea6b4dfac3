from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from .errors import MalformedTrackError

UNKNOWN_ARTIST = "Unknown"


class OriginKind(Enum):
    USER = auto()
    RADIO = auto()
    DISCOVERY = auto()


@dataclass(frozen=True)
class Origin:
    """Who put a track on the air: a listener, the radio rotation, or discovery."""

    kind: OriginKind
    user_id: str = ""
    user_name: str = ""

    @classmethod
    def user(cls, user_id: int | str, user_name: str) -> Origin:
        return cls(OriginKind.USER, str(user_id), user_name)

    @classmethod
    def radio(cls) -> Origin:
        return cls(OriginKind.RADIO)

    @classmethod
    def discovery(cls) -> Origin:
        return cls(OriginKind.DISCOVERY)

    @property
    def is_automatic(self) -> bool:
        return self.kind is not OriginKind.USER

    @property
    def display_name(self) -> str:
        if self.kind is OriginKind.RADIO:
            return "Radio Station"
        if self.kind is OriginKind.DISCOVERY:
            return "Discovery Mode"
        return self.user_name or self.user_id


class PlaybackState(Enum):
    IDLE = auto()
    PLAYING = auto()
    PAUSED = auto()


@dataclass(frozen=True)
class Track:
    """An immutable playable reference; resolved to a stream just-in-time."""

    url: str
    title: str
    requested_by: Origin
    artist: str = UNKNOWN_ARTIST
    duration_seconds: int | None = None
    thumbnail_url: str | None = None

    def validate(self) -> None:
        if not self.url or not self.url.strip() or self.url == "undefined":
            raise MalformedTrackError(f"Track {self.title!r} has no url")
        if not self.title:
            raise MalformedTrackError(f"Track {self.url!r} has no title")

    def as_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "artist": self.artist,
            "duration": self.duration_seconds,
            "thumbnail": self.thumbnail_url,
            "requested_by": self.requested_by.display_name,
            "origin": self.requested_by.kind.name.lower(),
        }


@dataclass(frozen=True)
class SelectionCandidate:
    """A track's popularity among the current listener set."""

    url: str
    title: str
    artist: str = UNKNOWN_ARTIST
    total_requests: int = 1
    user_count: int = 1
    last_requested_at: float = 0.0

    def to_track(self, origin: Origin) -> Track:
        return Track(
            url=self.url,
            title=self.title,
            artist=self.artist or UNKNOWN_ARTIST,
            requested_by=origin,
        )


@dataclass(frozen=True)
class Listener:
    id: str
    name: str = ""


@dataclass
class TrackMetadata:
    """Metadata for a url without an attached stream."""

    url: str
    title: str
    artist: str = UNKNOWN_ARTIST
    duration_seconds: int | None = None
    thumbnail_url: str | None = None

    def to_track(self, origin: Origin) -> Track:
        return Track(
            url=self.url,
            title=self.title,
            artist=self.artist or UNKNOWN_ARTIST,
            duration_seconds=self.duration_seconds,
            thumbnail_url=self.thumbnail_url,
            requested_by=origin,
        )


@dataclass
class ResolvedAudio(TrackMetadata):
    """A resolved stream plus the metadata reported by the resolver."""

    source: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class SearchResult:
    url: str
    title: str
    artist: str = UNKNOWN_ARTIST
