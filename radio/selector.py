"""Track selection for radio mode.

Two policies feed an empty queue:

* **radio** picks from the combined request history of everyone in the voice
  channel, weighting tracks by how many listeners asked for them and how
  often, while an adaptive history window keeps recent songs and artists
  out of rotation.
* **discovery** takes a random seed from that same library, runs a search
  built from it, and plays something nobody has requested yet. Any failure
  along the way falls back to the radio policy.

The selector keeps no state of its own between calls; the session owns the
``RadioHistory`` it mutates.
"""
from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
import math
import random as _random
from dataclasses import dataclass, field, replace
from typing import Callable, Collection, Sequence, TypeVar

from . import metrics
from .config import PlaybackConfig
from .errors import EmptyPoolError, EmptyPoolReason, ResolutionError
from .models import UNKNOWN_ARTIST, Origin, SelectionCandidate, Track

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_HISTORY = 50
MAX_ARTIST_HISTORY = 10
MAX_WEIGHT = 5

DISCOVERY_TEMPLATES = (
    "{artist} similar songs",
    "{artist} best songs",
    "songs like {title}",
)


def history_caps(pool_size: int) -> tuple[int, int]:
    """Return (song_cap, artist_cap) for a candidate pool of ``pool_size``."""
    return (
        min(math.floor(pool_size * 0.6), MAX_HISTORY),
        min(math.floor(pool_size * 0.15), MAX_ARTIST_HISTORY),
    )


def candidate_weight(candidate: SelectionCandidate) -> int:
    """Log-scaled popularity weight, clamped to 1..5."""
    user_weight = math.ceil(math.log2(candidate.user_count + 1))
    request_weight = math.ceil(math.log2(candidate.total_requests + 1))
    return max(1, min(user_weight + request_weight, MAX_WEIGHT))


@dataclass
class RadioHistory:
    """Recently aired urls and artists, oldest first."""

    songs: list[str] = field(default_factory=list)
    artists: list[str] = field(default_factory=list)

    def record(self, url: str, artist: str, song_cap: int, artist_cap: int) -> None:
        self.songs.append(url)
        while len(self.songs) > song_cap:
            self.songs.pop(0)
        if artist and artist != UNKNOWN_ARTIST:
            self.artists.append(artist)
            while len(self.artists) > artist_cap:
                self.artists.pop(0)

    def trim(self) -> None:
        """Keep only the newest 20% of songs (at least 3) and the last 2 artists."""
        keep = max(3, math.floor(len(self.songs) * 0.2))
        self.songs = self.songs[-keep:]
        self.artists = self.artists[-2:]

    def clear(self) -> None:
        self.songs.clear()
        self.artists.clear()


@dataclass(frozen=True)
class Selection:
    track: Track
    policy: str
    seed: SelectionCandidate | None = None
    history_reset: bool = False
    fell_back: bool = False
    fallback_reason: str = ""


class TrackSelector:
    def __init__(
        self,
        store,
        resolver=None,
        *,
        config: PlaybackConfig | None = None,
        random: Callable[[], float] = _random.random,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.config = config or PlaybackConfig()
        self._random = random

    # ── randomness helpers ───────────────────────────────────────────────

    def _choice(self, items: Sequence[T]) -> T:
        idx = int(self._random() * len(items))
        return items[min(idx, len(items) - 1)]

    def _weighted_choice(self, pool: Sequence[SelectionCandidate]) -> SelectionCandidate:
        cumulative = list(itertools.accumulate(candidate_weight(c) for c in pool))
        target = self._random() * cumulative[-1]
        idx = bisect.bisect_right(cumulative, target)
        return pool[min(idx, len(pool) - 1)]

    def wants_discovery(self, discovery_enabled: bool) -> bool:
        return discovery_enabled and self._random() < self.config.discovery_chance

    async def select(
        self,
        listener_ids: Collection[str],
        history: RadioHistory,
        *,
        discovery: bool = False,
        exclude: Collection[str] = (),
    ) -> Selection:
        if self.wants_discovery(discovery):
            return await self.pick_discovery(listener_ids, history, exclude=exclude)
        return self.pick_radio(listener_ids, history, exclude=exclude)

    # ── radio policy ─────────────────────────────────────────────────────

    def _library(
        self, listener_ids: Collection[str], limit: int, exclude: Collection[str]
    ) -> list[SelectionCandidate]:
        if not listener_ids:
            raise EmptyPoolError(
                EmptyPoolReason.NO_LISTENERS, "No users in voice channel."
            )
        library = self.store.query_for_users(list(listener_ids), limit)
        if not library:
            raise EmptyPoolError(
                EmptyPoolReason.EMPTY_LIBRARY,
                "No songs in the radio library yet. Request some songs first.",
            )
        if exclude:
            library = [c for c in library if c.url not in exclude]
            if not library:
                raise EmptyPoolError(
                    EmptyPoolReason.ALL_FAILED,
                    "Every song in the radio library failed to play.",
                )
        return library

    def pick_radio(
        self,
        listener_ids: Collection[str],
        history: RadioHistory,
        *,
        exclude: Collection[str] = (),
    ) -> Selection:
        pool = self._library(listener_ids, self.config.radio_pool_limit, exclude)
        pool_size = len(pool)
        song_cap, artist_cap = history_caps(pool_size)
        log.debug(
            "Radio pool: %d songs, history %d songs / %d artists",
            pool_size, len(history.songs), len(history.artists),
        )

        recent = set(history.songs)
        available = [c for c in pool if c.url not in recent]
        diverse = available

        if len(available) >= max(pool_size * 0.2, 10):
            recent_artists = set(history.artists)
            artist_filtered = [
                c for c in available
                if c.artist == UNKNOWN_ARTIST or c.artist not in recent_artists
            ]
            if len(artist_filtered) >= len(available) * 0.3:
                diverse = artist_filtered
            else:
                log.debug("Skipping artist filter (would leave %d)", len(artist_filtered))

        history_reset = False
        if not diverse:
            history_reset = True
            history.trim()
            log.debug(
                "Pool exhausted, trimmed history to %d songs / %d artists",
                len(history.songs), len(history.artists),
            )
            recent = set(history.songs)
            diverse = [c for c in pool if c.url not in recent]
            if not diverse:
                history.clear()
                diverse = pool

        uniform = history_reset or len(diverse) < pool_size * 0.5
        if uniform and self._random() < 0.5:
            chosen = self._choice(diverse)
            method = "uniform"
        else:
            chosen = self._weighted_choice(diverse)
            method = "weighted"

        history.record(chosen.url, chosen.artist, song_cap, artist_cap)
        metrics.radio_selections_total.labels(policy="radio").inc()
        log.info(
            "Radio selected %r by %s (%s, %d/%d eligible)",
            chosen.title, chosen.artist, method, len(diverse), pool_size,
        )
        return Selection(
            track=chosen.to_track(Origin.radio()),
            policy="radio",
            history_reset=history_reset,
        )

    # ── discovery policy ─────────────────────────────────────────────────

    def discovery_query(self, seed: SelectionCandidate) -> str:
        if not seed.artist or seed.artist == UNKNOWN_ARTIST:
            return DISCOVERY_TEMPLATES[2].format(title=seed.title)
        template = self._choice(DISCOVERY_TEMPLATES)
        return template.format(artist=seed.artist, title=seed.title)

    def _fallback(
        self,
        reason: str,
        listener_ids: Collection[str],
        history: RadioHistory,
        exclude: Collection[str],
    ) -> Selection:
        log.warning("Discovery falling back to radio: %s", reason)
        metrics.discovery_fallbacks_total.inc()
        selection = self.pick_radio(listener_ids, history, exclude=exclude)
        return replace(selection, fell_back=True, fallback_reason=reason)

    async def pick_discovery(
        self,
        listener_ids: Collection[str],
        history: RadioHistory,
        *,
        exclude: Collection[str] = (),
    ) -> Selection:
        if not listener_ids:
            return self._fallback("no listeners", listener_ids, history, exclude)
        library = self.store.query_for_users(
            list(listener_ids), self.config.discovery_pool_limit
        )
        if not library:
            return self._fallback("empty library", listener_ids, history, exclude)
        if self.resolver is None:
            return self._fallback("search unavailable", listener_ids, history, exclude)

        seed = self._choice(library)
        query = self.discovery_query(seed)
        log.info("Discovery seed %r, searching %r", seed.title, query)
        try:
            results = await asyncio.wait_for(
                self.resolver.search(query, self.config.discovery_search_limit),
                timeout=self.config.resolve_timeout,
            )
        except (ResolutionError, asyncio.TimeoutError) as exc:
            return self._fallback(f"search failed: {exc}", listener_ids, history, exclude)
        if not results:
            return self._fallback("no search results", listener_ids, history, exclude)

        known = {c.url for c in library}
        fresh = [r for r in results if r.url not in known and r.url not in exclude]
        if not fresh:
            return self._fallback("all results already known", listener_ids, history, exclude)

        found = self._choice(fresh)
        metrics.radio_selections_total.labels(policy="discovery").inc()
        return Selection(
            track=Track(
                url=found.url,
                title=found.title,
                artist=found.artist or UNKNOWN_ARTIST,
                requested_by=Origin.discovery(),
            ),
            policy="discovery",
            seed=seed,
        )
