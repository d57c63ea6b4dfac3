"""Song statistics: who requested what, and what each listener heard.

``SongStatsStore`` is the contract the engine consumes; ``JsonSongStats`` is
the file-backed implementation the bot ships with.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, Protocol

from . import metrics
from .models import UNKNOWN_ARTIST, SelectionCandidate
from .storage import atomic_write, load_json

log = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300.0
MAX_LISTENS = 5000


class SongStatsStore(Protocol):
    def record_request(
        self, user_id: str, user_name: str, url: str, title: str, artist: str | None = None
    ) -> None: ...

    def query_for_users(
        self, user_ids: Iterable[str], limit: int = 100
    ) -> list[SelectionCandidate]: ...

    def record_listen(self, user_id: str, url: str, title: str) -> None: ...


class JsonSongStats:
    """Per-user request counts and listening log persisted as JSON."""

    def __init__(
        self,
        path: str | Path = "/data/radio_stats.json",
        *,
        clock: Callable[[], float] = time.time,
        cache_ttl: float = CACHE_TTL_SECONDS,
    ) -> None:
        self._path = Path(path)
        self._clock = clock
        self._cache_ttl = cache_ttl
        self._cache: dict[tuple[tuple[str, ...], int], tuple[float, list[SelectionCandidate]]] = {}
        data = load_json(self._path, {})
        if not isinstance(data, dict):
            log.warning("Ignoring malformed stats file %s", self._path)
            data = {}
        self._songs: dict[str, dict[str, dict]] = data.get("user_songs", {})
        self._listens: list[dict] = data.get("listens", [])
        self._ratings: dict[str, dict[str, dict]] = data.get("ratings", {})

    def _save(self) -> None:
        atomic_write(self._path, {
            "user_songs": self._songs,
            "listens": self._listens,
            "ratings": self._ratings,
        })

    # ── requests ─────────────────────────────────────────────────────────

    def record_request(
        self, user_id: str, user_name: str, url: str, title: str, artist: str | None = None
    ) -> None:
        songs = self._songs.setdefault(str(user_id), {})
        entry = songs.get(url)
        now = self._clock()
        if entry is None:
            songs[url] = {
                "user_name": user_name,
                "title": title,
                "artist": artist,
                "count": 1,
                "last": now,
            }
        else:
            entry["count"] += 1
            entry["last"] = now
            entry["user_name"] = user_name
        self._cache.clear()
        self._save()

    def query_for_users(
        self, user_ids: Iterable[str], limit: int = 100
    ) -> list[SelectionCandidate]:
        """Aggregate the libraries of ``user_ids``, most shared first."""
        ids = tuple(sorted({str(u) for u in user_ids}))
        if not ids:
            return []
        key = (ids, limit)
        cached = self._cache.get(key)
        if cached and self._clock() - cached[0] < self._cache_ttl:
            metrics.stats_cache_hits_total.inc()
            return list(cached[1])
        metrics.stats_cache_misses_total.inc()

        totals: dict[str, dict] = {}
        for uid in ids:
            for url, entry in self._songs.get(uid, {}).items():
                agg = totals.get(url)
                if agg is None:
                    totals[url] = {
                        "title": entry["title"],
                        "artist": entry.get("artist"),
                        "total": entry["count"],
                        "users": 1,
                        "last": entry["last"],
                    }
                    continue
                agg["total"] += entry["count"]
                agg["users"] += 1
                agg["last"] = max(agg["last"], entry["last"])
                if not agg["artist"] and entry.get("artist"):
                    agg["artist"] = entry["artist"]

        ranked = sorted(
            totals.items(),
            key=lambda kv: (kv[1]["users"], kv[1]["total"], kv[1]["last"]),
            reverse=True,
        )[:limit]
        result = [
            SelectionCandidate(
                url=url,
                title=agg["title"],
                artist=agg["artist"] or UNKNOWN_ARTIST,
                total_requests=agg["total"],
                user_count=agg["users"],
                last_requested_at=agg["last"],
            )
            for url, agg in ranked
        ]
        self._cache[key] = (self._clock(), result)
        return list(result)

    # ── listening history ────────────────────────────────────────────────

    def record_listen(self, user_id: str, url: str, title: str) -> None:
        self._listens.append({
            "user": str(user_id), "url": url, "title": title, "ts": self._clock(),
        })
        if len(self._listens) > MAX_LISTENS:
            self._listens = self._listens[-MAX_LISTENS:]
        self._save()

    def user_history(self, user_id: str, limit: int = 50) -> list[dict]:
        """Most recent listens for a user, newest first."""
        uid = str(user_id)
        entries = [e for e in self._listens if e["user"] == uid]
        return list(reversed(entries))[:limit]

    # ── ratings ──────────────────────────────────────────────────────────

    def rate(
        self, user_id: str, user_name: str, url: str, title: str, rating: int
    ) -> None:
        """Store a +1/-1 rating. A thumbs-up adds the track to the user's library."""
        if rating not in (1, -1):
            raise ValueError(f"rating must be 1 or -1, got {rating}")
        uid = str(user_id)
        self._ratings.setdefault(uid, {})[url] = {
            "title": title, "rating": rating, "ts": self._clock(),
        }
        if rating == 1 and url not in self._songs.get(uid, {}):
            known_name = next(
                (e["user_name"] for e in self._songs.get(uid, {}).values()), user_name
            )
            self._songs.setdefault(uid, {})[url] = {
                "user_name": known_name,
                "title": title,
                "artist": None,
                "count": 1,
                "last": self._clock(),
            }
            self._cache.clear()
        self._save()

    def rating(self, user_id: str, url: str) -> int | None:
        entry = self._ratings.get(str(user_id), {}).get(url)
        return entry["rating"] if entry else None

    def stats(self) -> dict:
        return {
            "unique_users": len(self._songs),
            "tracked_songs": sum(len(s) for s in self._songs.values()),
            "total_plays": len(self._listens),
        }
