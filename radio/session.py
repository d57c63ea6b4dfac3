"""Per-guild playback session.

A ``PlaybackSession`` is the single owner of one voice output. Every
transition that changes what is on the air goes through ``advance()``, which
runs under a per-session lock. Each advance takes a new generation number;
anything that finishes under an older generation (a late resolve, the
after-callback of a stopped stream, a retry waking from backoff) is
discarded.
"""
from __future__ import annotations

import asyncio
import logging
import random as _random
from collections import deque
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, Protocol

from . import metrics
from .config import PlaybackConfig
from .crossfade import CrossfadeController
from .errors import ConnectionFailure, EmptyPoolError, EmptyPoolReason, MalformedTrackError
from .events import EventBus, EventKind, NoticeKind, SessionEvent
from .models import UNKNOWN_ARTIST, Listener, PlaybackState, ResolvedAudio, SearchResult, Track
from .recovery import FailureRecovery
from .selector import RadioHistory, TrackSelector

log = logging.getLogger(__name__)

QUEUE_EMPTY_MESSAGE = (
    "Queue is empty! Add more songs with `/play` or enable radio mode with `/radio on`"
)

_EMPTY_POOL_NOTICES = {
    EmptyPoolReason.NO_LISTENERS: NoticeKind.NO_LISTENERS,
    EmptyPoolReason.EMPTY_LIBRARY: NoticeKind.EMPTY_LIBRARY,
    EmptyPoolReason.ALL_FAILED: NoticeKind.ALL_FAILED,
}


class AudioOutput(Protocol):
    def play(self, source: Any, after: Callable[[Exception | None], None]) -> None: ...
    def stop(self) -> None: ...
    def pause(self) -> None: ...
    def resume(self) -> None: ...
    def is_playing(self) -> bool: ...
    def is_paused(self) -> bool: ...
    def set_volume(self, gain: float) -> None: ...
    async def disconnect(self) -> None: ...


class MediaResolver(Protocol):
    async def resolve(self, url: str) -> ResolvedAudio: ...
    async def search(self, query: str, limit: int = 10) -> list[SearchResult]: ...


def _cleanup_source(source: Any) -> None:
    cleanup = getattr(source, "cleanup", None)
    if cleanup is not None:
        cleanup()


class PlaybackSession:
    def __init__(
        self,
        guild_id: int,
        *,
        resolver: MediaResolver,
        store,
        listeners: Callable[[], Iterable[Listener]] = lambda: (),
        config: PlaybackConfig | None = None,
        selector: TrackSelector | None = None,
        random: Callable[[], float] = _random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.guild_id = guild_id
        self.config = config or PlaybackConfig()
        self.resolver = resolver
        self.store = store
        self._listeners = listeners
        self.selector = selector or TrackSelector(
            store, resolver, config=self.config, random=random
        )
        self.crossfade = CrossfadeController(
            self.config.crossfade_ms, steps=self.config.fade_steps, sleep=sleep
        )
        self.recovery = FailureRecovery(
            max_retries=self.config.max_retries,
            backoff_base_ms=self.config.backoff_base_ms,
            backoff_cap_ms=self.config.backoff_cap_ms,
            timeout=self.config.resolve_timeout,
            sleep=sleep,
        )
        self.events = EventBus()
        self.output: AudioOutput | None = None

        self.queue: deque[Track] = deque()
        self.current: Track | None = None
        self.state: PlaybackState = PlaybackState.IDLE
        self.radio_mode: bool = False
        self.discovery_mode: bool = False
        self.history = RadioHistory()

        self._lock = asyncio.Lock()
        self._generation = 0
        self._pending: set[asyncio.Task] = set()

    # ── observable state ─────────────────────────────────────────────────

    @property
    def recent_history(self) -> list[str]:
        return self.history.songs

    @property
    def recent_artists(self) -> list[str]:
        return self.history.artists

    @property
    def failed_urls(self) -> set[str]:
        return self.recovery.failed_urls

    @property
    def retry_count(self) -> int:
        return self.recovery.retry_count

    @property
    def crossfade_ms(self) -> int:
        return self.crossfade.duration_ms

    @property
    def connected(self) -> bool:
        return self.output is not None

    @property
    def busy(self) -> bool:
        """True while a transition is in flight."""
        return self._lock.locked()

    def active_listeners(self) -> set[str]:
        """Fresh snapshot of listener ids from the host."""
        return {str(listener.id) for listener in self._listeners()}

    def snapshot(self) -> dict:
        return {
            "guild_id": self.guild_id,
            "state": self.state.name.lower(),
            "current": self.current.as_dict() if self.current else None,
            "queue": [t.as_dict() for t in self.queue],
            "radio_mode": self.radio_mode,
            "discovery_mode": self.discovery_mode,
            "recent_history": len(self.history.songs),
            "recent_artists": len(self.history.artists),
            "failed_urls": len(self.recovery.failed_urls),
            "retry_count": self.recovery.retry_count,
            "crossfade_ms": self.crossfade.duration_ms,
            "connected": self.connected,
        }

    async def _emit(
        self,
        kind: EventKind,
        track: Track | None = None,
        message: str = "",
        *,
        notice: NoticeKind | None = None,
        permanent: bool = False,
    ) -> None:
        await self.events.emit(SessionEvent(kind, track, message, notice, permanent))

    def _update_queue_metric(self) -> None:
        metrics.queue_size.labels(guild_id=str(self.guild_id)).set(len(self.queue))

    # ── connection ───────────────────────────────────────────────────────

    def attach(self, output: AudioOutput) -> None:
        if self.output is None:
            metrics.active_sessions.inc()
        self.output = output

    async def connect(self, opener: Callable[[], Awaitable[AudioOutput]]) -> None:
        """Open the audio output via ``opener``. Raises ConnectionFailure."""
        if self.output is not None:
            return
        try:
            output = await opener()
        except ConnectionFailure as exc:
            log.error("Guild %s: voice connection failed: %s", self.guild_id, exc)
            await self._emit(EventKind.ERROR, message=str(exc), permanent=True)
            raise
        self.attach(output)
        log.info("Guild %s: voice output attached", self.guild_id)

    # ── queue ────────────────────────────────────────────────────────────

    def enqueue(self, track: Track, priority: bool = False) -> int:
        """Queue a track and return its 1-indexed position."""
        if priority:
            self.queue.appendleft(track)
            position = 1
        else:
            self.queue.append(track)
            position = len(self.queue)
        self._update_queue_metric()
        return position

    def clear(self) -> int:
        removed = len(self.queue)
        self.queue.clear()
        self._update_queue_metric()
        return removed

    # ── transport controls ───────────────────────────────────────────────

    async def start(self) -> bool:
        if self.state is not PlaybackState.IDLE or self.busy:
            return False
        if not self.queue and not self.radio_mode:
            return False
        await self.advance()
        return True

    def pause(self) -> bool:
        if self.state is not PlaybackState.PLAYING or self.output is None:
            return False
        self.output.pause()
        self.state = PlaybackState.PAUSED
        return True

    def resume(self) -> bool:
        if self.state is not PlaybackState.PAUSED or self.output is None:
            return False
        self.output.resume()
        self.state = PlaybackState.PLAYING
        return True

    async def skip(self) -> bool:
        """Move past the current track through the regular advance path."""
        if self.busy:
            # A transition is already under way; just cut its fade short.
            self.crossfade.cancel()
            return False
        if self.current is None:
            return False
        await self._emit(EventKind.SKIPPED, self.current)
        await self.advance()
        return True

    async def set_radio_mode(self, enabled: bool) -> None:
        self.radio_mode = enabled
        log.info("Guild %s: radio mode %s", self.guild_id, "on" if enabled else "off")
        if enabled and self.state is PlaybackState.IDLE and self.connected and not self.busy:
            await self.advance()

    def set_discovery_mode(self, enabled: bool) -> None:
        self.discovery_mode = enabled
        log.info("Guild %s: discovery mode %s", self.guild_id, "on" if enabled else "off")

    def set_crossfade(self, duration_ms: int) -> None:
        self.crossfade.set_duration(duration_ms)

    async def disconnect(self) -> None:
        """Stop playback, release the output and reset the session."""
        self._generation += 1
        self.crossfade.cancel()
        output, self.output = self.output, None
        if output is not None:
            output.stop()
            await output.disconnect()
            metrics.active_sessions.dec()
        for task in self._pending:
            task.cancel()
        self._pending.clear()
        self.queue.clear()
        self._update_queue_metric()
        self.current = None
        self.state = PlaybackState.IDLE
        self.radio_mode = False
        self.discovery_mode = False
        self.history.clear()
        self.recovery.reset()
        self.crossfade.reset()
        self.crossfade.set_duration(self.config.crossfade_ms)
        log.info("Guild %s: session disconnected", self.guild_id)

    # ── the transition ───────────────────────────────────────────────────

    async def advance(self) -> Track | None:
        """Move to whatever should play next and return it (None when idle)."""
        if self.output is None:
            raise ConnectionFailure("Not connected to a voice channel")
        self._generation += 1
        generation = self._generation
        async with self._lock:
            if generation != self._generation:
                return None
            return await self._advance(generation)

    def _go_idle(self) -> None:
        self.current = None
        self.state = PlaybackState.IDLE

    def _stop_output(self) -> None:
        if self.output is not None and (self.output.is_playing() or self.output.is_paused()):
            self.output.stop()

    async def _advance(self, generation: int) -> Track | None:
        if self.state is PlaybackState.PLAYING and self.current is not None:
            ended = self.current
            await self.crossfade.fade_out(self.output)
            if generation != self._generation:
                return None
            await self._emit(EventKind.TRACK_ENDED, ended)
        self._stop_output()
        self.state = PlaybackState.IDLE

        def still_current() -> bool:
            return generation == self._generation and self.output is not None

        failures = 0
        while True:
            track = await self._next_track(generation)
            if not still_current():
                return None
            if track is None:
                # a request can land while the idle notice is out
                if self.queue:
                    continue
                return None
            result = await self.recovery.run(
                track,
                lambda t: self._attach_stream(t, generation),
                still_current=still_current,
            )
            if result.superseded or not still_current():
                return None
            if result.ok:
                return await self._on_started(result.value)

            failures += 1
            self.current = None
            await self._emit(
                EventKind.ERROR,
                track,
                f"Failed to play: {track.title}. Skipping...",
                permanent=True,
            )
            if failures >= self.config.max_consecutive_failures:
                self._go_idle()
                log.error("Guild %s: %d consecutive failures, stopping", self.guild_id, failures)
                await self._emit(
                    EventKind.ERROR,
                    message="Too many consecutive playback failures. Stopping.",
                    permanent=True,
                )
                return None

    async def _next_track(self, generation: int) -> Track | None:
        if self.queue:
            track = self.queue.popleft()
            self._update_queue_metric()
            log.info(
                "Guild %s: playing next from queue, %d remaining", self.guild_id, len(self.queue)
            )
            return track

        if not self.radio_mode:
            self._go_idle()
            await self._emit(EventKind.QUEUE_EMPTY, message=QUEUE_EMPTY_MESSAGE)
            return None

        try:
            selection = await self.selector.select(
                self.active_listeners(),
                self.history,
                discovery=self.discovery_mode,
                exclude=self.recovery.failed_urls,
            )
        except EmptyPoolError as exc:
            self._go_idle()
            message = str(exc)
            if exc.reason is EmptyPoolReason.EMPTY_LIBRARY:
                self.radio_mode = False
                message += " Radio mode turned off."
            log.warning("Guild %s: radio pool empty (%s)", self.guild_id, exc.reason.name)
            await self._emit(
                EventKind.NOTICE, message=message, notice=_EMPTY_POOL_NOTICES[exc.reason]
            )
            return None

        if generation != self._generation:
            return None
        if selection.fell_back:
            await self._emit(
                EventKind.NOTICE,
                selection.track,
                "Discovery mode came up empty, playing regular radio...",
                notice=NoticeKind.DISCOVERY_FALLBACK,
            )
        elif selection.policy == "discovery" and selection.seed is not None:
            await self._emit(
                EventKind.NOTICE,
                selection.track,
                f"Found something new based on **{selection.seed.title}**: "
                f"**{selection.track.title}**",
                notice=NoticeKind.DISCOVERY_FOUND,
            )
        return selection.track

    async def _attach_stream(self, track: Track, generation: int) -> Track | None:
        with metrics.resolve_seconds.time():
            resolved = await self.resolver.resolve(track.url)
        if generation != self._generation or self.output is None:
            log.debug("Discarding stale resolution for %s", track.url)
            _cleanup_source(resolved.source)
            return None
        if resolved.source is None:
            raise MalformedTrackError(f"Resolver returned no stream for {track.url}")

        track = replace(
            track,
            artist=track.artist if track.artist != UNKNOWN_ARTIST else (resolved.artist or UNKNOWN_ARTIST),
            duration_seconds=track.duration_seconds or resolved.duration_seconds,
            thumbnail_url=track.thumbnail_url or resolved.thumbnail_url,
        )
        self._stop_output()
        self.output.play(resolved.source, after=self._after_callback(generation))
        self.current = track
        self.state = PlaybackState.PLAYING
        return track

    async def _on_started(self, track: Track | None) -> Track | None:
        if track is None:
            return None
        self.crossfade.fade_in(self.output)
        for user_id in self.active_listeners():
            self.store.record_listen(user_id, track.url, track.title)
        metrics.tracks_played_total.inc()
        log.info(
            "Guild %s: now playing %r (%s)",
            self.guild_id, track.title, track.requested_by.display_name,
        )
        await self._emit(EventKind.TRACK_STARTED, track)
        return track

    # ── natural end of stream ────────────────────────────────────────────

    def _after_callback(self, generation: int) -> Callable[[Exception | None], None]:
        def after(error: Exception | None) -> None:
            task = asyncio.ensure_future(self._on_stream_end(generation, error))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return after

    async def _on_stream_end(self, generation: int, error: Exception | None) -> None:
        if generation != self._generation or self.output is None:
            return
        ended = self.current
        self.state = PlaybackState.IDLE
        self.crossfade.cancel()
        if error is not None:
            log.error("Guild %s: playback error: %s", self.guild_id, error)
            metrics.playback_errors_total.inc()
            await self._emit(EventKind.ERROR, ended, f"Error playing song: {error}")
        if ended is not None:
            await self._emit(EventKind.TRACK_ENDED, ended)
        try:
            await self.advance()
        except ConnectionFailure as exc:
            log.warning("Guild %s: cannot advance: %s", self.guild_id, exc)
