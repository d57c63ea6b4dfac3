"""In-memory stand-ins for the resolver, stats store and voice output."""
from __future__ import annotations

import asyncio

from radio.config import PlaybackConfig
from radio.errors import ResolutionError
from radio.models import Listener, Origin, ResolvedAudio, SearchResult, SelectionCandidate, Track
from radio.session import PlaybackSession


def track(url: str, title: str | None = None, artist: str = "Unknown") -> Track:
    return Track(url=url, title=title or url.upper(), artist=artist,
                 requested_by=Origin.user(1, "Ana"))


def candidate(url: str, artist: str = "Unknown", users: int = 1, total: int = 1) -> SelectionCandidate:
    return SelectionCandidate(url=url, title=url.upper(), artist=artist,
                              total_requests=total, user_count=users)


def scripted(*values: float):
    """Random source that replays ``values`` and then repeats the last one."""
    it = iter(values)
    last = [values[-1]]

    def rand() -> float:
        try:
            last[0] = next(it)
        except StopIteration:
            pass
        return last[0]

    return rand


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class FakeSource:
    def __init__(self, url: str) -> None:
        self.url = url
        self.cleaned = False

    def cleanup(self) -> None:
        self.cleaned = True


class FakeResolver:
    def __init__(self, failing=(), search_results=()) -> None:
        self.failing = set(failing)
        self.search_results = list(search_results)
        self.search_error: Exception | None = None
        self.resolve_calls: list[str] = []
        self.search_calls: list[tuple[str, int]] = []
        self.sources: list[FakeSource] = []

    async def resolve(self, url: str) -> ResolvedAudio:
        self.resolve_calls.append(url)
        if url in self.failing:
            raise ResolutionError(url, "Video unavailable")
        source = FakeSource(url)
        self.sources.append(source)
        return ResolvedAudio(url=url, title=url.upper(), artist="Resolved Artist",
                             duration_seconds=180, source=source)

    async def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        self.search_calls.append((query, limit))
        if self.search_error is not None:
            raise self.search_error
        return self.search_results[:limit]


class FakeStore:
    def __init__(self, library=()) -> None:
        self.library = list(library)
        self.query_calls: list[tuple[list[str], int]] = []
        self.listens: list[tuple[str, str]] = []
        self.requests: list[tuple[str, str]] = []

    def record_request(self, user_id, user_name, url, title, artist=None) -> None:
        self.requests.append((user_id, url))

    def query_for_users(self, user_ids, limit=100) -> list[SelectionCandidate]:
        self.query_calls.append((sorted(user_ids), limit))
        return self.library[:limit]

    def record_listen(self, user_id, url, title) -> None:
        self.listens.append((user_id, url))


class FakeOutput:
    """Mimics a voice client: ``stop()`` fires the after-callback on the next loop turn."""

    def __init__(self) -> None:
        self.playing = False
        self.paused = False
        self.played: list[FakeSource] = []
        self.afters: list = []
        self.volumes: list[float] = []
        self.stops = 0
        self.disconnected = False

    def play(self, source, after) -> None:
        self.played.append(source)
        self.afters.append(after)
        self.playing = True
        self.paused = False

    def stop(self) -> None:
        self.stops += 1
        was_active = self.playing or self.paused
        self.playing = self.paused = False
        if was_active and self.afters:
            asyncio.get_running_loop().call_soon(self.afters[-1], None)

    def finish(self, error: Exception | None = None) -> None:
        """Simulate the stream running out on its own."""
        self.playing = self.paused = False
        self.afters[-1](error)

    def pause(self) -> None:
        self.playing, self.paused = False, True

    def resume(self) -> None:
        self.playing, self.paused = True, False

    def is_playing(self) -> bool:
        return self.playing

    def is_paused(self) -> bool:
        return self.paused

    def set_volume(self, gain: float) -> None:
        self.volumes.append(gain)

    async def disconnect(self) -> None:
        self.disconnected = True


def make_session(
    *,
    library=(),
    resolver: FakeResolver | None = None,
    listeners=(Listener("1", "Ana"),),
    random=lambda: 0.0,
    connected: bool = True,
    **config,
) -> PlaybackSession:
    session = PlaybackSession(
        1,
        resolver=resolver or FakeResolver(),
        store=FakeStore(library),
        listeners=lambda: listeners,
        config=PlaybackConfig(**config),
        random=random,
        sleep=RecordingSleep(),
    )
    if connected:
        session.attach(FakeOutput())
    return session


async def drain_pending(session: PlaybackSession) -> None:
    """Wait for after-callback work the session scheduled."""
    while session._pending:
        await asyncio.gather(*list(session._pending))
