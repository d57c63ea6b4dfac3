"""Bounded retry with exponential backoff around single-track playback attempts."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from . import metrics
from .errors import MalformedTrackError, RadioError, ResolutionError
from .models import Track

log = logging.getLogger(__name__)

Attempt = Callable[[Track], Awaitable[Any]]


@dataclass
class RecoveryResult:
    value: Any = None
    error: RadioError | None = None
    attempts: int = 0
    superseded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.superseded


class FailureRecovery:
    """Retries a failing track up to ``max_retries`` times, then blacklists it.

    ``retry_count`` is per track and resets on success or abandonment;
    ``failed_urls`` lives as long as the session.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 5000,
        timeout: float | None = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.timeout = timeout
        self._sleep = sleep
        self.retry_count = 0
        self.failed_urls: set[str] = set()

    def backoff_ms(self, retry_count: int) -> int:
        return min(self.backoff_base_ms * 2 ** (retry_count - 1), self.backoff_cap_ms)

    def is_blacklisted(self, url: str) -> bool:
        return url in self.failed_urls

    def reset(self) -> None:
        self.retry_count = 0
        self.failed_urls.clear()

    async def _attempt(self, attempt: Attempt, track: Track) -> Any:
        if self.timeout is None:
            return await attempt(track)
        try:
            return await asyncio.wait_for(attempt(track), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ResolutionError(
                track.url, f"No audio received within {self.timeout:g}s"
            ) from None

    def _abandon(self, track: Track, error: RadioError, attempts: int) -> RecoveryResult:
        if track.url:
            self.failed_urls.add(track.url)
        self.retry_count = 0
        metrics.tracks_blacklisted_total.inc()
        log.error("Giving up on %r after %d attempt(s): %s", track.title, attempts, error)
        return RecoveryResult(error=error, attempts=attempts)

    async def run(
        self,
        track: Track,
        attempt: Attempt,
        *,
        still_current: Callable[[], bool] = lambda: True,
    ) -> RecoveryResult:
        self.retry_count = 0
        try:
            track.validate()
        except MalformedTrackError as exc:
            metrics.playback_errors_total.inc()
            return self._abandon(track, exc, 0)
        if self.is_blacklisted(track.url):
            log.info("Skipping blacklisted track %s", track.url)
            return RecoveryResult(
                error=ResolutionError(track.url, "Track failed earlier this session"),
            )

        attempts = 0
        while True:
            attempts += 1
            try:
                value = await self._attempt(attempt, track)
            except MalformedTrackError as exc:
                metrics.playback_errors_total.inc()
                return self._abandon(track, exc, attempts)
            except ResolutionError as exc:
                metrics.playback_errors_total.inc()
                if self.retry_count >= self.max_retries:
                    return self._abandon(track, exc, attempts)
                self.retry_count += 1
                delay = self.backoff_ms(self.retry_count)
                metrics.playback_retries_total.inc()
                log.warning(
                    "Failed to play %r (%s), retry %d/%d in %dms",
                    track.title, exc.message, self.retry_count, self.max_retries, delay,
                )
                await self._sleep(delay / 1000)
                if not still_current():
                    self.retry_count = 0
                    return RecoveryResult(attempts=attempts, superseded=True)
                continue
            self.retry_count = 0
            return RecoveryResult(value=value, attempts=attempts)
