"""Events a PlaybackSession emits to its host."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Awaitable, Callable, Union

from .models import Track

log = logging.getLogger(__name__)


class EventKind(Enum):
    TRACK_STARTED = auto()
    TRACK_ENDED = auto()
    QUEUE_EMPTY = auto()
    SKIPPED = auto()
    ERROR = auto()
    NOTICE = auto()


class NoticeKind(Enum):
    NO_LISTENERS = auto()
    EMPTY_LIBRARY = auto()
    ALL_FAILED = auto()
    DISCOVERY_FOUND = auto()
    DISCOVERY_FALLBACK = auto()


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    track: Track | None = None
    message: str = ""
    notice: NoticeKind | None = None
    permanent: bool = False


EventHandler = Callable[[SessionEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Fans session events out to subscribed handlers (sync or async)."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: SessionEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Event handler failed for %s", event.kind.name)
