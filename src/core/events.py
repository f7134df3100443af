"""Unified session events and the channel that delivers them.

Every detection strategy reports through the same two event types. The
``SessionChannel`` sits between the strategies and the application and is
the single place where the "one start, then one end" guarantee is enforced.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Union

import structlog

logger = structlog.get_logger()

# Channel key used for sessions reported by the live stream (no artifact path)
LIVE_SESSION_KEY = "<live>"


class EndReason(str, Enum):
    """Why a session was considered finished."""

    FILE_DELETED = "file_deleted"
    STALLED = "stalled"
    DURATION_EXCEEDED = "duration_exceeded"
    STREAM_SIGNALED = "stream_signaled"
    INTERRUPTED = "interrupted"
    STABILIZED = "stabilized"


@dataclass(frozen=True)
class SessionStarted:
    """A match began. ``path`` is None when reported by the live stream."""

    path: Path | None
    observed_at: datetime = field(default_factory=datetime.now)
    players: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return session_key(self.path)


@dataclass(frozen=True)
class SessionEnded:
    """A match finished (or was abandoned) for ``reason``."""

    path: Path | None
    reason: EndReason
    observed_at: datetime = field(default_factory=datetime.now)
    winner: str | None = None

    @property
    def key(self) -> str:
        return session_key(self.path)


DetectionEvent = Union[SessionStarted, SessionEnded]
EventHandler = Callable[[DetectionEvent], None]


def session_key(path: Path | None) -> str:
    return LIVE_SESSION_KEY if path is None else str(path)


@dataclass
class ActiveSession:
    """The single in-flight session tracked by the polling strategy."""

    identifier: str
    storage_location: Path
    started_at: float
    last_observed_size: int
    last_observed_modified_at: int
    unchanged_poll_count: int = 0

    def footprint_matches(self, size: int, modified_at: int) -> bool:
        return size == self.last_observed_size and modified_at == self.last_observed_modified_at


class SessionChannel:
    """Single registration point per event kind.

    Enforces, per session key, exactly one ``SessionStarted`` followed by
    exactly one ``SessionEnded``. Artifact keys that completed are never
    reopened; the live key can be reused once its previous session ended.
    """

    def __init__(self, logger: Any = None):
        self._log = logger or structlog.get_logger()
        self._start_cb: Callable[[SessionStarted], Any] | None = None
        self._end_cb: Callable[[SessionEnded], Any] | None = None
        self._open: set[str] = set()
        self._completed: set[str] = set()

    def on_session_start(self, callback: Callable[[SessionStarted], Any]) -> None:
        if self._start_cb is not None:
            self._log.warning("session_start_callback_replaced")
        self._start_cb = callback

    def on_session_end(self, callback: Callable[[SessionEnded], Any]) -> None:
        if self._end_cb is not None:
            self._log.warning("session_end_callback_replaced")
        self._end_cb = callback

    def is_open(self, path: Path | None) -> bool:
        return session_key(path) in self._open

    def publish(self, event: DetectionEvent) -> bool:
        """Deliver ``event`` if it respects the start/end ordering.

        Returns True when the event was delivered, False when dropped.
        """
        key = event.key
        if isinstance(event, SessionStarted):
            if key in self._open or key in self._completed:
                self._log.warning("duplicate_session_start_dropped", session=key)
                return False
            self._open.add(key)
            self._deliver(self._start_cb, event)
            return True

        if key not in self._open:
            self._log.warning("unmatched_session_end_dropped", session=key, reason=event.reason.value)
            return False
        self._open.discard(key)
        if key != LIVE_SESSION_KEY:
            self._completed.add(key)
        self._deliver(self._end_cb, event)
        return True

    def _deliver(self, callback: Callable[[Any], Any] | None, event: DetectionEvent) -> None:
        if callback is None:
            return
        try:
            callback(event)
        except Exception:
            self._log.exception("session_callback_failed", session=event.key)
