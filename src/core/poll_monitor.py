"""Polling strategy: infer the end of a match from a replay that stops growing.

State machine: IDLE -> ACTIVE -> IDLE

A creation/rename notification for a new replay makes the monitor ACTIVE.
Every ``poll_interval`` the active replay is stat'ed; the session ends when
the file disappears, when its size and mtime stay identical for
``unchanged_threshold`` consecutive polls, or when it has been active longer
than ``session_ceiling``. A replay that ended is never tracked again until
``reset_cache()``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from src.core.errors import WatchUnavailable
from src.core.events import (
    ActiveSession,
    DetectionEvent,
    EndReason,
    EventHandler,
    SessionEnded,
    SessionStarted,
)
from src.core.watch import (
    ArtifactEventHandler,
    ObserverFactory,
    is_artifact,
    start_observer,
    stop_observer,
)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_UNCHANGED_THRESHOLD = 3
DEFAULT_SESSION_CEILING = 30 * 60.0
DEFAULT_RECENT_WINDOW = 5 * 60.0


class FilesystemPollMonitor:
    """Single-slot replay monitor driven by a periodic stat poll."""

    def __init__(
        self,
        directory: Path,
        extension: str = ".slp",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        unchanged_threshold: int = DEFAULT_UNCHANGED_THRESHOLD,
        session_ceiling: float = DEFAULT_SESSION_CEILING,
        recent_window: float = DEFAULT_RECENT_WINDOW,
        use_watcher: bool = True,
        observer_factory: ObserverFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        logger: Any = None,
    ):
        self.directory = Path(directory)
        self.extension = extension
        self.poll_interval = poll_interval
        self.unchanged_threshold = unchanged_threshold
        self.session_ceiling = session_ceiling
        self.recent_window = recent_window
        self.use_watcher = use_watcher

        self._observer_factory = observer_factory
        self._clock = clock
        self._wall_clock = wall_clock
        self._log = logger or structlog.get_logger()

        self._handler: EventHandler | None = None
        self._active: ActiveSession | None = None
        self._running = False
        self._task: asyncio.Task | None = None
        self._observer: Any = None
        self._known: set[str] = set()
        self._processed: set[str] = set()

    # -- wiring -----------------------------------------------------------

    def on_event(self, handler: EventHandler) -> None:
        self._handler = handler

    @property
    def active_session(self) -> ActiveSession | None:
        return self._active

    @property
    def running(self) -> bool:
        return self._running

    @property
    def scanning(self) -> bool:
        """True when new replays are found by listing instead of a watch."""
        return self._running and self._observer is None

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._known = {p.name for p in self._list_artifacts()}

        self._adopt_recent_artifact()

        if self.use_watcher:
            loop = asyncio.get_running_loop()
            handler = ArtifactEventHandler(loop, self.handle_artifact_notification, self.extension)
            try:
                self._observer = start_observer(self.directory, handler, self._observer_factory)
            except WatchUnavailable:
                self._log.warning("poll_monitor_scan_mode", directory=str(self.directory))
                self._observer = None

        self._task = asyncio.create_task(self._poll_loop(), name="FilesystemPollMonitor")
        self._log.info(
            "poll_monitor_started",
            directory=str(self.directory),
            interval=self.poll_interval,
            watching=self._observer is not None,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._observer is not None:
            stop_observer(self._observer)
            self._observer = None
        self._active = None
        self._log.info("poll_monitor_stopped", directory=str(self.directory))

    def reset_cache(self) -> None:
        """Forget which replays already ended so they may be tracked again."""
        self._processed.clear()

    # -- notifications ----------------------------------------------------

    def handle_artifact_notification(self, path: Path) -> None:
        """A replay was created or renamed into the watched directory."""
        path = Path(path)
        self._known.add(path.name)
        if not is_artifact(path, self.extension) or not path.exists():
            return
        if path.name in self._processed:
            self._log.debug("completed_artifact_ignored", artifact=path.name)
            return
        if self._active is not None and self._active.identifier == path.name:
            return
        self._begin_session(path)

    def _begin_session(self, path: Path) -> None:
        try:
            stat = path.stat()
        except OSError as e:
            # The file may vanish right after creation
            self._log.warning("artifact_stat_failed", artifact=path.name, error=str(e))
            return

        if self._active is not None:
            self._log.info("session_interrupted", artifact=self._active.identifier, by=path.name)
            self._end_session(EndReason.INTERRUPTED)

        self._active = ActiveSession(
            identifier=path.name,
            storage_location=path,
            started_at=self._clock(),
            last_observed_size=stat.st_size,
            last_observed_modified_at=stat.st_mtime_ns,
        )
        self._log.info("session_started", artifact=path.name, strategy="poll")
        self._emit(SessionStarted(path=path))

    def _end_session(self, reason: EndReason) -> SessionEnded | None:
        session = self._active
        if session is None:
            return None
        self._active = None
        self._processed.add(session.identifier)
        event = SessionEnded(path=session.storage_location, reason=reason)
        self._log.info("session_ended", artifact=session.identifier, reason=reason.value, strategy="poll")
        self._emit(event)
        return event

    def _emit(self, event: DetectionEvent) -> None:
        if self._handler is not None:
            self._handler(event)

    # -- polling ----------------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                self.poll_once()
            except Exception as e:
                self._log.warning("poll_tick_error", error=str(e))

    def poll_once(self) -> SessionEnded | None:
        """Run one tick. Returns the end event if this tick ended the session."""
        if self.scanning:
            self._scan_for_new_artifacts()

        session = self._active
        if session is None:
            return None

        try:
            stat = session.storage_location.stat()
        except FileNotFoundError:
            return self._end_session(EndReason.FILE_DELETED)
        except OSError as e:
            self._log.warning("artifact_stat_failed", artifact=session.identifier, error=str(e))
            return self._check_ceiling(session)

        if session.footprint_matches(stat.st_size, stat.st_mtime_ns):
            session.unchanged_poll_count += 1
            if session.unchanged_poll_count >= self.unchanged_threshold:
                return self._end_session(EndReason.STALLED)
        else:
            session.last_observed_size = stat.st_size
            session.last_observed_modified_at = stat.st_mtime_ns
            session.unchanged_poll_count = 0

        return self._check_ceiling(session)

    def _check_ceiling(self, session: ActiveSession) -> SessionEnded | None:
        if self._clock() - session.started_at > self.session_ceiling:
            self._log.warning(
                "session_ceiling_exceeded",
                artifact=session.identifier,
                ceiling=self.session_ceiling,
            )
            return self._end_session(EndReason.DURATION_EXCEEDED)
        return None

    # -- directory inspection ---------------------------------------------

    def _list_artifacts(self) -> list[Path]:
        try:
            return [p for p in self.directory.iterdir() if is_artifact(p, self.extension)]
        except OSError as e:
            self._log.warning("replay_directory_list_failed", directory=str(self.directory), error=str(e))
            return []

    def _newest(self, paths: list[Path]) -> tuple[Path, float] | None:
        newest: tuple[Path, float] | None = None
        for path in paths:
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if newest is None or mtime > newest[1]:
                newest = (path, mtime)
        return newest

    def _adopt_recent_artifact(self) -> None:
        """Resume a match that was already being recorded when we started."""
        newest = self._newest(self._list_artifacts())
        if newest is None:
            return
        path, mtime = newest
        if path.name in self._processed:
            return
        if self._wall_clock() - mtime < self.recent_window:
            self._log.info("recent_artifact_adopted", artifact=path.name)
            self._begin_session(path)

    def _scan_for_new_artifacts(self) -> None:
        current = self._list_artifacts()
        fresh = [p for p in current if p.name not in self._known]
        self._known.update(p.name for p in current)
        newest = self._newest(fresh)
        if newest is not None:
            self.handle_artifact_notification(newest[0])
