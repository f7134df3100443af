"""Dual-watch strategy: separate "started" and "finished" replay signals.

Two observers watch the same directory. The start watch reports a replay as
soon as it exists. The completion watch follows each new replay until its
size and mtime have been quiet for ``stabilization_window`` seconds. Both
feed one ledger (in-progress / processed sets) so every replay yields at most
one start and one end.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from src.core.events import DetectionEvent, EndReason, EventHandler, SessionEnded, SessionStarted
from src.core.watch import (
    ArtifactEventHandler,
    ObserverFactory,
    is_artifact,
    start_observer,
    stop_observer,
)

DEFAULT_STABILIZATION_WINDOW = 2.0
DEFAULT_STABILIZATION_POLL = 0.1


class DualWatchFileMonitor:
    """Tracks each replay by set membership instead of a single active slot."""

    def __init__(
        self,
        directory: Path,
        extension: str = ".slp",
        stabilization_window: float = DEFAULT_STABILIZATION_WINDOW,
        stabilization_poll_interval: float = DEFAULT_STABILIZATION_POLL,
        observer_factory: ObserverFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        logger: Any = None,
    ):
        self.directory = Path(directory)
        self.extension = extension
        self.stabilization_window = stabilization_window
        self.stabilization_poll_interval = stabilization_poll_interval

        self._observer_factory = observer_factory
        self._clock = clock
        self._wall_clock = wall_clock
        self._log = logger or structlog.get_logger()

        self.in_progress: set[str] = set()
        self.processed: set[str] = set()

        self._handler: EventHandler | None = None
        self._running = False
        self._started_at: float | None = None
        self._preexisting: set[str] = set()
        self._start_observer: Any = None
        self._completion_observer: Any = None
        self._pending: dict[str, asyncio.Task] = {}

    def on_event(self, handler: EventHandler) -> None:
        self._handler = handler

    @property
    def running(self) -> bool:
        return self._running

    @property
    def started_at(self) -> float | None:
        return self._started_at

    async def start(self) -> None:
        """Schedule both watches. Raises WatchUnavailable if either fails."""
        if self._running:
            return
        self._started_at = self._wall_clock()
        self._preexisting = self._snapshot()
        self._log.info("dual_watch_start_time", started_at=self._started_at)

        loop = asyncio.get_running_loop()
        start_handler = ArtifactEventHandler(loop, self.handle_start_signal, self.extension)
        completion_handler = ArtifactEventHandler(loop, self.handle_completion_signal, self.extension)

        self._start_observer = start_observer(self.directory, start_handler, self._observer_factory)
        try:
            self._completion_observer = start_observer(
                self.directory, completion_handler, self._observer_factory
            )
        except Exception:
            stop_observer(self._start_observer)
            self._start_observer = None
            raise

        self._running = True
        self._log.info(
            "dual_watch_started",
            directory=str(self.directory),
            stabilization_window=self.stabilization_window,
            ignored_existing=len(self._preexisting),
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for observer in (self._start_observer, self._completion_observer):
            if observer is not None:
                stop_observer(observer)
        self._start_observer = None
        self._completion_observer = None
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        self._log.info("dual_watch_stopped", directory=str(self.directory))

    def reset_cache(self) -> None:
        self.in_progress.clear()
        self.processed.clear()

    # -- start watch ------------------------------------------------------

    def handle_start_signal(self, path: Path) -> None:
        path = Path(path)
        key = str(path)
        if key in self.in_progress or key in self.processed:
            return
        if not self._qualifies(path):
            return
        self._mark_started(path)

    def _mark_started(self, path: Path) -> None:
        self.in_progress.add(str(path))
        self._log.info("session_started", artifact=path.name, strategy="dual_watch")
        self._emit(SessionStarted(path=path))

    # -- completion watch -------------------------------------------------

    def handle_completion_signal(self, path: Path) -> None:
        path = Path(path)
        key = str(path)
        if key in self.processed or key in self._pending:
            return
        if not self._qualifies(path):
            return
        self._pending[key] = asyncio.create_task(
            self._await_write_finish(path), name=f"stabilize:{path.name}"
        )

    async def _await_write_finish(self, path: Path) -> None:
        key = str(path)
        try:
            stat = path.stat()
            footprint = (stat.st_size, stat.st_mtime_ns)
            quiet_since = self._clock()
            while True:
                await asyncio.sleep(self.stabilization_poll_interval)
                stat = path.stat()
                current = (stat.st_size, stat.st_mtime_ns)
                if current != footprint:
                    footprint = current
                    quiet_since = self._clock()
                elif self._clock() - quiet_since >= self.stabilization_window:
                    break
        except FileNotFoundError:
            self._log.warning("artifact_vanished_before_stable", artifact=path.name)
            return
        except OSError as e:
            self._log.error("artifact_stat_failed", artifact=path.name, error=str(e))
            return
        finally:
            self._pending.pop(key, None)

        self.complete(path)

    def complete(self, path: Path) -> None:
        """Record ``path`` as finished and emit its end event once."""
        path = Path(path)
        key = str(path)
        if key in self.processed:
            return
        if key not in self.in_progress:
            # The start watch never saw this replay; imply its start
            self._mark_started(path)
        self.processed.add(key)
        self.in_progress.discard(key)
        self._log.info("session_ended", artifact=path.name, reason=EndReason.STABILIZED.value, strategy="dual_watch")
        self._emit(SessionEnded(path=path, reason=EndReason.STABILIZED))

    # -- helpers ----------------------------------------------------------

    def _snapshot(self) -> set[str]:
        try:
            return {str(p) for p in self.directory.iterdir() if is_artifact(p, self.extension)}
        except OSError as e:
            self._log.warning("replay_directory_list_failed", directory=str(self.directory), error=str(e))
            return set()

    def _qualifies(self, path: Path) -> bool:
        """Only replays created after this monitor started count."""
        if not is_artifact(path, self.extension):
            return False
        if str(path) in self._preexisting:
            self._log.info("existing_artifact_skipped", artifact=path.name)
            return False
        try:
            stat = path.stat()
        except OSError as e:
            self._log.warning("artifact_stat_failed", artifact=path.name, error=str(e))
            return False
        # st_ctime is not a creation time on Linux; use birth time only where reported
        birth = getattr(stat, "st_birthtime", None)
        if birth is not None and self._started_at is not None and birth <= self._started_at:
            self._log.info("existing_artifact_skipped", artifact=path.name)
            return False
        return True

    def _emit(self, event: DetectionEvent) -> None:
        if self._handler is not None:
            self._handler(event)
