"""Bridge between watchdog observer threads and the asyncio loop.

Observers deliver notifications on their own threads. The handler here only
forwards the artifact path into the event loop; all session state is touched
from the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from src.core.errors import WatchUnavailable

logger = structlog.get_logger()

ObserverFactory = Callable[[], Any]


def is_artifact(path: Path, extension: str) -> bool:
    """Replay files with ``extension``; dotfiles are ignored."""
    return path.suffix.lower() == extension and not path.name.startswith(".")


class ArtifactEventHandler(FileSystemEventHandler):
    """Forwards creation and rename of artifacts to the loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        callback: Callable[[Path], None],
        extension: str,
    ):
        super().__init__()
        self._loop = loop
        self._callback = callback
        self._extension = extension

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # A rename into the directory is how some clients finalize a replay
        if not event.is_directory:
            self._forward(event.dest_path)

    def _forward(self, raw_path: str | bytes) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode()
        path = Path(raw_path)
        if not is_artifact(path, self._extension):
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._callback, path)


def start_observer(
    directory: Path,
    handler: FileSystemEventHandler,
    observer_factory: ObserverFactory | None = None,
) -> Any:
    """Schedule ``handler`` on a new observer for ``directory`` and start it.

    Raises WatchUnavailable if the platform refuses the watch.
    """
    observer = (observer_factory or Observer)()
    try:
        observer.schedule(handler, str(directory), recursive=False)
        observer.start()
    except (OSError, RuntimeError) as e:
        logger.warning("directory_watch_unavailable", directory=str(directory), error=str(e))
        stop_observer(observer)
        raise WatchUnavailable(f"Cannot watch {directory}: {e}") from e
    return observer


def stop_observer(observer: Any, timeout: float = 2.0) -> None:
    try:
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=timeout)
    except RuntimeError:
        # join() on a never-started observer
        pass
