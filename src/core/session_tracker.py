"""Session tracker - wires detection to rating fetch and record keeping.

    detector (arbiter) -> SessionEnded -> settle delay -> fetch rating -> append record
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Any, Protocol

import structlog

from src.config.settings import Settings
from src.connectors.live import LiveSessionConnector
from src.connectors.relay_stream import RelayEventStream
from src.core.arbiter import DetectionArbiter, Strategy
from src.core.completion import SessionCompletionTrigger
from src.core.dual_watch import DualWatchFileMonitor
from src.core.errors import ApiError, NoStrategyAvailable, RecordError
from src.core.events import SessionEnded, SessionStarted
from src.core.poll_monitor import FilesystemPollMonitor
from src.core.session_dir import resolve_session_directory
from src.services.rating import RatingClient
from src.services.records import LedgerRecordSink, RecordSink, SheetsRecordSink


class RatingSource(Protocol):
    async def fetch_rating(self, connect_code: str | None = None) -> float: ...


class SessionTracker:
    """Records the player's rating after every detected match."""

    def __init__(
        self,
        arbiter: DetectionArbiter,
        rating_source: RatingSource,
        record_sink: RecordSink,
        connect_code: str | None = None,
        settle_delay: float = 5.0,
        logger: Any = None,
    ):
        self.arbiter = arbiter
        self.rating_source = rating_source
        self.record_sink = record_sink
        self.connect_code = connect_code
        self._log = logger or structlog.get_logger()
        self.trigger = SessionCompletionTrigger(
            self.fetch_and_record, settle_delay=settle_delay, logger=self._log
        )
        self._stop_requested = asyncio.Event()
        self._running = False
        self._failure: NoStrategyAvailable | None = None

        arbiter.on_session_start(self._on_session_start)
        arbiter.on_session_end(self._on_session_end)
        arbiter.on_halted(self._on_halted)

    async def fetch_and_record(self) -> bool:
        """Fetch the current rating and append it. Returns whether a row was written."""
        rating = await self.rating_source.fetch_rating(self.connect_code)
        return await self.record_sink.append_rating(rating)

    def _on_session_start(self, event: SessionStarted) -> None:
        if event.path is not None:
            self._log.info("game_started", artifact=event.path.name)
        else:
            self._log.info("game_started", source="live", players=list(event.players))

    def _on_session_end(self, event: SessionEnded) -> None:
        self._log.info(
            "game_ended",
            artifact=event.path.name if event.path else None,
            reason=event.reason.value,
            winner=event.winner,
        )
        self.trigger.handle_session_end(event)

    def _on_halted(self, error: NoStrategyAvailable) -> None:
        self._failure = error
        self._stop_requested.set()

    async def start(self) -> Strategy:
        strategy = await self.arbiter.start()
        self._running = True
        self._log.info("tracker_running", strategy=strategy.value)

        try:
            await self.fetch_and_record()
            self._log.info("initial_fetch_complete")
        except (ApiError, RecordError) as e:
            self._log.error("initial_fetch_failed", error=str(e))
        return strategy

    async def run(self) -> None:
        """Start and block until ``request_stop()`` is called.

        Raises NoStrategyAvailable if detection halts while running.
        """
        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop()
        if self._failure is not None:
            raise self._failure

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.trigger.cancel()
        await self.arbiter.stop()
        self._log.info("tracker_stopped")


def build_arbiter(settings: Settings, directory: Path) -> DetectionArbiter:
    connector = None
    if settings.use_live_stream:
        connector = LiveSessionConnector(
            RelayEventStream(settings.dolphin_host, settings.dolphin_port),
            connect_timeout=settings.connect_timeout,
        )
    dual_watch = DualWatchFileMonitor(
        directory,
        extension=settings.artifact_extension,
        stabilization_window=settings.stabilization_window,
        stabilization_poll_interval=settings.stabilization_poll_interval,
    )
    poll_monitor = FilesystemPollMonitor(
        directory,
        extension=settings.artifact_extension,
        poll_interval=settings.poll_interval,
        unchanged_threshold=settings.unchanged_poll_threshold,
        session_ceiling=settings.session_ceiling,
        recent_window=settings.recent_window,
    )
    return DetectionArbiter(
        connector=connector,
        dual_watch=dual_watch,
        poll_monitor=poll_monitor,
        reconnect_attempts=settings.reconnect_attempts,
    )


def build_record_sink(settings: Settings) -> RecordSink:
    if settings.record_backend == "sheets":
        return SheetsRecordSink(
            spreadsheet_id=settings.spreadsheet_id or "",
            access_token=settings.sheets_access_token or "",
            sheet_name=settings.sheet_name,
        )
    return LedgerRecordSink(settings.ledger_path)


@asynccontextmanager
async def build_tracker(settings: Settings) -> AsyncIterator[SessionTracker]:
    """Assemble a SessionTracker from settings and release it on exit.

    Raises ConfigurationError or DirectoryCreateFailed before anything starts.
    """
    settings.validate_required()
    directory = resolve_session_directory(settings.replay_dir)
    arbiter = build_arbiter(settings, directory)

    async with AsyncExitStack() as stack:
        rating_client = await stack.enter_async_context(
            RatingClient(settings.api_url, settings.connect_code, settings.api_timeout)
        )
        sink = build_record_sink(settings)
        if isinstance(sink, SheetsRecordSink):
            stack.push_async_callback(sink.aclose)

        tracker = SessionTracker(
            arbiter,
            rating_client,
            sink,
            connect_code=settings.connect_code,
            settle_delay=settings.settle_delay,
        )
        try:
            yield tracker
        finally:
            await tracker.stop()
