"""Tests for the SessionTracker and its settings-driven assembly."""

import asyncio
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.config.settings import Settings
from src.connectors.live import LiveSessionConnector
from src.core.arbiter import Strategy
from src.core.errors import ApiError, ConfigurationError, NoStrategyAvailable, RecordError
from src.core.events import EndReason, SessionEnded, SessionStarted
from src.core.session_dir import month_folder_name
from src.core.session_tracker import (
    SessionTracker,
    build_arbiter,
    build_record_sink,
    build_tracker,
)
from src.services.records import LedgerRecordSink, SheetsRecordSink


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


def _mock_arbiter(strategy=Strategy.POLL):
    arbiter = MagicMock()
    arbiter.start = AsyncMock(return_value=strategy)
    arbiter.stop = AsyncMock()
    return arbiter


def _tracker(rating=1500.0, settle_delay=0.0):
    arbiter = _mock_arbiter()
    source = MagicMock()
    source.fetch_rating = AsyncMock(return_value=rating)
    sink = MagicMock()
    sink.append_rating = AsyncMock(return_value=True)
    tracker = SessionTracker(
        arbiter, source, sink, connect_code="ABCD#123", settle_delay=settle_delay
    )
    return tracker, arbiter, source, sink


class TestSessionTracker:
    def test_registers_callbacks(self):
        tracker, arbiter, _, _ = _tracker()
        arbiter.on_session_start.assert_called_once()
        arbiter.on_session_end.assert_called_once()
        arbiter.on_halted.assert_called_once()

    @pytest.mark.asyncio
    async def test_fetch_and_record(self):
        tracker, _, source, sink = _tracker(rating=1612.4)
        assert await tracker.fetch_and_record() is True
        source.fetch_rating.assert_awaited_once_with("ABCD#123")
        sink.append_rating.assert_awaited_once_with(1612.4)

    @pytest.mark.asyncio
    async def test_session_end_records_after_settle(self):
        tracker, arbiter, source, sink = _tracker()
        on_start = arbiter.on_session_start.call_args[0][0]
        on_end = arbiter.on_session_end.call_args[0][0]

        on_start(SessionStarted(path=Path("/r/Game.slp")))
        source.fetch_rating.assert_not_awaited()
        on_end(SessionEnded(path=Path("/r/Game.slp"), reason=EndReason.STALLED))
        await tracker.trigger.drain()

        source.fetch_rating.assert_awaited_once()
        sink.append_rating.assert_awaited_once_with(1500.0)

    @pytest.mark.asyncio
    async def test_live_session_end_with_winner(self):
        tracker, arbiter, _, sink = _tracker()
        on_end = arbiter.on_session_end.call_args[0][0]
        on_end(SessionEnded(path=None, reason=EndReason.STREAM_SIGNALED, winner="A"))
        await tracker.trigger.drain()
        sink.append_rating.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_failure_does_not_escape(self):
        tracker, arbiter, _, sink = _tracker()
        sink.append_rating.side_effect = RecordError("sheet gone")
        on_end = arbiter.on_session_end.call_args[0][0]
        on_end(SessionEnded(path=None, reason=EndReason.STREAM_SIGNALED))
        await tracker.trigger.drain()
        assert tracker.trigger.pending == 0

    @pytest.mark.asyncio
    async def test_start_does_initial_fetch(self):
        tracker, arbiter, source, sink = _tracker()
        assert await tracker.start() is Strategy.POLL
        arbiter.start.assert_awaited_once()
        sink.append_rating.assert_awaited_once_with(1500.0)
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_initial_fetch_failure_tolerated(self):
        tracker, _, source, sink = _tracker()
        source.fetch_rating.side_effect = ApiError("Slippi API unreachable")
        await tracker.start()
        sink.append_rating.assert_not_awaited()
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_stop_idempotent(self):
        tracker, arbiter, _, _ = _tracker()
        await tracker.start()
        await tracker.stop()
        await tracker.stop()
        arbiter.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_settles(self):
        tracker, arbiter, source, _ = _tracker(settle_delay=10)
        await tracker.start()
        source.fetch_rating.reset_mock()
        on_end = arbiter.on_session_end.call_args[0][0]
        on_end(SessionEnded(path=None, reason=EndReason.STREAM_SIGNALED))
        assert tracker.trigger.pending == 1
        await tracker.stop()
        assert tracker.trigger.pending == 0
        source.fetch_rating.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self):
        tracker, arbiter, _, _ = _tracker()
        task = asyncio.create_task(tracker.run())
        await asyncio.sleep(0.01)
        arbiter.stop.assert_not_awaited()
        tracker.request_stop()
        await asyncio.wait_for(task, timeout=1)
        arbiter.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_raises_when_detection_halts(self):
        tracker, arbiter, _, _ = _tracker()
        on_halted = arbiter.on_halted.call_args[0][0]
        task = asyncio.create_task(tracker.run())
        await asyncio.sleep(0.01)

        on_halted(NoStrategyAvailable("No session detection strategy could be started"))
        with pytest.raises(NoStrategyAvailable):
            await asyncio.wait_for(task, timeout=1)
        arbiter.stop.assert_awaited_once()


class TestAssembly:
    def test_build_record_sink_ledger(self, tmp_path):
        sink = build_record_sink(Settings(ledger_path=tmp_path / "r.jsonl"))
        assert isinstance(sink, LedgerRecordSink)
        assert sink.path == tmp_path / "r.jsonl"

    @pytest.mark.asyncio
    async def test_build_record_sink_sheets(self):
        sink = build_record_sink(
            Settings(record_backend="sheets", spreadsheet_id="abc", sheets_access_token="t")
        )
        assert isinstance(sink, SheetsRecordSink)
        assert sink.spreadsheet_id == "abc"
        await sink.aclose()

    def test_build_arbiter_with_live(self, tmp_path):
        arbiter = build_arbiter(Settings(dolphin_port=6000), tmp_path)
        assert isinstance(arbiter.connector, LiveSessionConnector)
        assert arbiter.connector.stream.port == 6000
        assert arbiter.dual_watch.directory == tmp_path
        assert arbiter.poll_monitor.directory == tmp_path

    def test_build_arbiter_files_only(self, tmp_path):
        arbiter = build_arbiter(
            Settings(use_live_stream=False, poll_interval=2.0, stabilization_window=1.0), tmp_path
        )
        assert arbiter.connector is None
        assert arbiter.poll_monitor.poll_interval == 2.0
        assert arbiter.dual_watch.stabilization_window == 1.0

    @pytest.mark.asyncio
    async def test_build_tracker_requires_connect_code(self, tmp_path):
        with pytest.raises(ConfigurationError):
            async with build_tracker(Settings(replay_dir=tmp_path)):
                pass

    @pytest.mark.asyncio
    async def test_build_tracker(self, tmp_path):
        cfg = Settings(
            connect_code="ABCD#123",
            replay_dir=tmp_path / "Slippi",
            use_live_stream=False,
            settle_delay=1.5,
            ledger_path=tmp_path / "ratings.jsonl",
        )
        async with build_tracker(cfg) as tracker:
            month_dir = tmp_path / "Slippi" / month_folder_name(datetime.now())
            assert month_dir.is_dir()
            assert tracker.arbiter.dual_watch.directory == month_dir
            assert tracker.connect_code == "ABCD#123"
            assert tracker.trigger.settle_delay == 1.5
            assert isinstance(tracker.record_sink, LedgerRecordSink)
