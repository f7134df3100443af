"""Detection arbiter - picks the session detection strategy.

Preference order: live stream, dual-watch filesystem monitor, polling
filesystem monitor. Whatever runs underneath, callers register exactly one
start and one end callback.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.core.errors import ConnectionFailed, ConnectionLost, NoStrategyAvailable, WatchUnavailable
from src.core.events import EndReason, EventHandler, SessionChannel, SessionEnded

if TYPE_CHECKING:
    from src.connectors.live import LiveSessionConnector


class Strategy(str, Enum):
    LIVE = "live"
    DUAL_WATCH = "dual_watch"
    POLL = "poll"


class FileMonitor(Protocol):
    """Shared surface of the two filesystem strategies."""

    def on_event(self, handler: EventHandler) -> None: ...

    async def start(self) -> None: ...

    def stop(self) -> None: ...


class DetectionArbiter:
    """Runs one strategy at a time behind a single SessionChannel."""

    def __init__(
        self,
        connector: LiveSessionConnector | None = None,
        dual_watch: FileMonitor | None = None,
        poll_monitor: FileMonitor | None = None,
        reconnect_attempts: int = 3,
        reconnect_wait: wait_base | None = None,
        channel: SessionChannel | None = None,
        logger: Any = None,
    ):
        self.connector = connector
        self.dual_watch = dual_watch
        self.poll_monitor = poll_monitor
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_wait = reconnect_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._log = logger or structlog.get_logger()
        self.channel = channel or SessionChannel(logger=self._log)

        self._active: Strategy | None = None
        self._recovery: asyncio.Task | None = None
        self._halted_cb: Callable[[NoStrategyAvailable], Any] | None = None

        if self.connector is not None:
            self.connector.on_event(self.channel.publish)
            self.connector.on_connection_lost(self._handle_connection_lost)
        for monitor in (self.dual_watch, self.poll_monitor):
            if monitor is not None:
                monitor.on_event(self.channel.publish)

    def on_session_start(self, callback) -> None:
        self.channel.on_session_start(callback)

    def on_session_end(self, callback) -> None:
        self.channel.on_session_end(callback)

    def on_halted(self, callback: Callable[[NoStrategyAvailable], Any]) -> None:
        """Called when the live link is lost and no file strategy can take over."""
        self._halted_cb = callback

    @property
    def active_strategy(self) -> Strategy | None:
        return self._active

    async def __aenter__(self) -> "DetectionArbiter":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    async def start(self) -> Strategy:
        """Start the most preferred strategy that works.

        Raises NoStrategyAvailable if none can be started.
        """
        if self._active is not None:
            return self._active

        if self.connector is not None:
            try:
                await self.connector.connect()
            except ConnectionFailed as e:
                self._log.warning("strategy_fallback", failed=Strategy.LIVE.value, error=str(e))
            else:
                self._active = Strategy.LIVE
                self._log.info("strategy_selected", strategy=Strategy.LIVE.value)
                return self._active

        return await self._start_file_strategy()

    async def _start_file_strategy(self) -> Strategy:
        candidates = ((Strategy.DUAL_WATCH, self.dual_watch), (Strategy.POLL, self.poll_monitor))
        for strategy, monitor in candidates:
            if monitor is None:
                continue
            try:
                await monitor.start()
            except WatchUnavailable as e:
                self._log.warning("strategy_fallback", failed=strategy.value, error=str(e))
                continue
            self._active = strategy
            self._log.info("strategy_selected", strategy=strategy.value)
            return strategy

        self._log.error("no_strategy_available")
        raise NoStrategyAvailable("No session detection strategy could be started")

    async def stop(self) -> None:
        """Release whatever is running. Calling it again is a no-op."""
        if self._recovery is not None:
            if self._recovery is not asyncio.current_task():
                self._recovery.cancel()
            self._recovery = None

        active, self._active = self._active, None
        if active is None:
            return
        if active is Strategy.LIVE and self.connector is not None:
            await self.connector.disconnect()
        elif active is Strategy.DUAL_WATCH and self.dual_watch is not None:
            self.dual_watch.stop()
        elif active is Strategy.POLL and self.poll_monitor is not None:
            self.poll_monitor.stop()
        self._log.info("arbiter_stopped", strategy=active.value)

    # -- live connection recovery -----------------------------------------

    def _handle_connection_lost(self, error: ConnectionLost) -> None:
        if self._active is not Strategy.LIVE:
            return
        self._log.warning("live_connection_lost", error=str(error))
        self._recovery = asyncio.create_task(self._recover(), name="DetectionArbiter.recover")

    async def _recover(self) -> None:
        if self.channel.is_open(None):
            self.channel.publish(SessionEnded(path=None, reason=EndReason.INTERRUPTED))

        if self.connector is not None and self.reconnect_attempts > 0:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.reconnect_attempts),
                    wait=self.reconnect_wait,
                    retry=retry_if_exception_type(ConnectionFailed),
                    reraise=True,
                ):
                    with attempt:
                        await self.connector.connect()
            except ConnectionFailed as e:
                self._log.warning("live_reconnect_failed", attempts=self.reconnect_attempts, error=str(e))
            else:
                self._log.info("live_reconnected")
                self._recovery = None
                return

        self._active = None
        try:
            await self._start_file_strategy()
        except NoStrategyAvailable as e:
            self._log.error("detection_halted", error=str(e))
            if self._halted_cb is not None:
                self._halted_cb(e)
        finally:
            self._recovery = None
