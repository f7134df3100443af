"""Post-game completion trigger.

After a session ends the upstream rating service needs a moment to register
the result, so the trigger waits ``settle_delay`` seconds before running the
injected callback. Callback failures are logged and never reach the detector.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.core.events import SessionEnded

DEFAULT_SETTLE_DELAY = 5.0


class SessionCompletionTrigger:
    """Runs ``on_settled`` once per ended session, after a settle delay."""

    def __init__(
        self,
        on_settled: Callable[[], Awaitable[Any]],
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        logger: Any = None,
    ):
        self.on_settled = on_settled
        self.settle_delay = settle_delay
        self._log = logger or structlog.get_logger()
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def handle_session_end(self, event: SessionEnded) -> asyncio.Task:
        """Schedule the settle wait for ``event``. Returns the scheduled task."""
        self._log.info(
            "settle_scheduled",
            session=event.key,
            reason=event.reason.value,
            delay=self.settle_delay,
        )
        task = asyncio.create_task(self._settle_then_fire(event), name=f"settle:{event.key}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _settle_then_fire(self, event: SessionEnded) -> bool:
        await asyncio.sleep(self.settle_delay)
        try:
            await self.on_settled()
        except Exception as e:
            self._log.exception("settle_callback_failed", session=event.key, error=str(e))
            return False
        self._log.info("settle_complete", session=event.key)
        return True

    async def drain(self) -> None:
        """Wait for every pending settle to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
