"""Live game-event connector.

Adapts a push-based stream of game start/end messages (the Dolphin relay)
into the unified session events. The connector owns the connection
lifecycle: it opens the stream, consumes it on a reader task and tears
everything down when the stream errors or disconnects.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

import structlog

from src.core.errors import ConnectionFailed, ConnectionLost
from src.core.events import DetectionEvent, EndReason, EventHandler, SessionEnded, SessionStarted

DEFAULT_CONNECT_TIMEOUT = 5.0


@dataclass(frozen=True)
class PlayerInfo:
    """A player slot as reported at game start."""

    display_name: str | None = None
    connect_code: str | None = None


@dataclass(frozen=True)
class GameStartMessage:
    players: tuple[PlayerInfo | None, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class GameEndMessage:
    winner_player_index: int | None = None


StreamMessage = Union[GameStartMessage, GameEndMessage]


class GameEventStream(Protocol):
    """What the connector needs from a live event source."""

    async def open(self) -> None:
        """Complete the handshake. Raises OSError/ConnectionError on failure."""
        ...

    def events(self) -> AsyncIterator[StreamMessage]:
        """Yield messages until the stream disconnects (or raise on error)."""
        ...

    async def close(self) -> None:
        ...


class LiveSessionConnector:
    """Turns stream messages into SessionStarted / SessionEnded events."""

    def __init__(
        self,
        stream: GameEventStream,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        logger: Any = None,
    ):
        self.stream = stream
        self.connect_timeout = connect_timeout
        self._log = logger or structlog.get_logger()

        self._handler: EventHandler | None = None
        self._lost_cb: Callable[[ConnectionLost], None] | None = None
        self._reader: asyncio.Task | None = None
        self._players: list[PlayerInfo | None] = []
        self._connected = False
        self._in_game = False

    def on_event(self, handler: EventHandler) -> None:
        self._handler = handler

    def on_connection_lost(self, callback: Callable[[ConnectionLost], None]) -> None:
        self._lost_cb = callback

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def players(self) -> list[PlayerInfo | None]:
        return list(self._players)

    async def connect(self) -> None:
        """Open the stream and start consuming it.

        Raises ConnectionFailed if the handshake fails or times out.
        """
        if self._connected:
            return
        self._log.info("live_connecting", timeout=self.connect_timeout)
        try:
            await asyncio.wait_for(self.stream.open(), timeout=self.connect_timeout)
        except (OSError, ConnectionError, asyncio.TimeoutError) as e:
            reason = str(e) or type(e).__name__
            self._log.warning("live_connection_failed", error=reason)
            await self._close_stream()
            raise ConnectionFailed(f"Failed to connect to live stream: {reason}") from e

        self._connected = True
        self._reader = asyncio.create_task(self._consume(), name="LiveSessionConnector")
        self._log.info("live_connected")

    async def disconnect(self) -> None:
        """Tear down without reporting a lost connection."""
        if not self._connected:
            return
        await self._teardown()
        self._log.info("live_disconnected")

    async def _consume(self) -> None:
        error: BaseException | None = None
        try:
            async for message in self.stream.events():
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            self._log.error("live_stream_error", error=str(e))
        else:
            self._log.error("live_stream_disconnected")

        if not self._connected:
            return
        await self._teardown()
        lost = ConnectionLost(f"Live stream lost: {error}" if error else "Live stream disconnected")
        if self._lost_cb is not None:
            self._lost_cb(lost)

    async def _teardown(self) -> None:
        self._connected = False
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._players = []
        self._in_game = False
        await self._close_stream()

    async def _close_stream(self) -> None:
        try:
            await self.stream.close()
        except Exception as e:
            self._log.error("live_stream_close_failed", error=str(e))

    # -- message handling -------------------------------------------------

    def _dispatch(self, message: StreamMessage) -> None:
        if isinstance(message, GameStartMessage):
            self.handle_game_start(message)
        elif isinstance(message, GameEndMessage):
            self.handle_game_end(message)

    def handle_game_start(self, message: GameStartMessage) -> None:
        if self._in_game:
            self._log.warning("live_game_interrupted")
            self._emit(SessionEnded(path=None, reason=EndReason.INTERRUPTED))

        self._players = list(message.players)
        self._in_game = True
        names = tuple(
            self.player_label(i) for i, player in enumerate(self._players) if player is not None
        )
        for index, name in enumerate(names):
            self._log.info("live_player", slot=index + 1, name=name)
        self._log.info("session_started", strategy="live", players=list(names))
        self._emit(SessionStarted(path=None, players=names))

    def handle_game_end(self, message: GameEndMessage) -> None:
        if not self._in_game:
            self._log.warning("live_game_end_without_start")
            self._emit(SessionStarted(path=None))

        winner = self.resolve_winner(message.winner_player_index)
        self._in_game = False
        self._log.info(
            "session_ended",
            strategy="live",
            reason=EndReason.STREAM_SIGNALED.value,
            winner=winner,
        )
        self._emit(SessionEnded(path=None, reason=EndReason.STREAM_SIGNALED, winner=winner))

    def player_label(self, index: int) -> str:
        if 0 <= index < len(self._players):
            player = self._players[index]
            if player is not None and player.display_name:
                return player.display_name
        return f"Player {index + 1}"

    def resolve_winner(self, index: int | None) -> str | None:
        if index is None or index < 0:
            return None
        return self.player_label(index)

    def _emit(self, event: DetectionEvent) -> None:
        if self._handler is not None:
            self._handler(event)
