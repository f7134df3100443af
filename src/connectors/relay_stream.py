"""JSON-lines relay for Dolphin game events.

The relay forwards Dolphin's game start/end notifications over TCP, one JSON
object per line::

    {"type": "game_start", "players": [{"displayName": "A", "connectCode": "AAAA#1"}]}
    {"type": "game_end", "winnerPlayerIndex": 1}
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from src.connectors.live import GameEndMessage, GameStartMessage, PlayerInfo, StreamMessage

logger = structlog.get_logger()

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 51441


def parse_message(raw: dict[str, Any]) -> StreamMessage | None:
    """Convert one decoded relay object into a stream message.

    Returns None for message types the tracker does not care about.
    """
    kind = raw.get("type")
    if kind == "game_start":
        players: list[PlayerInfo | None] = []
        for entry in raw.get("players") or []:
            if not isinstance(entry, dict):
                players.append(None)
                continue
            players.append(
                PlayerInfo(
                    display_name=entry.get("displayName"),
                    connect_code=entry.get("connectCode"),
                )
            )
        return GameStartMessage(players=tuple(players))
    if kind == "game_end":
        index = raw.get("winnerPlayerIndex")
        return GameEndMessage(winner_player_index=index if isinstance(index, int) else None)
    return None


class RelayEventStream:
    """GameEventStream over a TCP JSON-lines relay. Can be reopened after close."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
        self.host = host
        self.port = port
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def open(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        logger.info("relay_connected", host=self.host, port=self.port)

    async def events(self) -> AsyncIterator[StreamMessage]:
        if self._reader is None:
            raise ConnectionError("Relay stream is not open")
        reader = self._reader
        while True:
            line = await reader.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("relay_malformed_line", line=text[:200])
                continue
            if not isinstance(raw, dict):
                continue
            message = parse_message(raw)
            if message is None:
                logger.debug("relay_message_ignored", type=raw.get("type"))
                continue
            yield message

    async def close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug("relay_close_error", error=str(e))
