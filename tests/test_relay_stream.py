"""Tests for the JSON-lines relay stream."""

import asyncio
import json

import pytest

from src.connectors.live import GameEndMessage, GameStartMessage, PlayerInfo
from src.connectors.relay_stream import RelayEventStream, parse_message


class TestParseMessage:
    def test_game_start(self):
        msg = parse_message(
            {
                "type": "game_start",
                "players": [
                    {"displayName": "Fox Main", "connectCode": "FOX#1"},
                    None,
                ],
            }
        )
        assert isinstance(msg, GameStartMessage)
        assert msg.players == (PlayerInfo("Fox Main", "FOX#1"), None)

    def test_game_start_without_players(self):
        assert parse_message({"type": "game_start"}) == GameStartMessage(players=())

    def test_game_end(self):
        assert parse_message({"type": "game_end", "winnerPlayerIndex": 1}) == GameEndMessage(1)

    def test_game_end_non_int_winner(self):
        assert parse_message({"type": "game_end", "winnerPlayerIndex": "1"}) == GameEndMessage(None)

    def test_unknown_type(self):
        assert parse_message({"type": "frame"}) is None


async def _serve(lines: list[str]):
    async def handle(reader, writer):
        for line in lines:
            writer.write((line + "\n").encode())
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


class TestRelayEventStream:
    @pytest.mark.asyncio
    async def test_reads_until_disconnect(self):
        server, port = await _serve(
            [
                json.dumps({"type": "game_start", "players": [{"displayName": "A"}]}),
                "",
                "{not json",
                json.dumps({"type": "frame"}),
                json.dumps([1, 2]),
                json.dumps({"type": "game_end", "winnerPlayerIndex": 0}),
            ]
        )
        stream = RelayEventStream("127.0.0.1", port)
        try:
            await stream.open()
            assert stream.is_open
            messages = [m async for m in stream.events()]
        finally:
            await stream.close()
            server.close()
            await server.wait_closed()

        assert messages == [
            GameStartMessage(players=(PlayerInfo("A", None),)),
            GameEndMessage(winner_player_index=0),
        ]
        assert not stream.is_open

    @pytest.mark.asyncio
    async def test_events_before_open(self):
        stream = RelayEventStream()
        with pytest.raises(ConnectionError):
            async for _ in stream.events():
                pass

    @pytest.mark.asyncio
    async def test_close_when_not_open(self):
        stream = RelayEventStream()
        await stream.close()
        assert not stream.is_open

    @pytest.mark.asyncio
    async def test_open_refused(self):
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        stream = RelayEventStream("127.0.0.1", port)
        with pytest.raises(OSError):
            await stream.open()
