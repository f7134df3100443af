"""Connectors - live game-event sources."""

from src.connectors.live import (
    GameEndMessage,
    GameEventStream,
    GameStartMessage,
    LiveSessionConnector,
    PlayerInfo,
)
from src.connectors.relay_stream import RelayEventStream

__all__ = [
    "GameEndMessage",
    "GameEventStream",
    "GameStartMessage",
    "LiveSessionConnector",
    "PlayerInfo",
    "RelayEventStream",
]
