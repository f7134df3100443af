"""Core module - session boundary detection."""

from src.core.arbiter import DetectionArbiter, Strategy
from src.core.completion import SessionCompletionTrigger
from src.core.dual_watch import DualWatchFileMonitor
from src.core.events import (
    ActiveSession,
    EndReason,
    SessionChannel,
    SessionEnded,
    SessionStarted,
)
from src.core.poll_monitor import FilesystemPollMonitor
from src.core.session_dir import resolve_session_directory

__all__ = [
    "ActiveSession",
    "DetectionArbiter",
    "DualWatchFileMonitor",
    "EndReason",
    "FilesystemPollMonitor",
    "SessionChannel",
    "SessionCompletionTrigger",
    "SessionEnded",
    "SessionStarted",
    "Strategy",
    "resolve_session_directory",
]
