"""Exception taxonomy for the session tracker.

Fatal errors stop the process at startup, strategy-level errors make the
arbiter fall back to the next detection strategy, and transient errors are
logged and retried on the next natural cycle.
"""

from enum import Enum


class SlippiSheetError(Exception):
    """Base class for all SlippiSheet errors."""


# Fatal / startup


class ConfigurationError(SlippiSheetError):
    """Required configuration is missing or invalid."""


class DirectoryCreateFailed(SlippiSheetError):
    """The replay directory for the current month could not be created."""


class NoStrategyAvailable(SlippiSheetError):
    """Neither the live stream nor any filesystem strategy could be started."""


# Strategy-level


class ConnectionFailed(SlippiSheetError):
    """The live stream handshake did not complete."""


class ConnectionLost(SlippiSheetError):
    """An established live stream errored or disconnected."""


class WatchUnavailable(SlippiSheetError):
    """A directory watch could not be scheduled."""


# Transient


class ApiError(SlippiSheetError):
    """The rating API returned an error or a malformed response."""


class RecordErrorKind(str, Enum):
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


RECORD_ERROR_HINTS: dict[RecordErrorKind, str] = {
    RecordErrorKind.PERMISSION: "Make sure your account has permission to edit the record",
    RecordErrorKind.NOT_FOUND: "Check that your spreadsheet ID or ledger path is correct",
    RecordErrorKind.AUTH: "There may be an issue with your credentials or access token",
    RecordErrorKind.RATE_LIMIT: "You might be hitting API rate limits; wait before retrying",
    RecordErrorKind.UNKNOWN: "",
}


class RecordError(SlippiSheetError):
    """Appending a rating to the record sink failed."""

    def __init__(self, message: str, kind: RecordErrorKind = RecordErrorKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind

    @property
    def hint(self) -> str:
        return RECORD_ERROR_HINTS[self.kind]
