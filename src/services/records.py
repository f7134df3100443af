"""Record sinks - where rating changes are written after each match.

Both sinks compare the new rating with the last recorded one and only append
a row when it changed.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import date
from pathlib import Path
from typing import Protocol

import aiofiles
import httpx
import structlog

from src.core.errors import RecordError, RecordErrorKind

logger = structlog.get_logger()

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"


class RecordSink(Protocol):
    async def append_rating(self, value: float) -> bool:
        """Append ``value``; False when it equals the last recorded rating."""
        ...


@dataclass
class RatingRecord:
    """One ledger row."""

    rating: float
    change: float
    date: str = field(default_factory=lambda: date.today().isoformat())


def rating_change(rating: float, previous: float | None) -> float:
    return round(rating - (previous or 0.0), 1)


def _log_appended(record: RatingRecord) -> None:
    if record.change > 0:
        logger.info("rating_appended", rating=record.rating, change=record.change)
    else:
        logger.warning("rating_appended", rating=record.rating, change=record.change)


class LedgerRecordSink:
    """Append-only JSON-lines ledger of ratings on local disk."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def last_rating(self) -> float | None:
        if not self.path.exists():
            return None
        last: float | None = None
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        last = float(json.loads(line)["rating"])
                    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                        logger.warning("ledger_line_skipped", path=str(self.path))
        except OSError as e:
            raise _record_error_from_os(e, self.path) from e
        return last

    async def records(self) -> list[RatingRecord]:
        if not self.path.exists():
            return []
        result = []
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                async for line in f:
                    if line.strip():
                        try:
                            result.append(RatingRecord(**json.loads(line)))
                        except (json.JSONDecodeError, TypeError):
                            continue
        except OSError as e:
            raise _record_error_from_os(e, self.path) from e
        return result

    async def append_rating(self, value: float) -> bool:
        previous = await self.last_rating()
        change = rating_change(value, previous)
        logger.info("rating_change", change=change, previous=previous)

        if change == 0:
            logger.info("rating_unchanged", rating=value)
            return False

        record = RatingRecord(rating=value, change=change)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(json.dumps(asdict(record)) + "\n")
        except OSError as e:
            error = _record_error_from_os(e, self.path)
            logger.error("rating_append_failed", error=str(e), hint=error.hint)
            raise error from e

        _log_appended(record)
        return True


def _record_error_from_os(error: OSError, path: Path) -> RecordError:
    if isinstance(error, PermissionError):
        kind = RecordErrorKind.PERMISSION
    elif isinstance(error, FileNotFoundError):
        kind = RecordErrorKind.NOT_FOUND
    else:
        kind = RecordErrorKind.UNKNOWN
    return RecordError(f"Cannot write ledger {path}: {error}", kind=kind)


_STATUS_KINDS = {
    401: RecordErrorKind.AUTH,
    403: RecordErrorKind.PERMISSION,
    404: RecordErrorKind.NOT_FOUND,
    429: RecordErrorKind.RATE_LIMIT,
}


class SheetsRecordSink:
    """Google Sheets sink using the v4 REST API.

    Column A holds the date, B the rating and C the change. Authentication is
    a bearer access token supplied by the caller.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        access_token: str,
        sheet_name: str = "Sheet1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self._client = httpx.AsyncClient(
            base_url=f"{SHEETS_API_BASE}/{spreadsheet_id}",
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "SheetsRecordSink":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            kind = _STATUS_KINDS.get(status, RecordErrorKind.UNKNOWN)
            error = RecordError(f"Sheets API returned HTTP {status}", kind=kind)
            logger.error("sheets_request_failed", status=status, hint=error.hint)
            raise error from e
        except httpx.HTTPError as e:
            logger.error("sheets_request_failed", error=str(e))
            raise RecordError(f"Sheets API request failed: {e}") from e
        return response.json()

    async def rating_column(self) -> list[list[str]]:
        data = await self._request("GET", f"/values/{self.sheet_name}!B:B")
        return data.get("values", [])

    async def append_rating(self, value: float) -> bool:
        rows = await self.rating_column()
        previous = None
        if rows and rows[-1]:
            try:
                previous = float(rows[-1][0])
            except ValueError:
                previous = None
        change = rating_change(value, previous)
        logger.info("rating_change", change=change, previous=previous)

        if change == 0:
            logger.info("rating_unchanged", rating=value)
            return False

        record = RatingRecord(rating=value, change=change)
        next_row = len(rows) + 1
        target = f"{self.sheet_name}!A{next_row}:C{next_row}"
        logger.info("sheets_appending", range=target)
        await self._request(
            "POST",
            f"/values/{target}:append",
            params={"valueInputOption": "RAW"},
            json={"values": [[record.date, record.rating, record.change]]},
        )
        _log_appended(record)
        return True
