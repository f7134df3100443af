"""Services - rating source and record sinks."""

from src.services.rating import RatingClient
from src.services.records import LedgerRecordSink, RatingRecord, RecordSink, SheetsRecordSink

__all__ = ["RatingClient", "LedgerRecordSink", "RatingRecord", "RecordSink", "SheetsRecordSink"]
