"""
Error taxonomy of the sync engine.

FatalSyncError subclasses abort a whole run and reach the caller.
RecordError subclasses only drop the offending record; the run continues and the
record is retried on a later run.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class FatalSyncError(SyncError):
    pass


class WatermarkError(FatalSyncError):
    pass


class ExtractionError(FatalSyncError):
    pass


class DecodeError(FatalSyncError):
    def __init__(self, message: str, *, legacy_id: str | None = None, entry: str | None = None) -> None:
        super().__init__(message)
        self.legacy_id = legacy_id
        self.entry = entry


class SyncAlreadyRunning(SyncError):
    pass


class RecordError(SyncError):
    def __init__(self, message: str, *, legacy_id: str | None = None) -> None:
        super().__init__(message)
        self.legacy_id = legacy_id


class CrossReferenceError(RecordError):
    pass


class LineItemValueError(RecordError):
    pass


class ReconcileError(RecordError):
    pass


class PaymentMethodError(RecordError):
    pass


class InsertError(RecordError):
    pass


class RecordCancelled(RecordError):
    pass
