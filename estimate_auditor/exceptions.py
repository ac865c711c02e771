"""
Custom exception hierarchy for the estimate audit pipeline.

Most failures in this system are NOT exceptions: an unreadable photo or a
malformed model reply degrades to null facts and surfaces as
"requires confirmation" in the result. Exceptions are reserved for the
cases where a caller must not receive a result at all.
"""

from __future__ import annotations


class AuditError(Exception):
    """Base exception for all audit pipeline failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class ExtractionError(AuditError):
    """A model reply could not be turned into facts.

    Raised inside the extractor and always caught at its boundary.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("EXTRACTION_FAILED", message, details)


class DiagnosisTimeoutError(AuditError):
    """The request deadline passed before reconciliation finished."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("DIAGNOSIS_TIMEOUT", message, details)
