"""
Error Taxonomy
==============
Exceptions raised by the quiz bank engine.

Every error carries a stable machine-readable ``kind`` and the HTTP status
the API layer maps it to. Messages are operator-facing and never include
internal stack detail.

    ValidationError          400  malformed/missing fields, nothing written
    NotFoundError            404  referenced id absent
    ConflictError            409  duplicate taxonomy name
    AssetUploadError         502  image upload failed, write aborted
    BackendUnavailableError  503  document or object store unreachable
"""

from __future__ import annotations

from typing import Optional


class QuizBankError(Exception):
    """Base class for all engine errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict:
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = list(self.details)
        return payload


class ValidationError(QuizBankError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(QuizBankError):
    kind = "not_found"
    status_code = 404


class ConflictError(QuizBankError):
    kind = "conflict"
    status_code = 409


class AssetUploadError(QuizBankError):
    kind = "asset_upload_failed"
    status_code = 502


class BackendUnavailableError(QuizBankError):
    kind = "backend_unavailable"
    status_code = 503
