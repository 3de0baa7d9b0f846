"""Exception hierarchy for the monitoring engine.

Errors are grouped by the propagation policy they follow:

- Store errors: transient failures are logged and swallowed in the detection
  path, permission failures always reach lifecycle callers.
- Detection errors: an unavailable detection skips a tick, a model that cannot
  be loaded prevents the scheduler from starting.
- Session errors: surfaced to the caller of the session lifecycle manager.
"""

from __future__ import annotations

from typing import Any


class CareWatchError(Exception):
    """Base exception for all application-specific errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Store Errors
class StoreError(CareWatchError):
    default_message = "Record store operation failed"
    default_error_code = "STORE_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        collection: str | None = None,
        record_id: str | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.collection = collection
        self.record_id = record_id
        self.operation = operation
        details = kwargs.pop("details", {}) or {}
        if collection:
            details["collection"] = collection
        if record_id:
            details["record_id"] = record_id
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details, **kwargs)


class StoreUnavailableError(StoreError):
    """Transient failure: the write may be retried by the store client."""

    default_message = "Record store temporarily unavailable"
    default_error_code = "STORE_UNAVAILABLE"


class StorePermissionError(StoreError):
    """The caller is not allowed to perform the requested change."""

    default_message = "Permission denied by record store"
    default_error_code = "STORE_PERMISSION_DENIED"


class RecordNotFoundError(StoreError):
    default_message = "Record not found"
    default_error_code = "RECORD_NOT_FOUND"

    def __init__(self, collection: str, record_id: str, message: str | None = None) -> None:
        if message is None:
            message = f"Record '{record_id}' not found in '{collection}'"
        super().__init__(message, collection=collection, record_id=record_id)


# Detection Errors
class DetectionError(CareWatchError):
    default_message = "Pose detection failed"
    default_error_code = "DETECTION_ERROR"


class DetectionUnavailableError(DetectionError):
    """Frame not ready, model not loaded, or a transient inference failure."""

    default_message = "Pose detection unavailable"
    default_error_code = "DETECTION_UNAVAILABLE"


class ModelNotLoadedError(DetectionError):
    default_message = "Pose estimation model could not be loaded"
    default_error_code = "MODEL_NOT_LOADED"


# Session Errors
class SessionError(CareWatchError):
    default_message = "Session operation failed"
    default_error_code = "SESSION_ERROR"


class SessionNotFoundError(SessionError):
    default_error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, message: str | None = None) -> None:
        if message is None:
            message = f"Stream session with id '{session_id}' not found"
        super().__init__(message, details={"session_id": session_id})
