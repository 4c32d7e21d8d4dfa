"""Error taxonomy for the upload engine.

Every error carries an HTTP status and a message that is safe to show the
client: no stack traces and no server-side paths.
"""

from typing import Any, Dict


class UploadError(Exception):
    status_code = 403

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class AuthError(UploadError):
    """Field disabled or read-only, or the caller may not upload."""

    status_code = 403


class CsrfError(UploadError):
    status_code = 400


class BadRequestError(UploadError):
    status_code = 400


class SizeMismatchError(UploadError):
    status_code = 400


class ChunkOverflowError(UploadError):
    """The artifact grew past the declared total size."""

    status_code = 400


class OffsetMismatchError(UploadError):
    status_code = 409

    def __init__(self, expected_offset: int, received_offset: int):
        super().__init__(
            f"Offset mismatch: expected {expected_offset}, got {received_offset}"
        )
        self.expected_offset = expected_offset
        self.received_offset = received_offset

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "expectedOffset": self.expected_offset}


class SessionBusyError(UploadError):
    status_code = 409

    def __init__(self, message: str = "Another chunk for this upload is in progress"):
        super().__init__(message)


class ChunkIOError(UploadError):
    status_code = 500


class FinalizationError(UploadError):
    status_code = 500


class UploadValidationError(UploadError):
    status_code = 403


class StorageError(UploadError):
    status_code = 500
