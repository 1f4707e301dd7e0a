"""MediaVault error types.

Every error carries the HTTP status it maps to and a JSON payload of the form
``{"error": <reason>, ...diagnostics}``.
"""
from typing import Any, Dict, Optional


class MediaVaultError(Exception):
    """Base class for errors reported to API callers."""

    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def payload(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class BadRequest(MediaVaultError):
    status_code = 400
    default_message = "Bad request"


class Unauthorized(MediaVaultError):
    status_code = 401
    default_message = "Unauthorized request"


class Forbidden(MediaVaultError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(MediaVaultError):
    status_code = 404
    default_message = "Not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class FileNotFound(NotFound):
    default_message = "File not found"


class PaymentNotFound(NotFound):
    default_message = "Payment not found"


class FileNameTaken(MediaVaultError):
    status_code = 409
    default_message = "A file with this name already exists"


class QuotaExceeded(MediaVaultError):
    """Upload larger than the remaining storage of the owner's plan."""

    status_code = 413
    default_message = "File size exceeds remaining storage capacity"

    def __init__(self, remaining: int, attempted: int):
        super().__init__(remainingStorage=remaining, fileSize=attempted)
        self.remaining = remaining
        self.attempted = attempted


class UnsupportedType(MediaVaultError):
    status_code = 415
    default_message = "Invalid file type"


class StorageServerError(MediaVaultError):
    """The storage server could not be reached or answered with an error."""

    status_code = 502
    default_message = "Storage server request failed"


class UploadFailed(StorageServerError):
    default_message = "Failed to transfer file to storage server"


class DeletionFailed(StorageServerError):
    default_message = "Failed to process file deletion"


class RenameFailed(StorageServerError):
    default_message = "Failed to update file name"
