"""
Error taxonomy for the scan service.

Every request-level failure is a ScanError subclass carrying the HTTP status,
a short error title and a user-facing message. The API layer renders them all
with a single exception handler.
"""

from typing import Optional


class ScanError(Exception):
    """Base class for failures that end a scan request."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, scan_id: Optional[str] = None):
        self.message = message or self.error
        self.scan_id = scan_id
        super().__init__(self.message)

    def public_message(self, expose_errors: bool) -> str:
        return self.message


class UploadValidationError(ScanError):
    """Wrong file type, wrong file count or a missing upload."""

    status_code = 400

    def __init__(self, error: str, message: str, scan_id: Optional[str] = None):
        self.error = error
        super().__init__(message, scan_id=scan_id)


class PayloadTooLargeError(ScanError):
    status_code = 413
    error = "File too large"

    def __init__(self, max_mb: int):
        super().__init__(f"APK file must be smaller than {max_mb}MB")


class RateLimitExceededError(ScanError):
    status_code = 429
    error = "Too many requests"

    def __init__(self, retry_after_ms: int):
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Rate limit exceeded. Try again in {retry_after_ms} ms.")


class ServiceNotReadyError(ScanError):
    status_code = 503
    error = "Services not ready"

    def __init__(self):
        super().__init__("Server is still initializing. Please try again in a moment.")


class ScanFailedError(ScanError):
    """A mandatory analysis stage failed; the original error is kept as `cause`."""

    status_code = 500
    error = "Scan failed"

    def __init__(self, scan_id: str, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__, scan_id=scan_id)

    def public_message(self, expose_errors: bool) -> str:
        return self.message if expose_errors else "Internal server error"


class MLDetectionError(Exception):
    """Raised by ML classifiers. Never surfaces as a request failure."""
