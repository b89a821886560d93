from __future__ import annotations


class StargramError(Exception):
    """Base class for failures that map onto an HTTP status."""

    status_code = 500
    public_message = "internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class ClientInputError(StargramError):
    status_code = 400
    public_message = "bad request"


class NotFoundError(StargramError):
    status_code = 404
    public_message = "not found"


class ConflictError(StargramError):
    status_code = 409
    public_message = "conflict"


class PayloadTooLargeError(StargramError):
    status_code = 413
    public_message = "payload too large"


class AuthenticationError(StargramError):
    status_code = 401
    public_message = "unauthorized"


class StorageError(StargramError):
    """Any persistence failure. Details are logged, never sent to clients."""

    status_code = 500
    public_message = "internal error"


class UploadTimeoutError(StargramError):
    status_code = 408
    public_message = "upload timed out"
