from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class HttpError(RuntimeError):
    """Raised when the remote API answers with a non-2xx status."""

    def __init__(
        self,
        status: int,
        message: str,
        *,
        url: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status = int(status)
        self.message = message
        self.url = url
        self.retry_after = retry_after

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.message}"


class AuthRequiredError(RuntimeError):
    """Raised when an auth-only endpoint is called without a configured token."""


class ApiResponseError(RuntimeError):
    """Raised when a successful response body does not have the expected shape."""


class StorageError(RuntimeError):
    """Raised when reading or writing the SQLite archive fails."""


class ExportError(RuntimeError):
    """Raised when writing an export file fails."""
