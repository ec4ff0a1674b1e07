"""Exceptions raised across the registration sync service."""

from typing import Any, Dict, List, Optional


class RegistrationSyncError(Exception):
    """Base class for all registration sync errors."""


class StoreUnavailableError(RegistrationSyncError):
    """Raised when the key/value store cannot be reached or refuses a write."""


class UpstreamError(RegistrationSyncError):
    """Raised when a call to the upstream platform fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class RateLimitedError(UpstreamError):
    """Raised when the upstream rejects a request because of rate limiting."""

    def __init__(
        self,
        message: str = "Upstream rate limit exceeded",
        retry_after: Optional[int] = None,
        status: Optional[int] = 429
    ):
        self.retry_after = retry_after
        msg = f"{message}. Retry after {retry_after}s" if retry_after else message
        super().__init__(msg, status=status)


class UpstreamValidationError(UpstreamError):
    """Raised when the upstream rejects a payload as invalid (not retryable)."""


class ListingTruncatedError(UpstreamError):
    """Raised when a listing hit the per-run record ceiling; ``records`` holds the partial result."""

    def __init__(self, report: str, ceiling: int, records: List[Dict[str, Any]]):
        self.report = report
        self.ceiling = ceiling
        self.records = records
        super().__init__(f"Listing {report} truncated at {ceiling} records")


class WebhookValidationError(RegistrationSyncError):
    """Raised when a webhook message is malformed or lacks a correlation field."""


class RecordNormalizationError(RegistrationSyncError):
    """Raised when an upstream payload cannot be mapped to a Record."""


class BufferConfigurationError(RegistrationSyncError):
    """Raised by a submit function for non-retryable setup failures."""
