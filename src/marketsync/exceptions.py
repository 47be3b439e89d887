"""
Custom exceptions for the marketsync application.
"""

from typing import Optional


class MarketSyncException(Exception):
    """Base exception for all application-specific errors."""
    pass


class ConfigurationError(MarketSyncException):
    """Missing credentials or invalid configuration. Never retried automatically."""
    pass


class ConnectorError(MarketSyncException):
    """Error related to a marketplace connector."""
    pass


class MarketplaceAPIError(ConnectorError):
    """Exception raised for marketplace API errors."""

    def __init__(
        self,
        message: str,
        marketplace: Optional[str] = None,
        context: Optional[str] = None,
        status_code: Optional[int] = None,
        upstream_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.marketplace = marketplace
        self.context = context
        self.status_code = status_code
        self.upstream_message = upstream_message


class MarketplaceAuthError(MarketplaceAPIError):
    """Upstream rejected the credentials or the API scope (HTTP 401/403)."""
    pass


class RateLimitExceededError(MarketplaceAPIError):
    """Upstream kept throttling after all retry attempts were used."""
    pass


class UnsupportedOperationError(ConnectorError):
    """The marketplace does not offer the requested data."""
    pass


class NormalizationError(MarketSyncException):
    """Upstream payload is malformed and has no safe default."""
    pass


class NotFoundError(MarketSyncException):
    """Requested account, job or event does not exist."""
    pass


class JobStateError(MarketSyncException):
    """Operation is not allowed in the job's current state."""
    pass


class WebhookSignatureError(MarketSyncException):
    """Webhook signature is missing or does not match."""
    pass


class StorageError(MarketSyncException):
    """Error reading or writing the storage backend."""
    pass
