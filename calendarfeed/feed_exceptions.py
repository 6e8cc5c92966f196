"""Calendar feed exceptions for error handling."""

from typing import Optional


class FeedError(Exception):
    """Base exception for calendar feed errors."""

    def __init__(self, message: str, source_url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source_url = source_url


class FeedTransportError(FeedError):
    """Exception raised for DNS, socket or connection failures."""


class FeedTimeoutError(FeedError):
    """Exception raised when a feed request exceeds its timeout."""


class FeedHttpStatusError(FeedError):
    """Exception raised when the server answers outside the 2xx/3xx range."""

    def __init__(self, message: str, status_code: int, source_url: Optional[str] = None):
        super().__init__(message, source_url)
        self.status_code = status_code


class FeedParseError(FeedError):
    """Exception raised when raw text cannot be interpreted as calendar data."""


class FeedNormalizeError(FeedError):
    """Exception raised for a malformed component in otherwise valid calendar data."""
