"""Custom exceptions for the ResilienceHub service."""


class HubException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Service error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(HubException):
    """Raised when a client has used up its admission budget.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, retry_after: int, message: str = "Too many requests"):
        self.retry_after = retry_after
        super().__init__(message)


class AuthenticationError(HubException):
    """Raised when a request lacks a valid identity or service token.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401

    def __init__(self, detail: str = "Authentication required"):
        self.detail = detail
        super().__init__(detail)


class ChannelError(HubException):
    """Base class for realtime notification channel failures."""


class ChannelNotOpenError(ChannelError):
    """Raised when sending on a channel that is not in the open state."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Cannot send message: channel is {state}")


class MessageParseError(ValueError):
    """Raised when a realtime frame is not a JSON object with a ``type``."""
