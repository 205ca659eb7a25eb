"""
Rate Limit Exceptions
Custom exceptions for consistent error handling.
"""
from django.core.exceptions import ImproperlyConfigured


class RateLimitError(Exception):
    """Base exception for notification rate limit errors."""
    error_code = 'rate_limit_error'

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self):
        return {
            'error': self.error_code,
            'message': self.message,
            'details': self.details
        }


class ConfigurationError(RateLimitError, ImproperlyConfigured):
    """Raised when NOTIFICATION_RATE_LIMIT holds an invalid value."""
    error_code = 'configuration_error'

    def __init__(self, message: str, setting: str = None, value=None):
        details = {}
        if setting:
            details['setting'] = setting
            details['value'] = value
        super().__init__(message, details)


class CacheUnavailableError(RateLimitError):
    """The rate limit cache could not complete a claim."""
    error_code = 'cache_unavailable'

    def __init__(self, key: str, cause: Exception = None):
        super().__init__(
            message=f"Rate limit cache unavailable for {key}",
            details={'key': key, 'cause': str(cause) if cause else None}
        )


class ChannelNotFoundError(RateLimitError):
    """Notification asked for a channel that is not configured."""
    error_code = 'channel_not_found'

    def __init__(self, channel: str):
        super().__init__(
            message=f"No notification channel registered for '{channel}'",
            details={'channel': channel}
        )
