"""
Rate Limit Configuration
Settings are read from django.conf.settings on every access so runtime
changes (override_settings, reloaded config) apply on the next dispatch.
"""
import logging
from numbers import Real
from typing import Any, Dict

from django.conf import settings

from .exceptions import ConfigurationError

# Between INFO (20) and WARNING (30), matching syslog's "notice".
NOTICE = 25
logging.addLevelName(NOTICE, 'NOTICE')

SETTINGS_NAME = 'NOTIFICATION_RATE_LIMIT'

DEFAULTS = {
    'KEY_PREFIX': 'notification-rate-limit',
    'MAX_ATTEMPTS': 1,
    'RATE_LIMIT_SECONDS': 60,
    'LOG_SKIPPED_NOTIFICATIONS': True,
    'SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS': True,
    'CACHE_ALIAS': 'default',
    'FAIL_OPEN': True,
}

DEFAULT_DISPATCHER = 'notification_rate_limit.dispatch.ChannelDispatcher'

DEFAULT_CHANNELS = {
    'mail': 'notification_rate_limit.channels.MailChannel',
}

# Notification attribute -> setting it overrides
OVERRIDABLE = {
    'max_attempts': 'MAX_ATTEMPTS',
    'rate_limit_seconds': 'RATE_LIMIT_SECONDS',
    'log_skipped_notifications': 'LOG_SKIPPED_NOTIFICATIONS',
    'should_rate_limit_unique_notifications': 'SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS',
}


def get_settings() -> Dict[str, Any]:
    """Merged rate limit settings, defaults first."""
    user_settings = getattr(settings, SETTINGS_NAME, None) or {}
    if not isinstance(user_settings, dict):
        raise ConfigurationError(
            f"{SETTINGS_NAME} must be a dict",
            setting=SETTINGS_NAME, value=user_settings
        )
    unknown = set(user_settings) - set(DEFAULTS)
    if unknown:
        raise ConfigurationError(
            f"Unknown {SETTINGS_NAME} option(s): {', '.join(sorted(unknown))}",
            setting=SETTINGS_NAME, value=sorted(unknown)
        )
    return {**DEFAULTS, **user_settings}


def get_setting(name: str) -> Any:
    value = get_settings()[name]
    validate_setting(name, value)
    return value


def get_dispatcher_path() -> str:
    return getattr(settings, 'NOTIFICATION_DISPATCHER', None) or DEFAULT_DISPATCHER


def get_channels() -> Dict[str, str]:
    return {**DEFAULT_CHANNELS, **(getattr(settings, 'NOTIFICATION_CHANNELS', None) or {})}


# =============================================================================
# Validation
# =============================================================================

def _is_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def validate_setting(name: str, value: Any):
    """Raise ConfigurationError if a single option is malformed."""
    if name == 'KEY_PREFIX':
        if not isinstance(value, str):
            raise ConfigurationError(
                "KEY_PREFIX must be a string", setting=name, value=value
            )
    elif name == 'MAX_ATTEMPTS':
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigurationError(
                "MAX_ATTEMPTS must be an integer >= 1", setting=name, value=value
            )
    elif name == 'RATE_LIMIT_SECONDS':
        if not _is_number(value) or value <= 0:
            raise ConfigurationError(
                "RATE_LIMIT_SECONDS must be a positive number", setting=name, value=value
            )
    elif name in ('LOG_SKIPPED_NOTIFICATIONS', 'SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS', 'FAIL_OPEN'):
        if not isinstance(value, bool):
            raise ConfigurationError(
                f"{name} must be a boolean", setting=name, value=value
            )
    elif name == 'CACHE_ALIAS':
        if value not in settings.CACHES:
            raise ConfigurationError(
                f"CACHE_ALIAS '{value}' is not defined in CACHES", setting=name, value=value
            )


def validate_settings():
    """Validate every option. Called at startup and usable from checks."""
    for name, value in get_settings().items():
        validate_setting(name, value)


def resolve_option(notification, attribute: str) -> Any:
    """
    Per-notification override, falling back to the global setting.

    A notification sets e.g. ``rate_limit_seconds = 300`` to widen its own
    window; ``None`` means "use the setting".
    """
    setting_name = OVERRIDABLE[attribute]
    value = getattr(notification, attribute, None)
    if value is None:
        return get_setting(setting_name)
    validate_setting(setting_name, value)
    return value
