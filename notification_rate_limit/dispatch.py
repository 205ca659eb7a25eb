"""
Notification Dispatch
The standard channel dispatcher and the rate limit gate placed in front of it.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Sequence

from django.utils.module_loading import import_string

from .conf import NOTICE, get_channels, get_setting, resolve_option
from .exceptions import CacheUnavailableError, ChannelNotFoundError
from .keys import rate_limit_key_for
from .limiter import RateLimiter
from .notifications import RateLimitedNotification
from .recipients import resolve_recipient_identifier
from .signals import (
    notification_rate_limit_reached, notification_sending, notification_sent
)

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Anything that can dispatch a notification to a batch of recipients."""

    @abstractmethod
    def dispatch(self, notification, recipients: Sequence[Any]) -> None:
        ...


# =============================================================================
# Channel Dispatcher
# =============================================================================

class ChannelDispatcher(Notifier):
    """Send each recipient the notification on every channel it asks for."""

    def dispatch(self, notification, recipients: Sequence[Any]) -> None:
        for recipient in recipients:
            for channel_name in notification.via(recipient):
                self.send_to_channel(notification, recipient, channel_name)

    def send_to_channel(self, notification, recipient, channel_name: str):
        channel = self.channel(channel_name)
        sender = type(notification)

        notification_sending.send(
            sender=sender, notification=notification,
            recipient=recipient, channel=channel_name
        )
        response = channel.send(recipient, notification)
        notification_sent.send(
            sender=sender, notification=notification,
            recipient=recipient, channel=channel_name, response=response
        )
        return response

    def channel(self, name: str):
        path = get_channels().get(name)
        if not path:
            raise ChannelNotFoundError(name)
        return import_string(path)()


# =============================================================================
# Rate Limit Gate
# =============================================================================

class RateLimitDispatcher(Notifier):
    """
    Rate limit gate in front of a delegate dispatcher.

    Each recipient is checked in order; the delegate receives only the
    recipients that claimed a slot, and is not called when none did.
    Claims are committed before delivery, so a failed delivery still
    uses up the window. Suppression never raises: it fires
    notification_rate_limit_reached and optionally logs at NOTICE.
    """

    def __init__(self, delegate: Notifier = None, limiter: RateLimiter = None):
        self.delegate = delegate or ChannelDispatcher()
        self.limiter = limiter or RateLimiter()

    def dispatch(self, notification, recipients: Sequence[Any]) -> None:
        if not isinstance(notification, RateLimitedNotification):
            self.delegate.dispatch(notification, recipients)
            return

        permitted = [r for r in recipients if self.allows(notification, r)]
        if permitted:
            self.delegate.dispatch(notification, permitted)

    def allows(self, notification, recipient) -> bool:
        key = rate_limit_key_for(notification, recipient)
        max_attempts = resolve_option(notification, 'max_attempts')
        decay_seconds = resolve_option(notification, 'rate_limit_seconds')

        try:
            allowed = self.limiter.attempt(key, max_attempts, decay_seconds)
        except CacheUnavailableError as e:
            allowed = get_setting('FAIL_OPEN')
            logger.warning(
                f"Rate limit cache unavailable, {'sending' if allowed else 'skipping'} "
                f"{notification!r}: {e.details.get('cause')}",
                extra={'key': key}
            )

        if not allowed:
            self.skip(notification, recipient, key)
        return allowed

    def skip(self, notification, recipient, key: str):
        notification_rate_limit_reached.send(
            sender=type(notification), notification=notification,
            recipient=recipient, key=key
        )

        if resolve_option(notification, 'log_skipped_notifications'):
            logger.log(
                NOTICE,
                f"Skipping sending notification with key {key}. Rate limit reached.",
                extra={
                    'key': key,
                    'recipient': resolve_recipient_identifier(recipient),
                    'notification': notification.type_name(),
                }
            )

    def suppressed(self, notification, recipients: Sequence[Any]) -> List[Any]:
        """Recipients currently throttled for notification, without claiming."""
        max_attempts = resolve_option(notification, 'max_attempts')
        return [
            r for r in recipients
            if self.limiter.too_many_attempts(rate_limit_key_for(notification, r), max_attempts)
        ]
