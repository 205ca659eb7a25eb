"""
Notification Channels
Delivery backends looked up by name from NOTIFICATION_CHANNELS.
"""
import logging

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


class BaseChannel:
    """A delivery channel. send() returns a backend-specific response."""
    name = None

    def send(self, recipient, notification):
        raise NotImplementedError


class MailChannel(BaseChannel):
    """Deliver notification.to_mail() through django.core.mail."""
    name = 'mail'

    def send(self, recipient, notification):
        address = recipient.route_notification_for(self.name)
        if not address:
            logger.debug(f"No mail route for {recipient!r}, skipping {notification!r}")
            return None

        message = notification.to_mail(recipient)
        sent = send_mail(
            subject=message['subject'],
            message=message.get('message', ''),
            from_email=message.get('from_email', settings.DEFAULT_FROM_EMAIL),
            recipient_list=[address],
            html_message=message.get('html_message'),
            fail_silently=False
        )
        logger.info(f"Mail sent: {notification!r} -> {address}")
        return sent
