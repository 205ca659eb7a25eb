"""
Notification Services
Public send entry point; routes through the configured dispatcher.
"""
import logging
from typing import Any, List

from django.db.models import Model
from django.utils.module_loading import import_string

from .conf import get_dispatcher_path
from .dispatch import Notifier
from .recipients import AnonymousRecipient, Notifiable

logger = logging.getLogger(__name__)


def get_dispatcher() -> Notifier:
    """Instantiate NOTIFICATION_DISPATCHER; read on every call."""
    return import_string(get_dispatcher_path())()


def _as_list(recipients) -> List[Any]:
    """One recipient, or any iterable of them (list, QuerySet, generator)."""
    if recipients is None:
        return []
    if isinstance(recipients, (str, bytes, Model, Notifiable)):
        return [recipients]
    try:
        iterator = iter(recipients)
    except TypeError:
        return [recipients]
    return list(iterator)


class NotificationService:
    """Send notifications to recipients or ad-hoc routes."""

    @staticmethod
    def send(recipients, notification) -> None:
        """
        Send a notification to one recipient or a batch.

        Args:
            recipients: A recipient, or any iterable of them
            notification: Notification instance
        """
        recipients = _as_list(recipients)
        if not recipients:
            logger.debug(f"No recipients for {notification!r}")
            return
        get_dispatcher().dispatch(notification, recipients)

    @staticmethod
    def route(channel: str, address: str) -> AnonymousRecipient:
        """Recipient for an address that has no account, e.g. a bare email."""
        return AnonymousRecipient().route(channel, address)
