"""
Testing Helpers
A recording dispatcher to use as the gate's delegate in tests.
"""
from typing import Any, List, Sequence, Tuple

from .dispatch import Notifier
from .recipients import resolve_recipient_identifier


class RecordingDispatcher(Notifier):
    """Records every dispatch instead of delivering."""

    def __init__(self):
        self.dispatched: List[Tuple[Any, List[Any]]] = []

    def dispatch(self, notification, recipients: Sequence[Any]) -> None:
        self.dispatched.append((notification, list(recipients)))

    def sent(self, notification_class=None) -> List[Tuple[Any, Any]]:
        """(notification, recipient) pairs, optionally filtered by class."""
        return [
            (notification, recipient)
            for notification, recipients in self.dispatched
            for recipient in recipients
            if notification_class is None or isinstance(notification, notification_class)
        ]

    def sent_to(self, recipient, notification_class=None) -> bool:
        identifier = resolve_recipient_identifier(recipient)
        return any(
            resolve_recipient_identifier(r) == identifier
            for _, r in self.sent(notification_class)
        )

    def reset(self):
        self.dispatched = []
