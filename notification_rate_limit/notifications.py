"""
Rate Limited Notifications
Base class for notifications that pass through the rate limit gate.
"""
import json
from typing import Any, Dict, List, Optional


class RateLimitedNotification:
    """
    Base notification.

    Subclasses implement to_mail() and may narrow via(). The class-level
    attributes below override NOTIFICATION_RATE_LIMIT for this notification
    type when set to anything other than None.
    """
    max_attempts: Optional[int] = None
    rate_limit_seconds: Optional[float] = None
    log_skipped_notifications: Optional[bool] = None
    should_rate_limit_unique_notifications: Optional[bool] = None

    def via(self, recipient) -> List[str]:
        return ['mail']

    def to_mail(self, recipient) -> Dict[str, Any]:
        return {
            'subject': self.type_name(),
            'message': self.type_name(),
        }

    @classmethod
    def type_name(cls) -> str:
        return cls.__name__

    def rate_limit_custom_cache_key_parts(self) -> List[str]:
        return []

    def to_stable_string(self) -> str:
        """Deterministic serialization used for unique-notification keys."""
        payload = {
            'type': self.type_name(),
            'data': {k: v for k, v in vars(self).items() if not k.startswith('_')},
        }
        return json.dumps(payload, sort_keys=True, default=str)

    def __repr__(self):
        return f"<{self.type_name()}>"
