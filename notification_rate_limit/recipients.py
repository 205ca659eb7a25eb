"""
Notification Recipients
Identifier resolution for rate limit keys and the routed (anonymous) recipient.
"""
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class RateLimitIdentifiable(Protocol):
    """Recipient supplying its own identifier for rate limit keys."""

    def rate_limit_notifiable_key(self) -> Optional[str]:
        ...


@runtime_checkable
class RateLimitKeyParts(Protocol):
    """Recipient adding extra parts (tenant, account, ...) to its keys."""

    def rate_limit_custom_key_parts(self) -> List[str]:
        ...


def _serialize_recipient(recipient: Any) -> str:
    if hasattr(recipient, 'to_dict'):
        data = recipient.to_dict()
    elif hasattr(recipient, '__dict__'):
        data = {k: v for k, v in vars(recipient).items() if not k.startswith('_')}
    else:
        data = recipient
    return json.dumps(data, sort_keys=True, default=str)


def resolve_recipient_identifier(recipient: Any) -> str:
    """
    Resolve the identifier a recipient is rate limited under.

    Order: rate_limit_notifiable_key(), pk, id, then an md5 of the
    recipient's JSON representation. Never raises.
    """
    key = None

    if isinstance(recipient, RateLimitIdentifiable):
        key = recipient.rate_limit_notifiable_key()

    if not key:
        key = getattr(recipient, 'pk', None)

    if not key:
        key = getattr(recipient, 'id', None)

    if not key:
        key = hashlib.md5(_serialize_recipient(recipient).encode()).hexdigest()
        logger.debug(f"Recipient has no key, using content hash {key}")

    return str(key)


def recipient_key_parts(recipient: Any) -> List[str]:
    if isinstance(recipient, RateLimitKeyParts):
        return [str(part) for part in recipient.rate_limit_custom_key_parts() or []]
    return []


# =============================================================================
# Recipients
# =============================================================================

class Notifiable:
    """
    Mixin for anything that receives notifications (typically a User model).

    Provides notify() and per-channel routing; mail routes to ``email``.
    """

    def notify(self, notification):
        from .services import NotificationService
        NotificationService.send([self], notification)

    def route_notification_for(self, channel: str) -> Optional[str]:
        if channel == 'mail':
            return getattr(self, 'email', None)
        return None


class AnonymousRecipient(Notifiable):
    """On-demand recipient built from channel routes, e.g. a bare email address."""

    def __init__(self, routes: Dict[str, str] = None):
        self.routes = dict(routes or {})

    def route(self, channel: str, address: str) -> 'AnonymousRecipient':
        self.routes[channel] = address
        return self

    def route_notification_for(self, channel: str) -> Optional[str]:
        return self.routes.get(channel)

    def to_dict(self) -> Dict[str, Any]:
        return {'routes': self.routes}

    def __repr__(self):
        return f"AnonymousRecipient({self.routes!r})"
