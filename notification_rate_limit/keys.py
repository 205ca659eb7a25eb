"""
Rate Limit Keys
Deterministic cache keys: prefix.type.recipient[.custom...][.fingerprint]
"""
import hashlib
from typing import Any, Iterable, Optional

from .conf import get_setting, resolve_option
from .recipients import recipient_key_parts, resolve_recipient_identifier

# Memcached caps keys at 250 bytes including Django's KEY_PREFIX and version
MAX_KEY_LENGTH = 200


def _fingerprint(payload: Any) -> str:
    """md5 of the payload's stable serialization."""
    if not hasattr(payload, 'to_stable_string'):
        raise TypeError(
            f"{type(payload).__name__} must implement to_stable_string() "
            "to be rate limited as a unique notification"
        )
    return hashlib.md5(payload.to_stable_string().encode()).hexdigest()


def _is_safe(key: str) -> bool:
    """Usable on every cache backend: short, no whitespace or control chars."""
    return len(key) <= MAX_KEY_LENGTH and not any(ord(c) < 33 or ord(c) == 127 for c in key)


def _safe_key(key: str, prefix: str, type_name: str) -> str:
    if _is_safe(key):
        return key
    digest = hashlib.md5(key.encode()).hexdigest()
    hashed = f"{prefix}.{type_name}.{digest}".lower()
    return hashed if _is_safe(hashed) else digest


def build_rate_limit_key(
    type_name: str,
    recipient: Any,
    custom_parts: Iterable[str] = (),
    include_uniqueness_fingerprint: bool = False,
    payload: Any = None,
    prefix: Optional[str] = None
) -> str:
    """
    Build the cache key for one (notification type, recipient) pair.

    Key: {prefix}.{type_name}.{recipient_id}[.{custom}...][.{fingerprint}],
    lower-cased. Keys too long or containing whitespace/control characters
    collapse to {prefix}.{type_name}.{md5 of the full key}.
    """
    if not type_name:
        raise ValueError("Notification type name must not be empty")

    if prefix is None:
        prefix = get_setting('KEY_PREFIX')

    parts = [prefix, type_name, resolve_recipient_identifier(recipient)]
    parts.extend(str(part) for part in custom_parts)
    if include_uniqueness_fingerprint:
        parts.append(_fingerprint(payload))

    return _safe_key('.'.join(parts).lower(), prefix, type_name)


def rate_limit_key_for(notification, recipient) -> str:
    """Key for a notification instance, honouring its overrides."""
    custom_parts = recipient_key_parts(recipient)
    if hasattr(notification, 'rate_limit_custom_cache_key_parts'):
        custom_parts += [str(p) for p in notification.rate_limit_custom_cache_key_parts() or []]

    return build_rate_limit_key(
        type_name=_type_name(notification),
        recipient=recipient,
        custom_parts=custom_parts,
        include_uniqueness_fingerprint=resolve_option(
            notification, 'should_rate_limit_unique_notifications'
        ),
        payload=notification,
    )


def _type_name(notification) -> str:
    if hasattr(notification, 'type_name'):
        return notification.type_name()
    return type(notification).__name__
