"""
Notification Rate Limit
Per-recipient, per-notification-type throttling for Django notifications.
"""
