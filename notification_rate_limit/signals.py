"""
Notification Signals
Sent with the notification class as sender.
"""
from django.dispatch import Signal

# kwargs: notification, recipient, channel
notification_sending = Signal()

# kwargs: notification, recipient, channel, response
notification_sent = Signal()

# kwargs: notification, recipient, key
notification_rate_limit_reached = Signal()
