from django.apps import AppConfig


class NotificationRateLimitConfig(AppConfig):
    name = 'notification_rate_limit'
    verbose_name = 'Notification Rate Limit'

    def ready(self):
        from .conf import validate_settings

        # Fail at startup on malformed NOTIFICATION_RATE_LIMIT
        validate_settings()
