"""
Settings for running the notification_rate_limit test suite.
"""
import os
import tempfile

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'notification-rate-limit-tests')

DEBUG = False

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'notification_rate_limit',
]

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'notification-rate-limit',
    },
    'files': {
        'BACKEND': 'django.core.cache.backends.filebased.FileBasedCache',
        'LOCATION': os.path.join(tempfile.gettempdir(), 'notification-rate-limit-tests'),
    },
}

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
DEFAULT_FROM_EMAIL = 'noreply@example.com'

USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

NOTIFICATION_DISPATCHER = 'notification_rate_limit.dispatch.RateLimitDispatcher'

NOTIFICATION_RATE_LIMIT = {
    'KEY_PREFIX': 'app',
    'RATE_LIMIT_SECONDS': 10,
    'SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS': False,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'notification_rate_limit': {
            'handlers': ['console'],
            'level': os.environ.get('NOTIFICATION_RATE_LIMIT_LOG_LEVEL', 'WARNING'),
        },
    },
}
