"""
Rate Limit Key, Limiter and Configuration Tests
"""
import threading
import time
from unittest.mock import MagicMock, PropertyMock, patch

from django.apps import apps
from django.contrib.auth import get_user_model
from django.core.cache import cache, caches
from django.core.cache.backends.base import InvalidCacheKey
from django.test import TestCase, override_settings

from .conf import NOTICE, get_settings, resolve_option, validate_settings
from .exceptions import CacheUnavailableError, ConfigurationError
from .keys import MAX_KEY_LENGTH, build_rate_limit_key, rate_limit_key_for
from .limiter import RateLimiter
from .recipients import AnonymousRecipient, resolve_recipient_identifier
from .tests import (
    InvoiceNotification, TenantUser, TestNotification, User,
    UserWithCustomRateLimitKey
)


# =============================================================================
# 1. Key Builder Tests
# =============================================================================

class KeyBuilderTests(TestCase):
    """Key format, determinism and distinctness."""

    def setUp(self):
        self.user = User(42, 'Ada', 'ada@example.com')
        self.other_user = User(43, 'Grace', 'grace@example.com')

    def test_key_format(self):
        """prefix.type.id, lower-cased."""
        key = build_rate_limit_key('TestNotification', self.user)
        self.assertEqual(key, 'app.testnotification.42')

    def test_key_is_deterministic(self):
        """Same inputs, same key."""
        first = build_rate_limit_key('TestNotification', self.user, ['Acme'])
        second = build_rate_limit_key('TestNotification', self.user, ['Acme'])
        self.assertEqual(first, second)

    def test_distinct_recipients_distinct_keys(self):
        """Different identifiers never share a key."""
        self.assertNotEqual(
            build_rate_limit_key('TestNotification', self.user),
            build_rate_limit_key('TestNotification', self.other_user)
        )

    def test_custom_parts_appended_in_order(self):
        """Custom parts follow the recipient identifier."""
        key = build_rate_limit_key('TestNotification', self.user, ['Acme', 'EU'])
        self.assertEqual(key, 'app.testnotification.42.acme.eu')

    def test_empty_custom_parts_leave_no_separator(self):
        """No trailing dot without custom parts."""
        key = build_rate_limit_key('TestNotification', self.user, [])
        self.assertFalse(key.endswith('.'))
        self.assertEqual(key.count('.'), 2)

    def test_explicit_prefix(self):
        """Prefix argument wins over the setting."""
        key = build_rate_limit_key('TestNotification', self.user, prefix='Other')
        self.assertEqual(key, 'other.testnotification.42')

    @override_settings(NOTIFICATION_RATE_LIMIT={'KEY_PREFIX': 'Tenant-App'})
    def test_prefix_read_from_settings(self):
        """Prefix comes from NOTIFICATION_RATE_LIMIT at call time."""
        key = build_rate_limit_key('TestNotification', self.user)
        self.assertEqual(key, 'tenant-app.testnotification.42')

    def test_fingerprint_distinguishes_payloads(self):
        """Uniqueness fingerprint is an md5 appended last."""
        first = build_rate_limit_key(
            'InvoiceNotification', self.user,
            include_uniqueness_fingerprint=True, payload=InvoiceNotification(1)
        )
        second = build_rate_limit_key(
            'InvoiceNotification', self.user,
            include_uniqueness_fingerprint=True, payload=InvoiceNotification(2)
        )
        repeat = build_rate_limit_key(
            'InvoiceNotification', self.user,
            include_uniqueness_fingerprint=True, payload=InvoiceNotification(1)
        )

        self.assertNotEqual(first, second)
        self.assertEqual(first, repeat)
        self.assertEqual(len(first.rsplit('.', 1)[1]), 32)

    def test_whitespace_in_parts_hashed(self):
        """Keys with spaces collapse to prefix.type.md5, still distinct."""
        key = build_rate_limit_key('TestNotification', self.user, ['Acme Corp'])
        other = build_rate_limit_key('TestNotification', self.user, ['Acme Inc'])

        self.assertTrue(key.startswith('app.testnotification.'))
        self.assertFalse(any(c.isspace() for c in key))
        self.assertEqual(len(key.rsplit('.', 1)[1]), 32)
        self.assertNotEqual(key, other)
        self.assertEqual(key, build_rate_limit_key('TestNotification', self.user, ['Acme Corp']))

    def test_oversized_key_hashed(self):
        """Keys past the backend limit are shortened deterministically."""
        key = build_rate_limit_key('TestNotification', self.user, ['x' * 300])
        self.assertLessEqual(len(key), MAX_KEY_LENGTH)
        self.assertEqual(key, build_rate_limit_key('TestNotification', self.user, ['x' * 300]))

    def test_fingerprint_requires_stable_string(self):
        """Payloads without to_stable_string() are rejected."""
        with self.assertRaises(TypeError):
            build_rate_limit_key(
                'TestNotification', self.user,
                include_uniqueness_fingerprint=True, payload=object()
            )

    def test_empty_type_name_rejected(self):
        """Type name is required."""
        with self.assertRaises(ValueError):
            build_rate_limit_key('', self.user)

    def test_key_for_notification_combines_parts(self):
        """Recipient parts precede notification parts."""
        class RegionNotification(TestNotification):
            def rate_limit_custom_cache_key_parts(self):
                return ['EU']

        user = TenantUser(7, 'Ada', 'ada@acme.test', tenant='acme')
        key = rate_limit_key_for(RegionNotification(), user)
        self.assertEqual(key, 'app.regionnotification.7.acme.eu')

    @override_settings(NOTIFICATION_RATE_LIMIT={
        'KEY_PREFIX': 'app', 'SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS': True
    })
    def test_key_for_notification_adds_fingerprint_when_unique(self):
        """Uniqueness setting folds the payload into the key."""
        key = rate_limit_key_for(InvoiceNotification(5), self.user)
        self.assertTrue(key.startswith('app.invoicenotification.42.'))
        self.assertEqual(key.count('.'), 3)


# =============================================================================
# 2. Recipient Identifier Tests
# =============================================================================

class RecipientIdentifierTests(TestCase):
    """Identifier priority chain."""

    def test_custom_key_first(self):
        """rate_limit_notifiable_key() wins over id."""
        user = UserWithCustomRateLimitKey(5, 'Ada', 'ada@example.com')
        self.assertEqual(resolve_recipient_identifier(user), 'customKey')

    def test_falsy_custom_key_falls_back(self):
        """A None custom key falls through to id."""
        class NoKeyUser(User):
            def rate_limit_notifiable_key(self):
                return None

        self.assertEqual(resolve_recipient_identifier(NoKeyUser(9, 'Ada', 'a@b.c')), '9')

    def test_model_primary_key(self):
        """Django models resolve through pk."""
        user = get_user_model().objects.create_user(
            username='testuser', email='test@example.com', password='testpass123'
        )
        self.assertEqual(resolve_recipient_identifier(user), str(user.pk))

    def test_id_attribute(self):
        """Plain objects resolve through id."""
        self.assertEqual(resolve_recipient_identifier(User(12, 'Ada', 'a@b.c')), '12')

    def test_anonymous_recipient_hashed(self):
        """No key at all: md5 of the recipient's routes."""
        identifier = resolve_recipient_identifier(
            AnonymousRecipient({'mail': 'anon@example.com'})
        )
        self.assertEqual(len(identifier), 32)
        self.assertEqual(
            identifier,
            resolve_recipient_identifier(AnonymousRecipient({'mail': 'anon@example.com'}))
        )
        self.assertNotEqual(
            identifier,
            resolve_recipient_identifier(AnonymousRecipient({'mail': 'other@example.com'}))
        )

    def test_bare_value_hashed(self):
        """Even a bare string resolves."""
        identifier = resolve_recipient_identifier('anon@example.com')
        self.assertEqual(len(identifier), 32)


# =============================================================================
# 3. Limiter Tests
# =============================================================================

class RateLimiterTests(TestCase):
    """Attempt counting on the cache."""

    def setUp(self):
        cache.clear()
        self.limiter = RateLimiter()

    def test_first_attempt_claims(self):
        """First attempt succeeds, second is over the limit."""
        self.assertTrue(self.limiter.attempt('k', 1, 10))
        self.assertFalse(self.limiter.attempt('k', 1, 10))

    def test_counts_attempts(self):
        """Attempts are counted up to max."""
        for _ in range(3):
            self.assertTrue(self.limiter.attempt('k', 3, 10))
        self.assertFalse(self.limiter.attempt('k', 3, 10))
        self.assertTrue(self.limiter.too_many_attempts('k', 3))

    def test_remaining(self):
        """Remaining never goes negative."""
        self.assertEqual(self.limiter.remaining('k', 2), 2)
        self.limiter.attempt('k', 2, 10)
        self.assertEqual(self.limiter.remaining('k', 2), 1)
        self.limiter.attempt('k', 2, 10)
        self.limiter.attempt('k', 2, 10)
        self.assertEqual(self.limiter.remaining('k', 2), 0)

    def test_clear(self):
        """Clearing a key reopens it."""
        self.limiter.attempt('k', 1, 10)
        self.limiter.clear('k')
        self.assertEqual(self.limiter.attempts('k'), 0)
        self.assertTrue(self.limiter.attempt('k', 1, 10))

    def test_window_expires(self):
        """Entry expires after decay_seconds."""
        self.limiter.attempt('k', 1, 0.1)
        time.sleep(0.2)
        self.assertTrue(self.limiter.attempt('k', 1, 0.1))

    def test_cache_errors_wrapped(self):
        """Backend errors surface as CacheUnavailableError."""
        limiter = RateLimiter(cache_alias='missing')
        with self.assertLogs('notification_rate_limit.limiter', level='WARNING'):
            with self.assertRaises(CacheUnavailableError) as ctx:
                limiter.attempt('k', 1, 10)

        self.assertEqual(ctx.exception.details['key'], 'k')

    def test_invalid_key_propagates(self):
        """Key errors are not reported as an unavailable cache."""
        mock_cache = MagicMock()
        mock_cache.add.side_effect = InvalidCacheKey('Cache key contains characters')

        with patch.object(RateLimiter, 'cache', new_callable=PropertyMock, return_value=mock_cache):
            with self.assertRaises(InvalidCacheKey):
                self.limiter.attempt('bad key', 1, 10)

    def test_backend_timeout_in_whole_seconds(self):
        """Fractional windows are rounded up for the backend TTL."""
        mock_cache = MagicMock()
        mock_cache.add.return_value = True

        with patch.object(RateLimiter, 'cache', new_callable=PropertyMock, return_value=mock_cache):
            self.limiter.attempt('short', 1, 0.1)
            self.limiter.attempt('long', 1, 1.9)

        mock_cache.add.assert_any_call('short', 1, 1)
        mock_cache.add.assert_any_call('long', 1, 2)

    def test_sub_second_window_throttles_then_expires(self):
        """A 0.3s window throttles inside it and reopens after it."""
        self.assertTrue(self.limiter.attempt('k', 1, 0.3))
        self.assertFalse(self.limiter.attempt('k', 1, 0.3))
        time.sleep(0.4)
        self.assertTrue(self.limiter.attempt('k', 1, 0.3))

    def test_throttled_attempts_do_not_write(self):
        """Once over the limit the counter is left alone."""
        self.limiter.attempt('k', 1, 10)
        self.limiter.attempt('k', 1, 10)
        self.limiter.attempt('k', 1, 10)
        self.assertEqual(cache.get('k'), 1)

    def test_available_in(self):
        """Seconds left in the window."""
        self.assertEqual(self.limiter.available_in('k'), 0)
        self.limiter.attempt('k', 1, 10)
        self.assertGreater(self.limiter.available_in('k'), 9)

    def test_concurrent_claims_single_winner(self):
        """Of many simultaneous claims on one key exactly one succeeds."""
        workers = 10
        barrier = threading.Barrier(workers)
        results = []

        def claim():
            barrier.wait()
            results.append(RateLimiter().attempt('app.concurrent.1', 1, 10))

        threads = [threading.Thread(target=claim) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(results), workers)
        self.assertEqual(results.count(True), 1)


class FileBasedRateLimiterTests(TestCase):
    """Backend whose incr rewrites the entry with the default timeout."""

    def setUp(self):
        caches['files'].clear()
        self.addCleanup(caches['files'].clear)
        self.limiter = RateLimiter(cache_alias='files')

    def test_window_expires_despite_throttled_attempts(self):
        """Repeated throttled attempts do not extend the window."""
        self.assertTrue(self.limiter.attempt('k', 1, 0.5))
        self.assertFalse(self.limiter.attempt('k', 1, 0.5))
        self.assertFalse(self.limiter.attempt('k', 1, 0.5))
        time.sleep(0.8)
        self.assertTrue(self.limiter.attempt('k', 1, 0.5))

    def test_counted_window_not_extended_by_incr(self):
        """Attempts under the limit keep the first attempt's window."""
        self.assertTrue(self.limiter.attempt('k', 2, 0.5))
        self.assertTrue(self.limiter.attempt('k', 2, 0.5))
        self.assertFalse(self.limiter.attempt('k', 2, 0.5))
        time.sleep(0.8)
        self.assertTrue(self.limiter.attempt('k', 2, 0.5))
        self.assertEqual(self.limiter.attempts('k'), 1)


# =============================================================================
# 4. Configuration Tests
# =============================================================================

class ConfigurationTests(TestCase):
    """Settings merge and validation."""

    @override_settings(NOTIFICATION_RATE_LIMIT=None)
    def test_defaults(self):
        """Missing settings fall back to defaults."""
        options = get_settings()
        self.assertEqual(options['MAX_ATTEMPTS'], 1)
        self.assertEqual(options['RATE_LIMIT_SECONDS'], 60)
        self.assertTrue(options['LOG_SKIPPED_NOTIFICATIONS'])
        self.assertTrue(options['SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS'])
        self.assertTrue(options['FAIL_OPEN'])

    def test_invalid_values_rejected(self):
        """Each malformed option raises ConfigurationError."""
        invalid = [
            {'MAX_ATTEMPTS': 0},
            {'MAX_ATTEMPTS': 1.5},
            {'RATE_LIMIT_SECONDS': 0},
            {'RATE_LIMIT_SECONDS': '10'},
            {'KEY_PREFIX': 5},
            {'LOG_SKIPPED_NOTIFICATIONS': 'yes'},
            {'CACHE_ALIAS': 'missing'},
            {'UNKNOWN_OPTION': True},
        ]
        for options in invalid:
            with self.subTest(options=options):
                with override_settings(NOTIFICATION_RATE_LIMIT=options):
                    with self.assertRaises(ConfigurationError):
                        validate_settings()

    @override_settings(NOTIFICATION_RATE_LIMIT={'RATE_LIMIT_SECONDS': -5})
    def test_app_ready_fails_fast(self):
        """Startup validation rejects a negative window."""
        with self.assertRaises(ConfigurationError) as ctx:
            apps.get_app_config('notification_rate_limit').ready()

        self.assertEqual(ctx.exception.details['setting'], 'RATE_LIMIT_SECONDS')

    def test_notification_override(self):
        """Class attribute overrides the setting; None defers to it."""
        class SlowNotification(TestNotification):
            rate_limit_seconds = 300

        self.assertEqual(resolve_option(SlowNotification(), 'rate_limit_seconds'), 300)
        self.assertEqual(resolve_option(TestNotification(), 'rate_limit_seconds'), 10)

    def test_invalid_notification_override_rejected(self):
        """Overrides are validated like settings."""
        class BrokenNotification(TestNotification):
            max_attempts = 0

        with self.assertRaises(ConfigurationError):
            resolve_option(BrokenNotification(), 'max_attempts')

    def test_notice_level_registered(self):
        """NOTICE sits between INFO and WARNING."""
        self.assertEqual(NOTICE, 25)

    def test_error_to_dict(self):
        """Errors serialize with code, message and details."""
        error = ConfigurationError('bad', setting='MAX_ATTEMPTS', value=0)
        self.assertEqual(error.to_dict(), {
            'error': 'configuration_error',
            'message': 'bad',
            'details': {'setting': 'MAX_ATTEMPTS', 'value': 0},
        })
