"""
Notification Rate Limit Tests
Gate behaviour: suppression, windows, batches, events, logging and failure policy.
"""
import threading
import time
from unittest.mock import MagicMock, patch

from django.core import mail
from django.core.cache import cache
from django.test import TestCase, override_settings

from .conf import NOTICE
from .dispatch import ChannelDispatcher, Notifier, RateLimitDispatcher
from .exceptions import ChannelNotFoundError, ConfigurationError
from .limiter import RateLimiter
from .notifications import RateLimitedNotification
from .recipients import Notifiable
from .services import NotificationService
from .signals import notification_rate_limit_reached, notification_sent
from .testing import RecordingDispatcher


# =============================================================================
# Test recipients and notifications
# =============================================================================

class User(Notifiable):
    def __init__(self, id, name, email):
        self.id = id
        self.name = name
        self.email = email

    def __repr__(self):
        return f"User({self.id})"


class UserWithCustomRateLimitKey(User):
    def rate_limit_notifiable_key(self):
        return 'customKey'


class TenantUser(User):
    def __init__(self, id, name, email, tenant):
        super().__init__(id, name, email)
        self.tenant = tenant

    def rate_limit_custom_key_parts(self):
        return [self.tenant]


class TestNotification(RateLimitedNotification):
    __test__ = False

    def to_mail(self, recipient):
        return {'subject': 'Test notification', 'message': 'Hello'}


class QuietNotification(TestNotification):
    log_skipped_notifications = False


class InvoiceNotification(RateLimitedNotification):
    def __init__(self, invoice_id):
        self.invoice_id = invoice_id


class PlainNotification:
    """Not rate limited."""

    def via(self, recipient):
        return ['mail']

    def to_mail(self, recipient):
        return {'subject': 'Plain', 'message': 'Plain'}


class SignalCaptureMixin:
    """Collect notification_rate_limit_reached events for the test."""

    def setUp(self):
        super().setUp()
        cache.clear()
        self.rate_limited = []
        notification_rate_limit_reached.connect(self._on_rate_limited)
        self.addCleanup(notification_rate_limit_reached.disconnect, self._on_rate_limited)

    def _on_rate_limited(self, sender, **kwargs):
        self.rate_limited.append(kwargs)


# =============================================================================
# 1. Plain Sending Tests
# =============================================================================

@override_settings(NOTIFICATION_DISPATCHER='notification_rate_limit.dispatch.ChannelDispatcher')
class SendTests(TestCase):
    """Notifications go out unthrottled through the channel dispatcher."""

    def setUp(self):
        cache.clear()
        self.user = User(1, 'Ada', 'ada@example.com')

    def test_can_send_a_notification(self):
        """Notify delivers mail to the recipient's address."""
        self.user.notify(TestNotification())

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['ada@example.com'])
        self.assertEqual(mail.outbox[0].subject, 'Test notification')

    def test_can_send_an_anonymous_notification(self):
        """Routed notification delivers to the bare address."""
        NotificationService.route('mail', 'anon@example.com').notify(TestNotification())

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['anon@example.com'])

    def test_channel_dispatcher_does_not_throttle(self):
        """Without the gate every send is delivered."""
        self.user.notify(TestNotification())
        self.user.notify(TestNotification())
        self.assertEqual(len(mail.outbox), 2)

    def test_sent_signal_fired(self):
        """notification_sent fires once per channel delivery."""
        received = []

        def on_sent(sender, **kwargs):
            received.append((sender, kwargs['channel']))

        notification_sent.connect(on_sent)
        self.addCleanup(notification_sent.disconnect, on_sent)

        self.user.notify(TestNotification())
        self.assertEqual(received, [(TestNotification, 'mail')])

    def test_unknown_channel_raises(self):
        """A channel missing from NOTIFICATION_CHANNELS is an error."""
        notification = TestNotification()
        notification.via = lambda recipient: ['sms']

        with self.assertRaises(ChannelNotFoundError):
            ChannelDispatcher().dispatch(notification, [self.user])

    def test_empty_recipients_is_noop(self):
        """Sending to nobody does nothing."""
        NotificationService.send([], TestNotification())
        self.assertEqual(len(mail.outbox), 0)


# =============================================================================
# 2. Rate Limit Gate Tests
# =============================================================================

class RateLimitGateTests(SignalCaptureMixin, TestCase):
    """Suppression within the window."""

    def setUp(self):
        super().setUp()
        self.delegate = RecordingDispatcher()
        self.gate = RateLimitDispatcher(delegate=self.delegate)
        self.user = User(42, 'Ada', 'ada@example.com')
        self.other_user = User(43, 'Grace', 'grace@example.com')

    def test_skips_notifications_until_limit_expires(self):
        """Second send in the window is suppressed and logged at NOTICE."""
        with self.assertNoLogs('notification_rate_limit', level=NOTICE):
            self.gate.dispatch(TestNotification(), [self.user])
        self.assertTrue(self.delegate.sent_to(self.user, TestNotification))
        self.assertEqual(self.rate_limited, [])

        with self.assertLogs('notification_rate_limit.dispatch', level=NOTICE) as logs:
            self.gate.dispatch(TestNotification(), [self.user])

        self.assertEqual(len(self.delegate.sent()), 1)
        self.assertEqual(len(self.rate_limited), 1)
        self.assertEqual(logs.records[0].levelname, 'NOTICE')

    def test_concrete_key_and_event_payload(self):
        """Event carries notification, recipient and the computed key."""
        notification = TestNotification()
        self.gate.dispatch(notification, [self.user])
        self.gate.dispatch(notification, [self.user])

        event = self.rate_limited[0]
        self.assertEqual(event['key'], 'app.testnotification.42')
        self.assertIs(event['notification'], notification)
        self.assertIs(event['recipient'], self.user)

    def test_log_context_has_key_and_recipient(self):
        """NOTICE record carries structured key/recipient/notification."""
        self.gate.dispatch(TestNotification(), [self.user])
        with self.assertLogs('notification_rate_limit.dispatch', level=NOTICE) as logs:
            self.gate.dispatch(TestNotification(), [self.user])

        record = logs.records[0]
        self.assertEqual(record.key, 'app.testnotification.42')
        self.assertEqual(record.recipient, '42')
        self.assertEqual(record.notification, 'TestNotification')

    def test_does_not_get_confused_between_multiple_users(self):
        """Each recipient has its own window."""
        self.gate.dispatch(TestNotification(), [self.user])
        self.gate.dispatch(TestNotification(), [self.other_user])

        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(self.rate_limited, [])

        self.gate.dispatch(TestNotification(), [self.user])
        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(len(self.rate_limited), 1)
        self.assertIs(self.rate_limited[0]['recipient'], self.user)

    def test_does_not_get_confused_between_multiple_anonymous_users(self):
        """Anonymous recipients are keyed by their routes."""
        first = NotificationService.route('mail', 'first@example.com')
        second = NotificationService.route('mail', 'second@example.com')

        self.gate.dispatch(TestNotification(), [first])
        self.gate.dispatch(TestNotification(), [second])
        self.assertEqual(self.rate_limited, [])

        again = NotificationService.route('mail', 'first@example.com')
        self.gate.dispatch(TestNotification(), [again])
        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(len(self.rate_limited), 1)

    def test_different_notification_types_are_independent(self):
        """Window is per notification type."""
        self.gate.dispatch(TestNotification(), [self.user])
        self.gate.dispatch(InvoiceNotification(1), [self.user])

        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(self.rate_limited, [])

    @override_settings(NOTIFICATION_RATE_LIMIT={'KEY_PREFIX': 'app', 'RATE_LIMIT_SECONDS': 0.1})
    def test_resumes_notifications_after_expiration(self):
        """Once the window expires the recipient is eligible again."""
        self.gate.dispatch(TestNotification(), [self.user])
        time.sleep(0.2)
        self.gate.dispatch(TestNotification(), [self.user])

        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(self.rate_limited, [])

    def test_utilizes_custom_rate_limit_keys(self):
        """Recipient-supplied key replaces the id in the cache key."""
        user = UserWithCustomRateLimitKey(10001, 'Custom', 'custom@example.com')

        self.gate.dispatch(TestNotification(), [user])
        with self.assertLogs('notification_rate_limit.dispatch', level=NOTICE) as logs:
            self.gate.dispatch(TestNotification(), [user])

        self.assertEqual(logs.records[0].key, 'app.testnotification.customkey')

    def test_custom_key_parts_isolate_tenants(self):
        """Same identity, different tenant: throttled independently."""
        acme = TenantUser(7, 'Ada', 'ada@acme.test', tenant='acme')
        globex = TenantUser(7, 'Ada', 'ada@globex.test', tenant='globex')

        self.gate.dispatch(TestNotification(), [acme])
        self.gate.dispatch(TestNotification(), [globex])

        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(self.rate_limited, [])

        self.gate.dispatch(TestNotification(), [acme])
        self.assertEqual(self.rate_limited[0]['key'], 'app.testnotification.7.acme')


# =============================================================================
# 3. Batch Tests
# =============================================================================

class BatchTests(SignalCaptureMixin, TestCase):
    """Multiple recipients in one dispatch."""

    def setUp(self):
        super().setUp()
        self.delegate = RecordingDispatcher()
        self.gate = RateLimitDispatcher(delegate=self.delegate)
        self.user = User(1, 'Ada', 'ada@example.com')
        self.other_user = User(2, 'Grace', 'grace@example.com')

    def test_delegate_receives_only_permitted_subset(self):
        """Throttled recipients are dropped from the outgoing batch."""
        self.gate.dispatch(TestNotification(), [self.user])
        self.gate.dispatch(TestNotification(), [self.user, self.other_user])

        _, recipients = self.delegate.dispatched[-1]
        self.assertEqual(recipients, [self.other_user])
        self.assertEqual(len(self.rate_limited), 1)

    def test_delegate_not_called_when_all_suppressed(self):
        """Empty batch means no delivery call at all."""
        self.gate.dispatch(TestNotification(), [self.user, self.other_user])
        self.gate.dispatch(TestNotification(), [self.user, self.other_user])

        self.assertEqual(len(self.delegate.dispatched), 1)
        self.assertEqual(len(self.rate_limited), 2)

    def test_duplicate_recipient_in_one_batch(self):
        """Recipients are evaluated in order; a repeat is suppressed."""
        self.gate.dispatch(TestNotification(), [self.user, self.user])

        _, recipients = self.delegate.dispatched[0]
        self.assertEqual(recipients, [self.user])
        self.assertEqual(len(self.rate_limited), 1)

    def test_suppressed_reports_without_claiming(self):
        """suppressed() inspects state without consuming attempts."""
        self.gate.dispatch(TestNotification(), [self.user])

        throttled = self.gate.suppressed(TestNotification(), [self.user, self.other_user])
        self.assertEqual(throttled, [self.user])

        self.gate.dispatch(TestNotification(), [self.other_user])
        self.assertTrue(self.delegate.sent_to(self.other_user))

    def test_concurrent_dispatch_delivers_once(self):
        """Simultaneous dispatches to one recipient: one delivery, the rest suppressed."""
        workers = 8
        barrier = threading.Barrier(workers)

        def send():
            barrier.wait()
            self.gate.dispatch(TestNotification(), [self.user])

        threads = [threading.Thread(target=send) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(self.delegate.dispatched), 1)
        self.assertEqual(len(self.rate_limited), workers - 1)


# =============================================================================
# 4. Configuration Override Tests
# =============================================================================

class OptionTests(SignalCaptureMixin, TestCase):
    """Settings and per-notification overrides."""

    def setUp(self):
        super().setUp()
        self.delegate = RecordingDispatcher()
        self.gate = RateLimitDispatcher(delegate=self.delegate)
        self.user = User(1, 'Ada', 'ada@example.com')

    @override_settings(NOTIFICATION_RATE_LIMIT={'KEY_PREFIX': 'app', 'MAX_ATTEMPTS': 3})
    def test_max_attempts_allows_several_sends(self):
        """MAX_ATTEMPTS sends pass before suppression."""
        for _ in range(4):
            self.gate.dispatch(TestNotification(), [self.user])

        self.assertEqual(len(self.delegate.sent()), 3)
        self.assertEqual(len(self.rate_limited), 1)

    def test_notification_overrides_max_attempts(self):
        """Class attribute wins over the setting."""
        class TwiceNotification(TestNotification):
            max_attempts = 2

        for _ in range(3):
            self.gate.dispatch(TwiceNotification(), [self.user])

        self.assertEqual(len(self.delegate.sent()), 2)

    @override_settings(NOTIFICATION_RATE_LIMIT={
        'KEY_PREFIX': 'app', 'LOG_SKIPPED_NOTIFICATIONS': False
    })
    def test_logging_disabled_still_fires_event(self):
        """No NOTICE record, but the event is still sent."""
        self.gate.dispatch(TestNotification(), [self.user])
        with self.assertNoLogs('notification_rate_limit', level=NOTICE):
            self.gate.dispatch(TestNotification(), [self.user])

        self.assertEqual(len(self.rate_limited), 1)

    def test_notification_can_disable_logging(self):
        """log_skipped_notifications = False on the class."""
        self.gate.dispatch(QuietNotification(), [self.user])
        with self.assertNoLogs('notification_rate_limit', level=NOTICE):
            self.gate.dispatch(QuietNotification(), [self.user])

    @override_settings(NOTIFICATION_RATE_LIMIT={
        'KEY_PREFIX': 'app', 'SHOULD_RATE_LIMIT_UNIQUE_NOTIFICATIONS': True
    })
    def test_unique_notifications_tracked_separately(self):
        """Distinct payloads to one recipient have their own windows."""
        self.gate.dispatch(InvoiceNotification(1), [self.user])
        self.gate.dispatch(InvoiceNotification(2), [self.user])
        self.assertEqual(len(self.delegate.sent()), 2)

        self.gate.dispatch(InvoiceNotification(1), [self.user])
        self.assertEqual(len(self.delegate.sent()), 2)
        self.assertEqual(len(self.rate_limited), 1)

    def test_payload_ignored_when_unique_disabled(self):
        """Test settings disable uniqueness: same type, same window."""
        self.gate.dispatch(InvoiceNotification(1), [self.user])
        self.gate.dispatch(InvoiceNotification(2), [self.user])

        self.assertEqual(len(self.delegate.sent()), 1)

    def test_settings_read_at_call_time(self):
        """Changing the window between dispatches takes effect immediately."""
        with self.settings(NOTIFICATION_RATE_LIMIT={'KEY_PREFIX': 'first'}):
            self.gate.dispatch(TestNotification(), [self.user])
        with self.settings(NOTIFICATION_RATE_LIMIT={'KEY_PREFIX': 'second'}):
            self.gate.dispatch(TestNotification(), [self.user])

        self.assertEqual(len(self.delegate.sent()), 2)

    @override_settings(NOTIFICATION_RATE_LIMIT={'RATE_LIMIT_SECONDS': -1})
    def test_malformed_window_raises(self):
        """Negative window is a configuration error, not a silent default."""
        with self.assertRaises(ConfigurationError):
            self.gate.dispatch(TestNotification(), [self.user])
        self.assertEqual(self.delegate.dispatched, [])

    def test_plain_notifications_pass_through(self):
        """Notifications without rate limit support are never throttled."""
        self.gate.dispatch(PlainNotification(), [self.user])
        self.gate.dispatch(PlainNotification(), [self.user])

        self.assertEqual(len(self.delegate.dispatched), 2)
        self.assertEqual(self.rate_limited, [])


# =============================================================================
# 5. Failure Policy Tests
# =============================================================================

class FailurePolicyTests(SignalCaptureMixin, TestCase):
    """Cache outages and delivery failures."""

    def setUp(self):
        super().setUp()
        self.delegate = RecordingDispatcher()
        self.gate = RateLimitDispatcher(delegate=self.delegate)
        self.user = User(1, 'Ada', 'ada@example.com')

    @patch.object(RateLimiter, '_hit', side_effect=ConnectionError('cache down'))
    def test_cache_outage_fails_open_by_default(self, mock_hit):
        """Cache failure: deliver and warn."""
        with self.assertLogs('notification_rate_limit', level='WARNING') as logs:
            self.gate.dispatch(TestNotification(), [self.user])

        self.assertTrue(self.delegate.sent_to(self.user))
        self.assertEqual(self.rate_limited, [])
        self.assertTrue(any('cache down' in message for message in logs.output))

    @override_settings(NOTIFICATION_RATE_LIMIT={'KEY_PREFIX': 'app', 'FAIL_OPEN': False})
    @patch.object(RateLimiter, '_hit', side_effect=ConnectionError('cache down'))
    def test_cache_outage_fails_closed_when_configured(self, mock_hit):
        """FAIL_OPEN=False: suppress and fire the event."""
        with self.assertLogs('notification_rate_limit', level='WARNING'):
            self.gate.dispatch(TestNotification(), [self.user])

        self.assertEqual(self.delegate.dispatched, [])
        self.assertEqual(len(self.rate_limited), 1)

    def test_delivery_failure_still_consumes_window(self):
        """Claim is committed before delivery and not rolled back."""
        delegate = MagicMock(spec=Notifier)
        delegate.dispatch.side_effect = RuntimeError('smtp down')
        gate = RateLimitDispatcher(delegate=delegate)

        with self.assertRaises(RuntimeError):
            gate.dispatch(TestNotification(), [self.user])

        gate.dispatch(TestNotification(), [self.user])
        self.assertEqual(delegate.dispatch.call_count, 1)
        self.assertEqual(len(self.rate_limited), 1)


# =============================================================================
# 6. Service Integration Tests
# =============================================================================

class ServiceIntegrationTests(SignalCaptureMixin, TestCase):
    """NotificationService with the gate configured as NOTIFICATION_DISPATCHER."""

    def setUp(self):
        super().setUp()
        self.user = User(1, 'Ada', 'ada@example.com')

    def test_notify_goes_through_gate(self):
        """Second notify in the window sends no mail."""
        self.user.notify(TestNotification())
        self.user.notify(TestNotification())

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(len(self.rate_limited), 1)

    def test_routed_notify_goes_through_gate(self):
        """Anonymous routed sends are throttled too."""
        NotificationService.route('mail', 'anon@example.com').notify(TestNotification())
        NotificationService.route('mail', 'anon@example.com').notify(TestNotification())

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(len(self.rate_limited), 1)

    def test_send_accepts_single_recipient(self):
        """A lone recipient is treated as a batch of one."""
        NotificationService.send(self.user, TestNotification())
        self.assertEqual(len(mail.outbox), 1)

    def test_send_accepts_generator(self):
        """Any iterable of recipients is expanded, not treated as one recipient."""
        other = User(2, 'Grace', 'grace@example.com')
        NotificationService.send((r for r in [self.user, other]), TestNotification())

        self.assertEqual(sorted(m.to[0] for m in mail.outbox), ['ada@example.com', 'grace@example.com'])

    def test_suppressed_send_does_not_raise(self):
        """Suppression is silent to the caller."""
        NotificationService.send([self.user], TestNotification())
        try:
            NotificationService.send([self.user], TestNotification())
        except Exception as e:  # pragma: no cover
            self.fail(f"Suppressed send raised {e!r}")
