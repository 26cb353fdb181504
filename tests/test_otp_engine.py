from tests.base import START, FakeClock, RecordingChannel

import unittest
from datetime import timedelta
from unittest.mock import Mock, patch

from app.core.security import verify_password
from app.services.otp_engine import OtpEngine, OtpPolicy, generate_code
from app.services.otp_errors import (
    OtpDeliveryFailed,
    OtpExpired,
    OtpInvalid,
    OtpLockedOut,
    OtpNotFound,
    OtpRateLimited,
    OtpStoreUnavailable,
)
from app.services.otp_store import InMemoryOtpStore
from app.services.sms_service import SmsDeliveryError

PHONE = "919876543210"


class OtpEngineTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryOtpStore()
        self.channel = RecordingChannel()
        self.engine = OtpEngine(self.store, self.channel, channel="phone", clock=self.clock)


class OtpIssuanceTests(OtpEngineTestCase):
    def test_first_issue_stores_hash_and_fresh_counters(self):
        issued = self.engine.request_code(PHONE)

        self.assertEqual(len(self.channel.sent), 1)
        code = self.channel.last_code
        self.assertEqual(len(code), 6)
        self.assertTrue(code.isdigit())

        record = self.store.get(PHONE)
        self.assertIsNotNone(record)
        self.assertNotEqual(record.code_hash, code)
        self.assertTrue(verify_password(code, record.code_hash))
        self.assertEqual(record.retry_count, 0)
        self.assertEqual(record.resend_count, 1)
        self.assertEqual(record.last_sent_at, START)
        self.assertEqual(record.expires_at, START + timedelta(minutes=10))
        self.assertEqual(issued.ttl_seconds, 600)
        self.assertFalse(hasattr(issued, "code"))

    def test_second_issue_within_cooldown_is_rejected(self):
        self.engine.request_code(PHONE)
        self.clock.advance(seconds=10)

        with self.assertRaises(OtpRateLimited) as ctx:
            self.engine.request_code(PHONE)
        self.assertEqual(ctx.exception.reason, "cooldown")
        self.assertEqual(ctx.exception.retry_after_seconds, 50)
        self.assertEqual(len(self.channel.sent), 1)

    def test_sixth_issue_within_hour_hits_hourly_cap(self):
        for _ in range(5):
            self.engine.request_code(PHONE)
            self.clock.advance(seconds=61)

        with self.assertRaises(OtpRateLimited) as ctx:
            self.engine.request_code(PHONE)
        self.assertEqual(ctx.exception.reason, "hourly-cap")
        self.assertEqual(ctx.exception.retry_after_seconds, 3600 - 61)
        self.assertEqual(len(self.channel.sent), 5)
        self.assertEqual(self.store.get(PHONE).resend_count, 5)

    def test_issue_after_window_resets_resend_count(self):
        for _ in range(5):
            self.engine.request_code(PHONE)
            self.clock.advance(seconds=61)
        with self.assertRaises(OtpRateLimited):
            self.engine.request_code(PHONE)

        last_sent_at = self.store.get(PHONE).last_sent_at
        self.clock.now = last_sent_at + timedelta(seconds=3601)
        issued = self.engine.request_code(PHONE)

        self.assertEqual(issued.resend_count, 1)
        self.assertEqual(self.store.get(PHONE).resend_count, 1)

    def test_reissue_resets_retry_count_and_replaces_code(self):
        self.engine.request_code(PHONE)
        first_code = self.channel.last_code
        with self.assertRaises(OtpInvalid):
            self.engine.verify_code(PHONE, "000000")
        self.assertEqual(self.store.get(PHONE).retry_count, 1)

        self.clock.advance(seconds=61)
        next_code = "333333" if first_code == "222222" else "222222"
        with patch("app.services.otp_engine.generate_code", return_value=next_code):
            engine = OtpEngine(self.store, self.channel, channel="phone", clock=self.clock)
            engine.request_code(PHONE)

        record = self.store.get(PHONE)
        self.assertEqual(record.retry_count, 0)
        self.assertEqual(record.resend_count, 2)
        self.assertFalse(verify_password(first_code, record.code_hash))

    def test_delivery_failure_records_nothing_and_allows_immediate_retry(self):
        self.channel.fail_with = SmsDeliveryError("gateway down")

        with self.assertRaises(OtpDeliveryFailed) as ctx:
            self.engine.request_code(PHONE)
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIsNone(self.store.get(PHONE))

        self.channel.fail_with = None
        self.engine.request_code(PHONE)
        self.assertEqual(self.store.get(PHONE).resend_count, 1)

    def test_delivery_failure_on_reissue_keeps_previous_record(self):
        self.engine.request_code(PHONE)
        before = self.store.get(PHONE)
        self.clock.advance(seconds=90)
        self.channel.fail_with = SmsDeliveryError("gateway down")

        with self.assertRaises(OtpDeliveryFailed):
            self.engine.request_code(PHONE)
        self.assertEqual(self.store.get(PHONE), before)

    def test_storage_outage_surfaces_as_dependency_unavailable(self):
        store = Mock()
        store.get.side_effect = OtpStoreUnavailable()
        engine = OtpEngine(store, self.channel, channel="phone", clock=self.clock)

        with self.assertRaises(OtpStoreUnavailable) as ctx:
            engine.request_code(PHONE)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.channel.sent, [])


class OtpVerificationTests(OtpEngineTestCase):
    def test_correct_code_verifies_once(self):
        self.engine.request_code(PHONE)
        code = self.channel.last_code

        verified = self.engine.verify_code(PHONE, code)
        self.assertEqual(verified.identifier, PHONE)
        self.assertEqual(verified.channel, "phone")
        self.assertEqual(verified.verified_at, START)
        self.assertIsNone(self.store.get(PHONE))

        with self.assertRaises(OtpNotFound):
            self.engine.verify_code(PHONE, code)

    def test_known_code_example(self):
        with patch("app.services.otp_engine.generate_code", return_value="483920"):
            engine = OtpEngine(self.store, self.channel, channel="phone", clock=self.clock)
            engine.request_code(PHONE)

        with self.assertRaises(OtpInvalid) as ctx:
            engine.verify_code(PHONE, "000000")
        self.assertEqual(ctx.exception.attempts_remaining, 4)
        self.assertEqual(self.store.get(PHONE).retry_count, 1)

        self.clock.advance(minutes=5)
        self.assertEqual(engine.verify_code(PHONE, "483920").identifier, PHONE)

    def test_five_wrong_codes_lock_out(self):
        self.engine.request_code(PHONE)

        for attempt in range(1, 5):
            with self.assertRaises(OtpInvalid) as ctx:
                self.engine.verify_code(PHONE, "000000")
            self.assertEqual(ctx.exception.attempts_remaining, 5 - attempt)

        with self.assertRaises(OtpLockedOut) as ctx:
            self.engine.verify_code(PHONE, "000000")
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertIsNone(self.store.get(PHONE))

        with self.assertRaises(OtpNotFound):
            self.engine.verify_code(PHONE, "000000")

    def test_lockout_rejects_even_the_right_code_afterwards(self):
        self.engine.request_code(PHONE)
        code = self.channel.last_code
        for _ in range(4):
            with self.assertRaises(OtpInvalid):
                self.engine.verify_code(PHONE, "000000")
        with self.assertRaises(OtpLockedOut):
            self.engine.verify_code(PHONE, "000000")

        with self.assertRaises(OtpNotFound):
            self.engine.verify_code(PHONE, code)

    def test_expired_code_is_rejected_even_when_correct(self):
        self.engine.request_code(PHONE)
        code = self.channel.last_code
        self.clock.advance(minutes=10)

        with self.assertRaises(OtpExpired):
            self.engine.verify_code(PHONE, code)
        self.assertIsNone(self.store.get(PHONE))

        with self.assertRaises(OtpNotFound):
            self.engine.verify_code(PHONE, code)

    def test_code_is_accepted_right_before_expiry(self):
        self.engine.request_code(PHONE)
        code = self.channel.last_code
        self.clock.advance(minutes=9, seconds=59)

        self.assertEqual(self.engine.verify_code(PHONE, code).identifier, PHONE)

    def test_unknown_identifier_is_not_found(self):
        with self.assertRaises(OtpNotFound):
            self.engine.verify_code("910000000000", "123456")

    def test_blank_code_counts_as_failed_attempt(self):
        self.engine.request_code(PHONE)

        with self.assertRaises(OtpInvalid):
            self.engine.verify_code(PHONE, "   ")
        self.assertEqual(self.store.get(PHONE).retry_count, 1)

    def test_code_consumed_concurrently_is_not_verified_twice(self):
        self.engine.request_code(PHONE)
        code = self.channel.last_code

        with patch.object(self.store, "delete", return_value=False):
            with self.assertRaises(OtpNotFound):
                self.engine.verify_code(PHONE, code)

    def test_record_removed_between_read_and_increment_is_not_found(self):
        self.engine.request_code(PHONE)

        with patch.object(self.store, "increment_retry", return_value=None):
            with self.assertRaises(OtpNotFound):
                self.engine.verify_code(PHONE, "000000")

    def test_lockout_already_applied_by_another_attempt_is_not_found(self):
        self.engine.request_code(PHONE)

        with patch.object(self.store, "increment_retry", return_value=6), patch.object(
            self.store, "delete", return_value=False
        ):
            with self.assertRaises(OtpNotFound):
                self.engine.verify_code(PHONE, "000000")


class OtpPolicyTests(unittest.TestCase):
    def test_non_positive_values_are_rejected(self):
        with self.assertRaises(ValueError):
            OtpPolicy(max_verify_attempts=0)
        with self.assertRaises(ValueError):
            OtpPolicy(ttl_minutes=-1)

    def test_custom_policy_drives_engine(self):
        clock = FakeClock()
        store = InMemoryOtpStore()
        channel = RecordingChannel()
        engine = OtpEngine(
            store,
            channel,
            channel="merchant_email",
            clock=clock,
            policy=OtpPolicy(code_length=4, ttl_minutes=2, max_verify_attempts=2),
        )

        issued = engine.request_code("shop@example.com")
        self.assertEqual(issued.ttl_seconds, 120)
        self.assertEqual(len(channel.last_code), 4)

        with self.assertRaises(OtpInvalid):
            engine.verify_code("shop@example.com", "0000")
        with self.assertRaises(OtpLockedOut):
            engine.verify_code("shop@example.com", "0000")

    def test_generated_codes_have_configured_length(self):
        for length in (1, 4, 6, 8):
            code = generate_code(length)
            self.assertEqual(len(code), length)
            self.assertGreaterEqual(int(code), 10 ** (length - 1))
            self.assertLessEqual(int(code), 10**length - 1)
