import unittest
from datetime import datetime, time, timezone
from unittest.mock import Mock

from callme_notify.events import parse_change_event
from callme_notify.notify_friend_request import (
    handle_friend_request,
    in_quiet_hours,
    quiet_window,
    time_in_range,
)
from fakes import ApnsRecorder, FakeSupabase, make_settings

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _at(hour, minute=0):
    return datetime(2026, 10, 19, hour, minute, tzinfo=timezone.utc)


def _quiet_profile(**overrides):
    profile = {"id": "u1", "enable_quiet_hours": True, "timezone": "UTC"}
    profile.update(overrides)
    return profile


def _insert_event(status="pending"):
    return parse_change_event(
        {
            "type": "INSERT",
            "table": "friendships",
            "record": {"id": 42, "user_id": "sam", "friend_id": "rita", "status": status},
            "old_record": None,
        }
    )


def _recipient(**overrides):
    row = {
        "id": "rita",
        "display_name": "Rita Moreno",
        "email": "rita@example.com",
        "enable_push_notifications": True,
        "notify_friend_requests": True,
        "enable_email_notifications": True,
        "enable_quiet_hours": False,
        "timezone": "UTC",
    }
    row.update(overrides)
    return row


def _store(recipient=None, **overrides):
    tables = {
        "profiles": [
            {"id": "sam", "display_name": "Sam"},
            recipient or _recipient(),
        ],
        "push_tokens": [{"user_id": "rita", "token": "rita-phone"}],
    }
    tables.update(overrides)
    return FakeSupabase(**tables)


class QuietHoursTests(unittest.TestCase):
    def test_default_window_wraps_midnight(self):
        profile = _quiet_profile()

        self.assertTrue(in_quiet_hours(profile, _at(23, 0)))
        self.assertTrue(in_quiet_hours(profile, _at(7, 59)))
        self.assertFalse(in_quiet_hours(profile, _at(8, 0)))
        self.assertFalse(in_quiet_hours(profile, _at(21, 59)))
        self.assertTrue(in_quiet_hours(profile, _at(22, 0)))

    def test_disabled_quiet_hours_never_suppress(self):
        self.assertFalse(in_quiet_hours(_quiet_profile(enable_quiet_hours=False), _at(23, 0)))

    def test_fractional_offset_timezone(self):
        profile = _quiet_profile(timezone="Asia/Kolkata")

        # UTC+05:30: 16:45 UTC is 22:15 local, 16:15 UTC is 21:45 local
        self.assertTrue(in_quiet_hours(profile, _at(16, 45)))
        self.assertFalse(in_quiet_hours(profile, _at(16, 15)))

    def test_configured_daytime_window(self):
        profile = _quiet_profile(quiet_hours_start="13:00:00", quiet_hours_end="14:30:00")

        self.assertEqual(quiet_window(profile), (time(13, 0), time(14, 30)))
        self.assertTrue(in_quiet_hours(profile, _at(13, 0)))
        self.assertFalse(in_quiet_hours(profile, _at(14, 30)))
        self.assertFalse(in_quiet_hours(profile, _at(23, 0)))

    def test_equal_bounds_is_no_quiet_window(self):
        self.assertFalse(time_in_range(time(9, 0), time(9, 0), time(9, 0)))

    def test_unknown_timezone_falls_back_to_utc(self):
        profile = _quiet_profile(timezone="Mars/Olympus_Mons")

        with self.assertLogs("callme_notify.notify_friend_request", level="WARNING"):
            self.assertTrue(in_quiet_hours(profile, _at(23, 0)))


class FriendRequestHandlerTests(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        self.recorder = ApnsRecorder()
        self.apns = self.recorder.client()
        self.email_sender = Mock()

    def _handle(self, store, event=None, now=NOON, settings=None):
        return handle_friend_request(
            event or _insert_event(),
            client=store,
            settings=settings or self.settings,
            apns=self.apns,
            email_sender=self.email_sender,
            now=now,
        )

    def test_pending_request_sends_push_and_email(self):
        result = self._handle(_store())

        self.assertEqual(result, {"status": "ok", "push_sent": 1, "dead_tokens": 0, "email_sent": True})
        request = self.recorder.requests[0]
        self.assertEqual(request.headers["apns-collapse-id"], "friend-request-sam")
        self.assertIn(b"Sam wants to be your friend on CallMe", request.content)
        self.email_sender.assert_called_once_with(
            "rk_test",
            self.settings.resend_from_email,
            self.settings.app_url,
            to_email="rita@example.com",
            recipient_name="Rita",
            sender_name="Sam",
            friendship_id=42,
        )

    def test_quiet_hours_suppress_push_but_not_email(self):
        store = _store(_recipient(enable_quiet_hours=True))

        result = self._handle(store, now=_at(23, 30))

        self.assertEqual(self.recorder.requests, [])
        self.assertEqual(result["push_sent"], 0)
        self.assertTrue(result["email_sent"])

    def test_email_failure_does_not_block_push(self):
        self.email_sender.side_effect = RuntimeError("Resend API error 500")

        result = self._handle(_store())

        self.assertEqual(result["push_sent"], 1)
        self.assertFalse(result["email_sent"])

    def test_push_failure_does_not_block_email(self):
        settings = make_settings(apns_private_key="garbage")

        result = self._handle(_store(), settings=settings)

        self.assertEqual(result["push_sent"], 0)
        self.assertTrue(result["email_sent"])

    def test_non_pending_rows_are_ignored(self):
        for status in ("accepted", "declined", None):
            with self.subTest(status=status):
                self.assertEqual(self._handle(_store(), _insert_event(status)), {"status": "skip"})
        self.assertEqual(self.recorder.requests, [])
        self.email_sender.assert_not_called()

    def test_email_disabled_or_missing_address(self):
        for recipient in (_recipient(enable_email_notifications=False), _recipient(email=None)):
            with self.subTest(recipient=recipient):
                result = self._handle(_store(recipient))
                self.assertFalse(result["email_sent"])
        self.email_sender.assert_not_called()

    def test_missing_resend_key_skips_email(self):
        with self.assertLogs("callme_notify.notify_friend_request", level="ERROR"):
            result = self._handle(_store(), settings=make_settings(resend_api_key=""))

        self.assertEqual(result["push_sent"], 1)
        self.assertFalse(result["email_sent"])
        self.email_sender.assert_not_called()

    def test_push_preferences_are_respected(self):
        store = _store(_recipient(notify_friend_requests=False))

        result = self._handle(store)

        self.assertEqual(self.recorder.requests, [])
        self.assertTrue(result["email_sent"])

    def test_missing_profiles(self):
        store = FakeSupabase(profiles=[_recipient()])

        self.assertEqual(self._handle(store), {"status": "profiles not found"})
        self.email_sender.assert_not_called()


if __name__ == "__main__":
    unittest.main()
