import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch

from fastapi.testclient import TestClient

from callme_notify import webhooks
from fakes import ApnsRecorder, FakeSupabase, make_settings

AVAILABLE = {
    "type": "UPDATE",
    "table": "profiles",
    "schema": "public",
    "record": {"id": "alice", "display_name": "Alice", "is_available": True},
    "old_record": {"id": "alice", "display_name": "Alice", "is_available": False},
}


def _store():
    return FakeSupabase(
        profiles=[
            {
                "id": "alice",
                "display_name": "Alice",
                "enable_push_notifications": True,
                "notify_availability_changes": True,
            },
            {
                "id": "bob",
                "display_name": "Bob",
                "email": "bob@example.com",
                "enable_push_notifications": True,
                "notify_availability_changes": True,
                "notify_friend_requests": True,
            },
        ],
        friendships=[{"id": 1, "user_id": "alice", "friend_id": "bob", "status": "accepted", "is_muted": False}],
        push_tokens=[{"user_id": "bob", "token": "bob-phone"}],
        notification_log=[],
        availability_windows=[],
    )


class WebhookAppTests(unittest.TestCase):
    def setUp(self):
        self.store = _store()
        self.recorder = ApnsRecorder()
        self.email_sender = Mock()
        self.app = webhooks.create_app(
            make_settings(),
            client=self.store,
            apns=self.recorder.client(),
            email_sender=self.email_sender,
        )

    def test_health(self):
        with TestClient(self.app) as http:
            response = http.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_availability_webhook_fans_out(self):
        with TestClient(self.app) as http:
            response = http.post("/notify-availability", json=AVAILABLE)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertEqual(self.recorder.tokens(), ["bob-phone"])

    def test_friend_request_webhook(self):
        event = {
            "type": "INSERT",
            "table": "friendships",
            "record": {"id": 7, "user_id": "alice", "friend_id": "bob", "status": "pending"},
            "old_record": None,
        }

        with TestClient(self.app) as http:
            response = http.post("/notify-friend-request", json=event)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["push_sent"], 1)
        self.email_sender.assert_called_once()

    def test_invalid_payloads_still_return_200(self):
        with TestClient(self.app) as http:
            not_json = http.post("/notify-availability", content=b"{not json", headers={"content-type": "application/json"})
            wrong_shape = http.post("/notify-friend-request", json={"type": "UPDATE"})

        self.assertEqual(not_json.status_code, 200)
        self.assertEqual(not_json.json(), {"status": "invalid"})
        self.assertEqual(wrong_shape.status_code, 200)
        self.assertEqual(wrong_shape.json(), {"status": "invalid"})

    def test_handler_errors_are_logged_and_swallowed(self):
        with patch.object(webhooks, "handle_availability_change", side_effect=RuntimeError("db down")):
            with TestClient(self.app) as http:
                with self.assertLogs("callme_notify.webhooks", level="ERROR"):
                    response = http.post("/notify-availability", json=AVAILABLE)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "error"})

    def test_scheduler_routes(self):
        with TestClient(self.app) as http:
            scan = http.post("/notify-schedule-matches")
            sweep = http.post("/expire-availability")

        self.assertEqual(scan.json(), {"status": "no active windows"})
        self.assertEqual(sweep.json(), {"status": "ok", "expired": 0})

    def test_shared_secret_is_enforced_when_configured(self):
        app = webhooks.create_app(
            make_settings(webhook_secret="s3cret"),
            client=self.store,
            apns=self.recorder.client(),
        )

        with TestClient(app) as http:
            missing = http.post("/expire-availability")
            wrong = http.post("/expire-availability", headers={"Authorization": "Bearer nope"})
            right = http.post("/expire-availability", headers={"Authorization": "Bearer s3cret"})
            health = http.get("/health")

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(right.status_code, 200)
        self.assertEqual(health.status_code, 200)


class SharedResourcesTests(unittest.TestCase):
    def test_concurrent_first_use_builds_one_apns_client(self):
        created = []

        def slow_build(settings):
            time.sleep(0.05)
            client = Mock()
            created.append(client)
            return client

        resources = webhooks._Resources(make_settings(), client=FakeSupabase())
        with patch.object(webhooks.ApnsClient, "from_settings", side_effect=slow_build):
            with ThreadPoolExecutor(max_workers=8) as executor:
                clients = list(executor.map(lambda _: resources.apns, range(8)))

        self.assertEqual(len(created), 1)
        self.assertTrue(all(client is created[0] for client in clients))

        resources.close()
        created[0].close.assert_called_once()

    def test_injected_apns_client_is_not_closed(self):
        apns = Mock()
        resources = webhooks._Resources(make_settings(), client=FakeSupabase(), apns=apns)

        resources.close()

        apns.close.assert_not_called()


if __name__ == "__main__":
    unittest.main()
