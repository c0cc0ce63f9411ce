import unittest
from unittest import mock

from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from fastapi.testclient import TestClient

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.core.security import verify_cron_request
from powerpulse_api.app.main import app
from powerpulse_api.app.services.email_service import EmailService
from powerpulse_api.app.services.messaging_service import MessagingService
from tests.support import use_temp_database


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        use_temp_database(self)
        self.client = TestClient(app)
        self.email = mock.Mock()
        self.email.send_email.return_value = "email-1"
        patcher = mock.patch.object(EmailService, "client", self.email)
        patcher.start()
        self.addCleanup(patcher.stop)

    def register(self, email: str = "admin@example.com", **fields) -> dict:
        payload = {"email": email, "password": "secret123", "name": "Alex", "timezone": "UTC"}
        payload.update(fields)
        resp = self.client.post("/api/v1/users/", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def login(self, email: str = "admin@example.com") -> dict:
        resp = self.client.post("/api/v1/users/login", json={"email": email, "password": "secret123"})
        self.assertEqual(resp.status_code, 200, resp.text)
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}


class UserApiTests(ApiTestCase):
    def test_register_login_and_me(self):
        user = self.register(phone_number="+15550001111")
        self.assertEqual(user["role_id"], 1)
        self.assertNotIn("password", user)
        headers = self.login()

        me = self.client.get("/api/v1/users/me", headers=headers).json()
        self.assertEqual(me["email"], "admin@example.com")
        self.assertEqual(me["phone_number"], "+15550001111")

    def test_registration_errors(self):
        self.register()
        resp = self.client.post(
            "/api/v1/users/", json={"email": "admin@example.com", "password": "secret123"}
        )
        self.assertEqual(resp.status_code, 409)
        resp = self.client.post(
            "/api/v1/users/", json={"email": "x@example.com", "password": "secret123", "timezone": "Mars/Base"}
        )
        self.assertEqual(resp.status_code, 422)
        resp = self.client.post("/api/v1/users/", json={"email": "not-an-email", "password": "secret123"})
        self.assertEqual(resp.status_code, 422)

    def test_auth_required(self):
        self.assertEqual(self.client.get("/api/v1/users/me").status_code, 401)
        resp = self.client.get("/api/v1/users/me", headers={"Authorization": "Bearer nonsense"})
        self.assertEqual(resp.status_code, 401)
        self.register()
        resp = self.client.post("/api/v1/users/login", json={"email": "admin@example.com", "password": "nope"})
        self.assertEqual(resp.status_code, 401)

    def test_delete_account(self):
        self.register()
        headers = self.login()
        self.assertEqual(self.client.delete("/api/v1/users/me", headers=headers).status_code, 204)
        self.assertEqual(self.client.get("/api/v1/users/me", headers=headers).status_code, 401)

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "ok")


class DeliveryApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.register(preferred_delivery_time="08:00")
        self.headers = self.login()

    def test_preferences_roundtrip(self):
        body = self.client.get("/api/v1/delivery/preferences", headers=self.headers).json()
        self.assertTrue(body["preferences"]["email_enabled"])
        self.assertEqual(body["schedule"]["timezone"], "UTC")

        resp = self.client.put(
            "/api/v1/delivery/preferences",
            headers=self.headers,
            json={"sms_enabled": True, "timezone": "Europe/Berlin", "preferred_delivery_time": "07:30"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertTrue(body["preferences"]["sms_enabled"])
        self.assertEqual(body["schedule"]["scheduled_time"], "07:30")
        self.assertEqual(body["schedule"]["timezone"], "Europe/Berlin")

    def test_preferences_validation(self):
        resp = self.client.put(
            "/api/v1/delivery/preferences", headers=self.headers, json={"quiet_hours_start": "25:00"}
        )
        self.assertEqual(resp.status_code, 422)
        resp = self.client.put(
            "/api/v1/delivery/preferences", headers=self.headers, json={"timezone": "Nowhere/Land"}
        )
        self.assertEqual(resp.status_code, 422)

    def test_null_fields_leave_preferences_unchanged(self):
        for payload in ({"email_enabled": None}, {"quiet_hours_start": None, "sms_enabled": True}):
            resp = self.client.put("/api/v1/delivery/preferences", headers=self.headers, json=payload)
            self.assertEqual(resp.status_code, 200, resp.text)
        prefs = resp.json()["preferences"]
        self.assertTrue(prefs["email_enabled"])
        self.assertTrue(prefs["sms_enabled"])
        self.assertEqual(prefs["quiet_hours_start"], "22:00")

    def test_pause_resume_and_status(self):
        resp = self.client.post("/api/v1/delivery/pause", headers=self.headers)
        self.assertTrue(resp.json()["success"])
        body = self.client.get("/api/v1/delivery/preferences", headers=self.headers).json()
        self.assertIsNone(body["schedule"])
        self.assertFalse(body["preferences"]["email_enabled"])

        resp = self.client.post("/api/v1/delivery/resume", headers=self.headers)
        self.assertIn("08:00", resp.json()["message"])

        status = self.client.get("/api/v1/delivery/status", headers=self.headers).json()
        self.assertEqual([log["status"] for log in status["logs"]][::-1], ["paused", "resumed"])
        self.assertEqual(status["stats"]["total"], 2)
        self.assertEqual(status["schedule"]["scheduled_time"], "08:00")

        filtered = self.client.get(
            "/api/v1/delivery/status", headers=self.headers, params={"channel": "email"}
        ).json()
        self.assertEqual(filtered["logs"], [])

    def test_queue_shows_welcome_item(self):
        items = self.client.get("/api/v1/delivery/queue", headers=self.headers).json()
        self.assertEqual([item["type"] for item in items], ["welcome"])

    def test_send_test_message(self):
        resp = self.client.post("/api/v1/delivery/test", headers=self.headers, json={"channel": "email"})
        self.assertEqual(resp.json(), {"success": True, "message": None})
        self.assertEqual(self.email.send_email.call_args.args[1], "PowerPulse test email")

        resp = self.client.post("/api/v1/delivery/test", headers=self.headers, json={"channel": "in_app"})
        self.assertTrue(resp.json()["success"])
        inbox = self.client.get("/api/v1/notifications/", headers=self.headers).json()
        self.assertEqual(len(inbox), 1)

        resp = self.client.post("/api/v1/delivery/test", headers=self.headers, json={"channel": "sms"})
        self.assertFalse(resp.json()["success"])

        resp = self.client.post("/api/v1/delivery/test", headers=self.headers, json={"channel": "fax"})
        self.assertEqual(resp.status_code, 422)


class ContentApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.admin = self.register()
        self.admin_headers = self.login()
        self.user = self.register("listener@example.com")
        self.user_headers = self.login("listener@example.com")

    def _create(self, **fields):
        payload = {"title": "Morning Focus", "audio_url": "https://cdn.example.com/a.mp3", "duration_seconds": 300}
        payload.update(fields)
        return self.client.post("/api/v1/content/", headers=self.admin_headers, json=payload)

    def test_only_admin_registers_content(self):
        resp = self.client.post(
            "/api/v1/content/", headers=self.user_headers, json={"title": "Nope"}
        )
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self._create().status_code, 201)
        self.assertEqual(self._create(user_id=9999).status_code, 404)

    def test_private_sessions(self):
        private = self._create(user_id=self.admin["id"]).json()
        shared = self._create(title="Shared").json()
        self.assertEqual(
            self.client.get(f"/api/v1/content/{private['id']}", headers=self.user_headers).status_code, 403
        )
        self.assertEqual(
            self.client.get(f"/api/v1/content/{shared['id']}", headers=self.user_headers).status_code, 200
        )
        self.assertEqual(self.client.get("/api/v1/content/9999", headers=self.user_headers).status_code, 404)

        library = self.client.get("/api/v1/content/library", headers=self.user_headers).json()
        self.assertEqual([item["title"] for item in library], ["Shared"])

    def test_listen_updates_streak(self):
        shared = self._create().json()
        resp = self.client.post(f"/api/v1/content/{shared['id']}/listen", headers=self.user_headers)
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["current_streak"], 1)
        streak = self.client.get("/api/v1/content/streak", headers=self.user_headers).json()
        self.assertEqual(streak["longest_streak"], 1)


class NotificationApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.register()
        self.headers = self.login()

    def test_push_subscription_endpoints(self):
        subscription = {
            "endpoint": "https://push.example.com/sub/1",
            "keys": {"p256dh": "BPubKey", "auth": "authSecret"},
            "expirationTime": None,
        }
        resp = self.client.post("/api/v1/notifications/push/subscribe", headers=self.headers, json=subscription)
        self.assertEqual(resp.status_code, 201, resp.text)
        status = self.client.get("/api/v1/notifications/push/status", headers=self.headers).json()
        self.assertEqual(status["subscription_count"], 1)

        body = {"endpoint": subscription["endpoint"]}
        resp = self.client.request("DELETE", "/api/v1/notifications/push/subscribe", headers=self.headers, json=body)
        self.assertEqual(resp.status_code, 200)
        resp = self.client.request("DELETE", "/api/v1/notifications/push/subscribe", headers=self.headers, json=body)
        self.assertEqual(resp.status_code, 404)

    def test_vapid_key(self):
        self.assertEqual(self.client.get("/api/v1/notifications/push/vapid-key").status_code, 404)
        settings.vapid_public_key = "BPublicKey"
        self.assertEqual(
            self.client.get("/api/v1/notifications/push/vapid-key").json(), {"public_key": "BPublicKey"}
        )

    def test_inbox_endpoints(self):
        self.client.post("/api/v1/delivery/test", headers=self.headers, json={"channel": "in_app"})
        self.client.post("/api/v1/delivery/test", headers=self.headers, json={"channel": "in_app"})
        self.assertEqual(
            self.client.get("/api/v1/notifications/unread-count", headers=self.headers).json(), {"unread": 2}
        )
        [latest, _] = self.client.get("/api/v1/notifications/", headers=self.headers).json()
        resp = self.client.post(f"/api/v1/notifications/{latest['id']}/read", headers=self.headers)
        self.assertTrue(resp.json()["success"])
        unread = self.client.get("/api/v1/notifications/", headers=self.headers, params={"unread_only": True}).json()
        self.assertEqual(len(unread), 1)

        self.assertEqual(self.client.post("/api/v1/notifications/9999/read", headers=self.headers).status_code, 404)
        self.client.post("/api/v1/notifications/read-all", headers=self.headers)
        self.assertEqual(
            self.client.get("/api/v1/notifications/unread-count", headers=self.headers).json(), {"unread": 0}
        )


class WebhookApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.register(phone_number="+15550001111")
        self.headers = self.login()
        self.telegram = mock.Mock()
        patcher = mock.patch.object(MessagingService, "telegram", self.telegram)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_twilio_stop_returns_twiml(self):
        resp = self.client.post(
            "/api/v1/webhooks/twilio", data={"From": "+15550001111", "Body": "STOP"}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("application/xml"))
        self.assertIn("<Message>You have been unsubscribed from PowerPulse SMS messages.", resp.text)

        resp = self.client.post("/api/v1/webhooks/twilio", data={"From": "+15550001111", "Body": "hello"})
        self.assertTrue(resp.text.endswith("<Response/>"))

    def test_telegram_link(self):
        prefs = self.client.get("/api/v1/delivery/preferences", headers=self.headers).json()["preferences"]
        update = {"update_id": 1, "message": {"chat": {"id": 42}, "text": f"/start {prefs['telegram_link_token']}"}}
        resp = self.client.post("/api/v1/webhooks/telegram", json=update)
        self.assertEqual(resp.json(), {"ok": True, "action": "linked"})
        prefs = self.client.get("/api/v1/delivery/preferences", headers=self.headers).json()["preferences"]
        self.assertEqual(prefs["telegram_chat_id"], "42")
        self.assertTrue(prefs["telegram_enabled"])


class CronApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.user = self.register()

    def test_cron_secret(self):
        settings.cron_secret = "s3cret"
        self.assertEqual(self.client.post("/api/v1/cron/run").status_code, 401)
        resp = self.client.post("/api/v1/cron/run", headers={"Authorization": "Bearer wrong"})
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post("/api/v1/cron/run", headers={"Authorization": "Bearer s3cret"})
        self.assertEqual(resp.status_code, 200)

    def test_cron_secret_rejects_non_ascii_token(self):
        settings.cron_secret = "s3cret"
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials="s3cr\u00e9t")
        with self.assertRaises(HTTPException) as ctx:
            verify_cron_request(credentials)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIsNone(verify_cron_request(HTTPAuthorizationCredentials(scheme="Bearer", credentials="s3cret")))

    def test_run_processes_welcome_email(self):
        body = self.client.post("/api/v1/cron/run").json()
        self.assertEqual(body["processed"], 1)
        self.assertIn("timestamp", body)
        self.assertEqual(self.email.send_email.call_args.args[1], "Welcome to PowerPulse! 🚀 Start Your Journey")

    def test_triggers(self):
        self.assertEqual(self.client.post("/api/v1/cron/trigger/daily/9999").status_code, 404)
        body = self.client.post(f"/api/v1/cron/trigger/re-engagement/{self.user['id']}", params={"days": 14}).json()
        self.assertTrue(body["queued"])
        self.assertEqual(self.client.post("/api/v1/cron/trigger/re-engagement/9999").status_code, 404)

    def test_cleanup_and_jobs(self):
        body = self.client.post("/api/v1/cron/cleanup").json()
        self.assertEqual((body["logs"], body["queue_items"]), (0, 0))
        self.assertEqual(self.client.get("/api/v1/cron/jobs").json(), {"running": False, "jobs": []})


if __name__ == "__main__":
    unittest.main()
