import json
import unittest
from unittest import mock

import requests
from pywebpush import WebPushException

from powerpulse_api.app.core.config import settings
from powerpulse_api.app.services.providers import (
    DeliveryError,
    ResendClient,
    TelegramClient,
    TwilioClient,
    WebPushClient,
)


def response(status_code: int = 200, body=None, headers=None) -> mock.Mock:
    resp = mock.Mock(status_code=status_code, headers=headers or {}, text=json.dumps(body))
    if body is None:
        resp.json.side_effect = ValueError("no json")
        resp.text = "<html>bad gateway</html>"
    else:
        resp.json.return_value = body
    return resp


class ProviderTestCase(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("powerpulse_api.app.services.providers.requests.post")
        self.post = patcher.start()
        self.addCleanup(patcher.stop)
        patcher = mock.patch("powerpulse_api.app.services.providers.time.sleep")
        self.sleep = patcher.start()
        self.addCleanup(patcher.stop)


class UnconfiguredClientTests(ProviderTestCase):
    def test_every_client_refuses_to_send(self):
        calls = [
            lambda: ResendClient(api_key="").send_email("a@example.com", "Hi", "<p>Hi</p>"),
            lambda: TwilioClient(account_sid="", auth_token="").send_sms("+1555", "Hi"),
            lambda: TelegramClient(bot_token="").send_message("42", "Hi"),
            lambda: WebPushClient(private_key="").send({"endpoint": "https://push"}, {"title": "Hi"}),
        ]
        for call in calls:
            with self.assertRaises(DeliveryError):
                call()
        self.post.assert_not_called()
        self.assertFalse(ResendClient(api_key="").is_configured)
        self.assertTrue(ResendClient(api_key="re_test").is_configured)


class ResendClientTests(ProviderTestCase):
    def test_send_email(self):
        self.post.return_value = response(200, {"id": "email-123"})
        client = ResendClient(api_key="re_test")
        self.assertEqual(client.send_email("a@example.com", "Hi", "<p>Hi</p>", "team@powerpulse.ai"), "email-123")

        url = self.post.call_args.args[0]
        kwargs = self.post.call_args.kwargs
        self.assertEqual(url, "https://api.resend.com/emails")
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer re_test"})
        self.assertEqual(kwargs["json"]["to"], ["a@example.com"])
        self.assertEqual(kwargs["json"]["from"], "team@powerpulse.ai")

    def test_errors(self):
        self.post.return_value = response(422, {"message": "invalid from"})
        with self.assertRaises(DeliveryError) as ctx:
            ResendClient(api_key="re_test").send_email("a@example.com", "Hi", "<p>Hi</p>")
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertIn("invalid from", str(ctx.exception))

        self.post.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(DeliveryError) as ctx:
            ResendClient(api_key="re_test").send_email("a@example.com", "Hi", "<p>Hi</p>")
        self.assertEqual(ctx.exception.provider, "resend")


class TwilioClientTests(ProviderTestCase):
    def setUp(self):
        super().setUp()
        self.client = TwilioClient(account_sid="AC1", auth_token="token")
        self.post.return_value = response(201, {"sid": "SM1"})

    def test_whatsapp_prefixes_both_numbers(self):
        with mock.patch.object(settings, "twilio_whatsapp_number", "+14155238886"):
            sid = self.client.send_whatsapp("+15550001111", "Hello", media_url="https://cdn/a.png")
        self.assertEqual(sid, "SM1")
        url = self.post.call_args.args[0]
        kwargs = self.post.call_args.kwargs
        self.assertEqual(url, "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json")
        self.assertEqual(kwargs["auth"], ("AC1", "token"))
        self.assertEqual(kwargs["data"]["To"], "whatsapp:+15550001111")
        self.assertEqual(kwargs["data"]["From"], "whatsapp:+14155238886")
        self.assertEqual(kwargs["data"]["MediaUrl"], "https://cdn/a.png")

    def test_sms_uses_plain_numbers(self):
        with mock.patch.object(settings, "twilio_sms_number", "+15557654321"):
            self.client.send_sms("+15550001111", "Hello")
        data = self.post.call_args.kwargs["data"]
        self.assertEqual((data["To"], data["From"]), ("+15550001111", "+15557654321"))
        self.assertNotIn("MediaUrl", data)

    def test_missing_sender(self):
        with mock.patch.object(settings, "twilio_whatsapp_number", ""):
            with self.assertRaises(DeliveryError):
                self.client.send_whatsapp("+15550001111", "Hello")
        self.post.assert_not_called()


class TelegramClientTests(ProviderTestCase):
    def setUp(self):
        super().setUp()
        self.client = TelegramClient(bot_token="123:abc")

    def test_send_photo(self):
        self.post.return_value = response(200, {"ok": True, "result": {"message_id": 9}})
        message_id = self.client.send_photo(
            "42", "https://cdn/thumb.png", caption="*Ready*", parse_mode="Markdown"
        )
        self.assertEqual(message_id, 9)
        self.assertEqual(self.post.call_args.args[0], "https://api.telegram.org/bot123:abc/sendPhoto")
        payload = self.post.call_args.kwargs["json"]
        self.assertEqual(payload["caption"], "*Ready*")
        self.assertNotIn("reply_markup", payload)

    def test_rate_limit_waits_for_retry_after(self):
        self.post.side_effect = [
            response(429, {"ok": False, "description": "Too Many Requests"}, headers={"Retry-After": "2"}),
            response(200, {"ok": True, "result": {"message_id": 10}}),
        ]
        self.assertEqual(self.client.send_message("42", "Hi"), 10)
        self.sleep.assert_called_once_with(2.0)
        self.assertEqual(self.post.call_count, 2)

    def test_rate_limit_retries_are_capped(self):
        self.post.return_value = response(
            429, {"ok": False, "description": "Too Many Requests", "parameters": {"retry_after": 1}}
        )
        with self.assertRaises(DeliveryError) as ctx:
            self.client.send_message("42", "Hi")
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(self.post.call_count, 4)
        self.assertEqual(self.sleep.call_count, 3)

    def test_rate_limit_with_unexpected_body(self):
        client = TelegramClient(bot_token="123:abc", max_retries=1)
        self.post.side_effect = [
            response(429, ["slow down"]),
            response(429, ["slow down"]),
        ]
        with self.assertRaises(DeliveryError):
            client.send_message("42", "Hi")
        self.sleep.assert_called_once_with(1.0)

    def test_not_ok_response_raises(self):
        self.post.return_value = response(400, {"ok": False, "description": "Bad Request: chat not found"})
        with self.assertRaises(DeliveryError) as ctx:
            self.client.send_message("42", "Hi")
        self.assertIn("chat not found", str(ctx.exception))
        self.assertFalse(ctx.exception.gone)

        self.post.return_value = response(200, {"ok": False, "description": "weird"})
        with self.assertRaises(DeliveryError):
            self.client.send_message("42", "Hi")

        self.post.return_value = response(403, {"ok": False, "description": "Forbidden: bot was blocked by the user"})
        with self.assertRaises(DeliveryError) as ctx:
            self.client.send_message("42", "Hi")
        self.assertTrue(ctx.exception.gone)

    def test_non_json_response_raises(self):
        self.post.return_value = response(502)
        with self.assertRaises(DeliveryError) as ctx:
            self.client.send_message("42", "Hi")
        self.assertEqual(ctx.exception.status_code, 502)


class WebPushClientTests(unittest.TestCase):
    subscription = {"endpoint": "https://push.example.com/1", "keys": {"p256dh": "key", "auth": "secret"}}

    def setUp(self):
        patcher = mock.patch("powerpulse_api.app.services.providers.webpush")
        self.webpush = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = WebPushClient(private_key="vapid-private", subject="mailto:team@powerpulse.ai")

    def test_send_signs_with_vapid(self):
        self.client.send(self.subscription, {"title": "Ready"})
        kwargs = self.webpush.call_args.kwargs
        self.assertEqual(kwargs["subscription_info"], self.subscription)
        self.assertEqual(json.loads(kwargs["data"]), {"title": "Ready"})
        self.assertEqual(kwargs["vapid_private_key"], "vapid-private")
        self.assertEqual(kwargs["vapid_claims"], {"sub": "mailto:team@powerpulse.ai"})

    def test_expired_subscription_is_gone(self):
        for status_code in (404, 410):
            self.webpush.side_effect = WebPushException("Push failed", response=mock.Mock(status_code=status_code))
            with self.assertRaises(DeliveryError) as ctx:
                self.client.send(self.subscription, {"title": "Ready"})
            self.assertTrue(ctx.exception.gone)
            self.assertEqual(ctx.exception.status_code, status_code)

    def test_server_error_is_not_gone(self):
        self.webpush.side_effect = WebPushException("Push failed", response=mock.Mock(status_code=500))
        with self.assertRaises(DeliveryError) as ctx:
            self.client.send(self.subscription, {"title": "Ready"})
        self.assertFalse(ctx.exception.gone)

        self.webpush.side_effect = WebPushException("Push failed")
        with self.assertRaises(DeliveryError) as ctx:
            self.client.send(self.subscription, {"title": "Ready"})
        self.assertIsNone(ctx.exception.status_code)


if __name__ == "__main__":
    unittest.main()
