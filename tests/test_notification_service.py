import unittest
from datetime import datetime, timezone
from unittest import mock

from powerpulse_api.app.schemas.delivery import PreferencesRead, PreferencesUpdate
from powerpulse_api.app.schemas.notification import Notification, PushSubscriptionIn
from powerpulse_api.app.services.delivery_log_service import DeliveryLogService
from powerpulse_api.app.services.notification_service import NotificationService, should_send
from powerpulse_api.app.services.preference_service import PreferenceService
from powerpulse_api.app.services.providers import DeliveryError
from tests.support import create_user, use_temp_database


NOON = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def subscription(endpoint: str = "https://push.example.com/sub/1") -> PushSubscriptionIn:
    return PushSubscriptionIn(endpoint=endpoint, keys={"p256dh": "BPubKey", "auth": "authSecret"})


def notification(type: str = "daily_audio") -> Notification:
    return Notification(type=type, title="Ready", body="Your audio is waiting.", data={"url": "/audio/1"})


class ShouldSendTests(unittest.TestCase):
    def test_type_switches(self):
        prefs = PreferencesRead()
        self.assertTrue(should_send("daily_audio", prefs))
        self.assertTrue(should_send("system", prefs))
        self.assertFalse(should_send("social", prefs))
        self.assertFalse(should_send("daily_audio", PreferencesRead(daily_audio_notifications=False)))
        self.assertTrue(should_send("system", PreferencesRead(daily_audio_notifications=False)))


class PushTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        use_temp_database(self)
        self.user = await create_user()
        self.push = mock.Mock()
        patcher = mock.patch.object(NotificationService, "push", self.push)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_no_subscription_is_a_failed_delivery(self):
        self.assertFalse(await NotificationService.send_push(self.user.id, notification(), NOON))
        [log] = await DeliveryLogService.list_logs(self.user.id)
        self.assertEqual((log.channel, log.status, log.message), ("push", "failed", "no push subscriptions"))
        self.push.send.assert_not_called()

    async def test_sends_to_every_subscription(self):
        await NotificationService.save_subscription(self.user.id, subscription("https://push.example.com/a"))
        await NotificationService.save_subscription(self.user.id, subscription("https://push.example.com/b"))
        self.assertTrue(await NotificationService.send_push(self.user.id, notification(), NOON))
        self.assertEqual(self.push.send.call_count, 2)

        info, payload = self.push.send.call_args.args
        self.assertEqual(info["keys"], {"p256dh": "BPubKey", "auth": "authSecret"})
        self.assertEqual(payload["title"], "Ready")
        self.assertEqual(payload["icon"], "/icon-192x192.png")
        self.assertFalse(payload["requireInteraction"])
        [log] = await DeliveryLogService.list_logs(self.user.id)
        self.assertEqual(log.status, "delivered")
        self.assertEqual(log.message, "sent to 2/2 subscriptions")

    async def test_expired_subscription_is_removed(self):
        await NotificationService.save_subscription(self.user.id, subscription())
        self.push.send.side_effect = DeliveryError("webpush", "Gone", status_code=410, gone=True)
        self.assertFalse(await NotificationService.send_push(self.user.id, notification(), NOON))
        status = await NotificationService.subscription_status(self.user.id)
        self.assertFalse(status.has_subscriptions)

    async def test_transient_error_keeps_subscription(self):
        await NotificationService.save_subscription(self.user.id, subscription())
        self.push.send.side_effect = DeliveryError("webpush", "Server error", status_code=500)
        self.assertFalse(await NotificationService.send_push(self.user.id, notification(), NOON))
        self.assertEqual((await NotificationService.subscription_status(self.user.id)).subscription_count, 1)

    async def test_quiet_hours_and_type_switches_skip_push(self):
        await NotificationService.save_subscription(self.user.id, subscription())
        await PreferenceService.update_preferences(
            self.user.id,
            PreferencesUpdate(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00"),
        )
        night = datetime(2024, 1, 15, 23, 0, tzinfo=timezone.utc)
        self.assertFalse(await NotificationService.send_push(self.user.id, notification(), night))
        self.assertTrue(await NotificationService.send_push(self.user.id, notification(), NOON))

        self.assertFalse(await NotificationService.send_push(self.user.id, notification("social"), NOON))
        messages = [log.message for log in await DeliveryLogService.list_logs(self.user.id)]
        self.assertIn("quiet hours", messages)
        self.assertIn("social notifications disabled", messages)
        self.assertEqual(self.push.send.call_count, 1)

    async def test_subscription_upsert_and_removal(self):
        endpoint = "https://push.example.com/sub/1"
        await NotificationService.save_subscription(self.user.id, subscription(endpoint))
        await NotificationService.save_subscription(self.user.id, subscription(endpoint))
        status = await NotificationService.subscription_status(self.user.id)
        self.assertEqual(status.subscription_count, 1)
        self.assertEqual(status.subscriptions[0].endpoint, endpoint)

        self.assertTrue(await NotificationService.remove_subscription(self.user.id, endpoint))
        self.assertFalse(await NotificationService.remove_subscription(self.user.id, endpoint))


class InAppTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        use_temp_database(self)
        self.user = await create_user()
        self.other = await create_user("other@example.com")

    async def test_inbox_lifecycle(self):
        results = await NotificationService.send_notification(self.user.id, notification(), ["in_app"])
        self.assertEqual(results, {"in_app": True})
        await NotificationService.send_notification(self.user.id, notification("system"), ["in_app"])

        inbox = await NotificationService.list_in_app(self.user.id)
        self.assertEqual(len(inbox), 2)
        self.assertEqual(inbox[-1].data, {"url": "/audio/1"})
        self.assertEqual(await NotificationService.unread_count(self.user.id), 2)

        await NotificationService.mark_read(self.user.id, inbox[0].id)
        self.assertEqual(len(await NotificationService.list_in_app(self.user.id, unread_only=True)), 1)
        with self.assertRaises(ValueError):
            await NotificationService.mark_read(self.other.id, inbox[1].id)

        self.assertEqual(await NotificationService.mark_all_read(self.user.id), 1)
        self.assertEqual(await NotificationService.unread_count(self.user.id), 0)

    async def test_in_app_respects_preferences(self):
        await PreferenceService.set_channel_enabled(self.user.id, "in_app", False)
        results = await NotificationService.send_notification(self.user.id, notification(), ["in_app"])
        self.assertEqual(results, {"in_app": False})
        self.assertEqual(await NotificationService.list_in_app(self.user.id), [])

    async def test_send_batch(self):
        results = await NotificationService.send_batch(
            [
                {"user_id": self.user.id, "notification": notification(), "channels": ["in_app"]},
                {"user_id": self.other.id, "notification": notification("system"), "channels": ["in_app"]},
            ]
        )
        self.assertEqual(results, [{"in_app": True}, {"in_app": True}])
        self.assertEqual(await NotificationService.unread_count(self.other.id), 1)


if __name__ == "__main__":
    unittest.main()
