import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import bot.bot_app as bot_app


def make_bot() -> bot_app.SongBot:
    bot = bot_app.SongBot.__new__(bot_app.SongBot)
    bot.bot_user_id = "999"
    bot.channel_id = "100"
    bot.channel_label = "streamer"
    bot.prefix_text = "!"
    bot.settings = bot_app.BotSettings(
        token="tok",
        refresh_token="refresh",
        client_id="client",
        client_secret="secret",
        bot_user_id="999",
        channel_id="100",
        channel_login="streamer",
    )
    bot._send_message = AsyncMock()
    return bot


def chat(text: str, user_id: str = "1", name: str = "Alice", **flags) -> SimpleNamespace:
    chatter = SimpleNamespace(id=user_id, display_name=name, name=name.lower(), **flags)
    return SimpleNamespace(id="msg-1", text=text, chatter=chatter)


class SettingsTests(unittest.TestCase):
    def test_settings_from_env(self) -> None:
        settings = bot_app.settings_from_env(
            {
                "TWITCH_BOT_TOKEN": "oauth:abc",
                "TWITCH_REFRESH_TOKEN": "r",
                "TWITCH_CLIENT_ID": "cid",
                "TWITCH_CLIENT_SECRET": "cs",
                "BOT_USER_ID": "999",
                "TWITCH_CHANNEL_ID": "100",
                "TWITCH_SCOPES": "user:bot, user:read:chat user:write:chat",
            }
        )
        self.assertEqual(settings.token, "abc")
        self.assertEqual(settings.scopes, ["user:bot", "user:read:chat", "user:write:chat"])
        self.assertIsNone(settings.channel_login)
        self.assertEqual(settings.missing(), [])

    def test_missing_settings_are_listed(self) -> None:
        settings = bot_app.settings_from_env({"TWITCH_BOT_TOKEN": "abc"})
        self.assertEqual(
            settings.missing(),
            [
                "TWITCH_REFRESH_TOKEN",
                "TWITCH_CLIENT_ID",
                "TWITCH_CLIENT_SECRET",
                "BOT_USER_ID",
                "TWITCH_CHANNEL_ID",
            ],
        )
        with self.assertRaises(RuntimeError):
            bot_app.SongBot(settings)

    def test_tier_normalization(self) -> None:
        self.assertEqual(bot_app._tier_of(SimpleNamespace(tier="3000")), "3000")
        self.assertEqual(bot_app._tier_of(SimpleNamespace(tier="Prime")), "Prime")
        self.assertEqual(bot_app._tier_of(SimpleNamespace(tier="gold")), "1000")
        self.assertEqual(bot_app._tier_of(SimpleNamespace()), "1000")


class BotMessageTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._original_backend = bot_app.backend
        self.backend = AsyncMock()
        self.backend.push_bot_log = AsyncMock()
        self.backend.dispatch_chat = AsyncMock(return_value=None)
        self.backend.post_support_event = AsyncMock(return_value={"credited": False, "announcement": None})
        bot_app.backend = self.backend
        self.bot = make_bot()

    async def asyncTearDown(self) -> None:
        bot_app.backend = self._original_backend

    async def test_command_is_forwarded_and_reply_sent(self) -> None:
        self.backend.dispatch_chat.return_value = '@Alice Added "Muse - Uprising" to the queue!'

        await self.bot.event_message(chat("  !sr Muse - Uprising ", moderator=True))

        self.backend.dispatch_chat.assert_awaited_once_with(
            "!sr Muse - Uprising",
            is_moderator=True,
            is_broadcaster=False,
            user_id="1",
            display_name="Alice",
        )
        self.bot._send_message.assert_awaited_once_with(
            '@Alice Added "Muse - Uprising" to the queue!',
            metadata={"event": "command"},
            reply_to="msg-1",
        )

    async def test_silent_dispatch_sends_nothing(self) -> None:
        await self.bot.event_message(chat("!next"))

        self.backend.dispatch_chat.assert_awaited_once()
        self.bot._send_message.assert_not_awaited()

    async def test_ignored_messages(self) -> None:
        await self.bot.event_message(chat("hello chat"))
        await self.bot.event_message(chat("!list", user_id="999", name="SongBot"))
        await self.bot.event_message(chat("!list", user_id=""))

        self.backend.dispatch_chat.assert_not_awaited()

    async def test_backend_failure_is_logged_to_console(self) -> None:
        self.backend.dispatch_chat.side_effect = bot_app.BackendError(401, "invalid admin token")

        await self.bot.event_message(chat("!list"))

        self.bot._send_message.assert_not_awaited()
        self.backend.push_bot_log.assert_awaited_once()
        kwargs = self.backend.push_bot_log.await_args.kwargs
        self.assertEqual(kwargs["level"], "error")
        self.assertEqual(kwargs["metadata"]["status"], 401)
        self.assertEqual(kwargs["metadata"]["event"], "command")

    async def test_console_push_failures_are_swallowed(self) -> None:
        self.backend.push_bot_log.side_effect = bot_app.BackendError(503, "service not ready")

        await bot_app.push_console_event("info", "hello", event="lifecycle")

        self.backend.push_bot_log.assert_awaited_once_with(
            level="info", message="hello", metadata={"event": "lifecycle"}
        )


class BotSupportEventTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._original_backend = bot_app.backend
        self.backend = AsyncMock()
        self.backend.push_bot_log = AsyncMock()
        self.backend.post_support_event = AsyncMock(
            return_value={"credited": True, "announcement": "Thx for cheering 500 bits Alice!"}
        )
        bot_app.backend = self.backend
        self.bot = make_bot()
        self.alice = SimpleNamespace(id="1", display_name="Alice")

    async def asyncTearDown(self) -> None:
        bot_app.backend = self._original_backend

    async def test_cheer_is_recorded_and_announced(self) -> None:
        await self.bot.event_cheer(SimpleNamespace(user=self.alice, bits=500, anonymous=False))

        self.backend.post_support_event.assert_awaited_once_with(
            "bits", {"user_id": "1", "display_name": "Alice", "bits": 500}
        )
        self.bot._send_message.assert_awaited_once_with(
            "Thx for cheering 500 bits Alice!", metadata={"event": "bits"}
        )

    async def test_anonymous_cheer_is_ignored(self) -> None:
        await self.bot.event_cheer(SimpleNamespace(user=None, bits=500, anonymous=True))
        await self.bot.event_cheer(SimpleNamespace(user=self.alice, bits=0, anonymous=False))

        self.backend.post_support_event.assert_not_awaited()

    async def test_subscription_forwards_tier(self) -> None:
        self.backend.post_support_event.return_value = {"credited": True, "announcement": None}

        await self.bot.event_subscription(SimpleNamespace(user=self.alice, tier="2000", gift=False))

        self.backend.post_support_event.assert_awaited_once_with(
            "subscription", {"user_id": "1", "display_name": "Alice", "tier": "2000"}
        )
        self.bot._send_message.assert_not_awaited()

    async def test_gifted_recipient_is_not_credited(self) -> None:
        await self.bot.event_subscription(SimpleNamespace(user=self.alice, tier="1000", gift=True))

        self.backend.post_support_event.assert_not_awaited()

    async def test_resubscription_carries_months(self) -> None:
        payload = SimpleNamespace(user=self.alice, tier="1000", cumulative_months=14)

        await self.bot.event_subscription_message(payload)

        self.backend.post_support_event.assert_awaited_once_with(
            "subscription", {"user_id": "1", "display_name": "Alice", "tier": "1000", "months": 14}
        )

    async def test_gift_credits_gifter_with_count(self) -> None:
        await self.bot.event_subscription_gift(
            SimpleNamespace(user=self.alice, tier="1000", total=5, anonymous=False)
        )
        await self.bot.event_subscription_gift(
            SimpleNamespace(user=None, tier="1000", total=5, anonymous=True)
        )

        self.backend.post_support_event.assert_awaited_once_with(
            "subscription", {"user_id": "1", "display_name": "Alice", "tier": "1000", "count": 5}
        )

    async def test_failed_event_is_logged(self) -> None:
        self.backend.post_support_event.side_effect = bot_app.BackendError(422, "bits: too small")

        await self.bot.event_cheer(SimpleNamespace(user=self.alice, bits=1, anonymous=False))

        self.bot._send_message.assert_not_awaited()
        kwargs = self.backend.push_bot_log.await_args.kwargs
        self.assertEqual(kwargs["level"], "error")
        self.assertEqual(kwargs["metadata"]["event"], "bits")


class BotLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._original_backend = bot_app.backend
        self.backend = AsyncMock()
        bot_app.backend = self.backend

    async def asyncTearDown(self) -> None:
        bot_app.backend = self._original_backend

    async def test_main_stops_when_settings_missing(self) -> None:
        with patch.object(bot_app, "settings_from_env", return_value=bot_app.BotSettings(*([None] * 6))):
            with patch.object(bot_app, "SongBot") as bot_cls:
                await bot_app.main()

        bot_cls.assert_not_called()
        self.backend.start.assert_awaited_once()
        self.backend.close.assert_awaited_once()
        self.assertEqual(self.backend.push_bot_log.await_args.kwargs["level"], "error")


if __name__ == "__main__":
    unittest.main()
