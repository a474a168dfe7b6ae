import asyncio
import unittest
from types import SimpleNamespace

from telegram.error import Forbidden

from helpers import DummyLogger

from geoclock.errors import OperationTimeoutError
from geoclock.handlers_location import position_from_location
from geoclock.models import Position
from geoclock.telegram_host import TelegramNotificationSink, TelegramPositionSource
from geoclock.tracker import PERMISSION_DENIED, PERMISSION_GRANTED


class DummyBot:
    def __init__(self, forbidden=False):
        self.forbidden = forbidden
        self.messages = []
        self.actions = []

    async def send_chat_action(self, chat_id, action):
        if self.forbidden:
            raise Forbidden("bot was blocked by the user")
        self.actions.append((chat_id, action))

    async def send_message(self, chat_id, text):
        self.messages.append((chat_id, text))


class TelegramPositionSourceTests(unittest.IsolatedAsyncioTestCase):
    async def test_returns_fresh_cached_position(self):
        now = [100.0]
        source = TelegramPositionSource(DummyLogger(), clock=lambda: now[0])
        await source.push(Position(lat=1.0, lng=2.0, timestamp=95.0))

        position = await source.get_current_position(timeout_sec=1, maximum_age_sec=10)
        self.assertEqual(position.lat, 1.0)

        now[0] = 200.0
        self.assertIsNone(source.fresh_position(10))

    async def test_waits_for_next_push(self):
        source = TelegramPositionSource(DummyLogger())
        expected = Position(lat=3.0, lng=4.0)
        asyncio.get_running_loop().call_later(0.01, lambda: asyncio.ensure_future(source.push(expected)))

        position = await source.get_current_position(timeout_sec=1, maximum_age_sec=10)

        self.assertEqual(position, expected)

    async def test_times_out_without_location(self):
        source = TelegramPositionSource(DummyLogger())
        with self.assertRaises(OperationTimeoutError):
            await source.get_current_position(timeout_sec=0.02, maximum_age_sec=10)

    async def test_watchers_and_unwatch(self):
        source = TelegramPositionSource(DummyLogger())
        seen = []
        errors = []

        async def on_position(position):
            seen.append(position)
            if len(seen) == 2:
                raise RuntimeError("handler bug")

        unwatch = source.watch(on_position, errors.append)
        await source.push(Position(lat=1.0, lng=1.0))
        await source.push(Position(lat=2.0, lng=2.0))
        unwatch()
        await source.push(Position(lat=3.0, lng=3.0))

        self.assertEqual([p.lat for p in seen], [1.0, 2.0])
        self.assertEqual([str(e) for e in errors], ["handler bug"])

    def test_position_from_location(self):
        location = SimpleNamespace(latitude=40.7, longitude=-74.0, horizontal_accuracy=12)
        position = position_from_location(location, now_ts=5.0)
        self.assertEqual(position, Position(lat=40.7, lng=-74.0, accuracy_m=12.0, timestamp=5.0))


class TelegramNotificationSinkTests(unittest.IsolatedAsyncioTestCase):
    async def test_permission_granted_and_notify(self):
        bot = DummyBot()
        sink = TelegramNotificationSink(bot, 555, DummyLogger())

        self.assertEqual(await sink.request_permission(), PERMISSION_GRANTED)
        await sink.notify("Clocked In", "You have been clocked in.", "clock-in")

        self.assertEqual(bot.actions, [(555, "typing")])
        self.assertEqual(bot.messages, [(555, "Clocked In\nYou have been clocked in.")])

    async def test_blocked_bot_is_denied(self):
        sink = TelegramNotificationSink(DummyBot(forbidden=True), 555, DummyLogger())
        self.assertEqual(await sink.request_permission(), PERMISSION_DENIED)

    async def test_missing_chat_is_denied(self):
        sink = TelegramNotificationSink(DummyBot(), 0, DummyLogger())
        self.assertEqual(await sink.request_permission(), PERMISSION_DENIED)


if __name__ == "__main__":
    unittest.main()
