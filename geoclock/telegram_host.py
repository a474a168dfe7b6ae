import asyncio
import time
from typing import Awaitable, Callable, Optional

from telegram.error import Forbidden, TelegramError

from geoclock.errors import OperationTimeoutError
from geoclock.models import Position
from geoclock.tracker import PERMISSION_DENIED, PERMISSION_GRANTED

PositionCallback = Callable[[Position], Awaitable[None]]


class TelegramPositionSource:
    """Position source fed by the worker's (live) location messages."""

    def __init__(self, logger, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = logger
        self._clock = clock
        self.last_position: Optional[Position] = None
        self._watchers: dict[int, tuple[PositionCallback, Callable]] = {}
        self._next_token = 0
        self._waiters: list[asyncio.Future] = []

    async def push(self, position: Position) -> None:
        self.last_position = position
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(position)
        self._waiters = []

        for token, (on_position, on_error) in list(self._watchers.items()):
            if token not in self._watchers:
                continue
            try:
                await on_position(position)
            except Exception as exc:
                self.logger.error("POSITION_WATCHER_ERROR error_type=%s error=%s", type(exc).__name__, exc)
                on_error(exc)

    def fresh_position(self, maximum_age_sec: float) -> Optional[Position]:
        position = self.last_position
        if position is None:
            return None
        if (self._clock() - position.timestamp) > maximum_age_sec:
            return None
        return position

    async def get_current_position(self, *, timeout_sec: float, maximum_age_sec: float) -> Position:
        cached = self.fresh_position(maximum_age_sec)
        if cached is not None:
            return cached

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout_sec)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(f"no location received within {timeout_sec}s") from exc
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def watch(self, on_position: PositionCallback, on_error: Callable) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._watchers[token] = (on_position, on_error)

        def unwatch() -> None:
            self._watchers.pop(token, None)

        return unwatch


class TelegramNotificationSink:
    """Sends tracker notifications to the worker chat."""

    def __init__(self, bot, chat_id: int, logger) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.logger = logger

    async def request_permission(self) -> str:
        if not self.chat_id:
            return PERMISSION_DENIED
        try:
            await self.bot.send_chat_action(chat_id=self.chat_id, action="typing")
        except Forbidden as exc:
            self.logger.warning("NOTIFY_CHAT_FORBIDDEN chat_id=%s error=%s", self.chat_id, exc)
            return PERMISSION_DENIED
        except TelegramError as exc:
            self.logger.warning("NOTIFY_CHAT_CHECK_FAILED chat_id=%s error=%s", self.chat_id, exc)
            return PERMISSION_DENIED
        return PERMISSION_GRANTED

    async def notify(self, title: str, body: str, tag: str) -> None:
        self.logger.info("NOTIFY_SEND chat_id=%s tag=%s", self.chat_id, tag)
        await self.bot.send_message(chat_id=self.chat_id, text=f"{title}\n{body}")
