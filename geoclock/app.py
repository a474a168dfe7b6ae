from telegram import BotCommand
from telegram.ext import Application

from geoclock import config
from geoclock.context import ClockContext
from geoclock.errors import GeoClockError
from geoclock.handlers_clock import build_clock_handlers
from geoclock.handlers_location import build_location_handlers
from geoclock.jobs import build_job_retry_sync
from geoclock.models import WorkLocation
from geoclock.telegram_host import TelegramNotificationSink, TelegramPositionSource


class ClockAgentApp:
    def __init__(self, logger) -> None:
        self.logger = logger

        if not config.BOT_TOKEN:
            raise RuntimeError("BOT_TOKEN is empty.")
        if not config.WORKER_CHAT_ID:
            raise RuntimeError("WORKER_CHAT_ID is required.")

        self.position_source = TelegramPositionSource(logger)
        self.clock_context = ClockContext.build(logger, self.position_source)

        self.application = (
            Application.builder()
            .token(config.BOT_TOKEN)
            .post_init(self._post_init)
            .post_shutdown(self._post_shutdown)
            .build()
        )

    async def _post_init(self, app: Application) -> None:
        commands = [
            BotCommand("start", "Show instructions"),
            BotCommand("status", "Show tracking and sync status"),
            BotCommand("clock_in", "Clock in at the current location"),
            BotCommand("clock_out", "Clock out at the current location"),
            BotCommand("override_in", "Clock in without location"),
            BotCommand("override_out", "Clock out without location"),
            BotCommand("sync", "Sync pending actions now"),
            BotCommand("shifts", "Show recent shifts"),
            BotCommand("track", "Start automatic clock-in/out"),
            BotCommand("untrack", "Stop automatic clock-in/out"),
        ]
        await app.bot.set_my_commands(commands)

        self.clock_context.tracker.notification_sink = TelegramNotificationSink(
            app.bot, config.WORKER_CHAT_ID, self.logger
        )
        await self.clock_context.init()
        await self._load_work_location()

        if config.AUTO_TRACK and self.clock_context.tracker.work_location is not None:
            # Waits for the first live location in the background.
            app.create_task(self.clock_context.tracker.start_tracking())

    async def _load_work_location(self) -> None:
        tracker = self.clock_context.tracker
        if self.clock_context.network_monitor.is_online:
            try:
                locations = await self.clock_context.api_client.locations(active=True)
            except GeoClockError as exc:
                self.logger.warning("WORK_LOCATIONS_LOAD_FAILED error_type=%s error=%s", type(exc).__name__, exc)
            else:
                if tracker.set_work_locations(locations) is not None:
                    self.logger.info("WORK_LOCATIONS_LOADED count=%s", len(locations))
                    return

        if config.WORK_LAT is None or config.WORK_LNG is None:
            self.logger.warning("WORK_LOCATION_MISSING reason=no_server_locations_and_no_env")
            return
        tracker.set_work_location(
            WorkLocation(
                lat=config.WORK_LAT,
                lng=config.WORK_LNG,
                radius_km=config.WORK_RADIUS_KM,
                name=config.WORK_NAME,
            )
        )

    async def _post_shutdown(self, app: Application) -> None:
        await self.clock_context.dispose()

    def register_handlers(self, app: Application) -> None:
        for handler in build_clock_handlers(self.clock_context, self.position_source, self.logger):
            app.add_handler(handler)

        for handler in build_location_handlers(self.clock_context, self.position_source, self.logger):
            app.add_handler(handler)

        if app.job_queue is None:
            raise RuntimeError(
                "JobQueue is missing. Install:\n"
                "python -m pip install \"python-telegram-bot[job-queue]\""
            )
        app.job_queue.run_repeating(
            build_job_retry_sync(self.clock_context, self.logger),
            interval=config.SYNC_RETRY_EVERY_SEC,
            first=config.SYNC_RETRY_EVERY_SEC,
        )

    def run(self) -> None:
        self.register_handlers(self.application)
        print("Bot started (polling). Ctrl+C to stop.")
        self.application.run_polling(
            allowed_updates=["message", "edited_message", "callback_query"],
        )
