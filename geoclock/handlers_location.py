import time

from telegram import Update
from telegram.ext import ContextTypes, MessageHandler, filters

from geoclock.guards import is_worker
from geoclock.models import Position


def position_from_location(location, now_ts: float | None = None) -> Position:
    accuracy = getattr(location, "horizontal_accuracy", None)
    return Position(
        lat=float(location.latitude),
        lng=float(location.longitude),
        accuracy_m=float(accuracy) if accuracy is not None else None,
        timestamp=now_ts if now_ts is not None else time.time(),
    )


def build_location_handlers(clock_context, position_source, logger):
    async def handle_location(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        user = update.effective_user
        if not message or not message.location or not user:
            return
        if not is_worker(user.id):
            logger.info("LOCATION_IGNORED user=%s reason=not_worker", user.id)
            return

        position = position_from_location(message.location)
        live = update.edited_message is not None or bool(getattr(message.location, "live_period", None))
        logger.info(
            "LOCATION_RECEIVED user=%s live=%s lat=%.6f lng=%.6f acc=%s",
            user.id,
            live,
            position.lat,
            position.lng,
            position.accuracy_m,
        )
        await position_source.push(position)

        if update.message is not None and not live:
            tracker = clock_context.tracker
            status = tracker.get_status()
            await message.reply_text(
                f"Location received. Geofence: {status['last_status'] or 'unknown'}."
                + ("" if tracker.is_tracking else " Tracking is off, use /track to start it.")
            )

    return [
        MessageHandler(filters.LOCATION, handle_location),
    ]
