from telegram import KeyboardButton, ReplyKeyboardMarkup, Update
from telegram.ext import CommandHandler, ContextTypes

from geoclock import config
from geoclock.errors import GeoClockError, StorageError
from geoclock.guards import ensure_worker
from geoclock.models import CLOCK_IN
from geoclock.shift_history import ShiftListing

BTN_SEND_LOCATION = "📍 Send location"


def location_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [[KeyboardButton(BTN_SEND_LOCATION, request_location=True)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def note_from_args(args) -> str:
    return " ".join(str(arg) for arg in (args or [])).strip()


def format_submit_result(result) -> str:
    action = "Clock-in" if result.kind == CLOCK_IN else "Clock-out"
    if not result.offline:
        return f"{action} confirmed (shift #{result.ref.id}, {result.ref.timestamp})."
    if result.fallback:
        return f"{action} saved, the server could not be reached. It will sync later ({result.ref.id})."
    return f"{action} saved offline, will sync when back online ({result.ref.id})."


def format_status(clock_context) -> str:
    monitor = clock_context.network_monitor
    tracker_status = clock_context.tracker.get_status()
    sync_status = clock_context.sync.get_sync_status()
    location = tracker_status["work_location"]

    lines = [
        f"Network: {'online' if monitor.is_online else 'offline'}",
        f"Tracking: {'on' if tracker_status['is_tracking'] else 'off'}",
        f"Work location: {location.name if location else 'not set'}",
        f"Geofence: {tracker_status['last_status'] or 'unknown'}",
        f"Pending sync: {clock_context.submitter.pending_sync_count}",
        f"Sync: {sync_status['state']}",
    ]
    report = sync_status["last_report"]
    if report is not None:
        lines.append(f"Last sync: {report.synced} synced, {report.failed} failed, {report.skipped} skipped")
    if tracker_status["last_error"]:
        lines.append(f"Last error: {tracker_status['last_error']}")
    return "\n".join(lines)


def format_shifts(listing: ShiftListing, limit: int = 10) -> str:
    lines = []
    if listing.from_cache:
        lines.append("Showing cached shifts (offline).")
    if not listing.shifts:
        lines.append("No shifts yet.")
    for shift in listing.shifts[:limit]:
        end = shift.clock_out_at or "open"
        lines.append(f"#{shift.id}: {shift.clock_in_at} → {end}")
    if listing.pending:
        lines.append(f"Waiting to sync: {len(listing.pending)}")
        for action in listing.pending[:limit]:
            lines.append(f"• {action.kind} at {action.created_at} (retries: {action.retry_count})")
    return "\n".join(lines)


def build_clock_handlers(clock_context, position_source, logger):
    async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await ensure_worker(update, logger):
            return
        await update.effective_message.reply_text(
            "Share your live location to enable automatic clock-in/out.\n"
            "Commands: /clock_in /clock_out /status /sync /shifts /track /untrack",
            reply_markup=location_keyboard(),
        )

    async def submit(update: Update, context: ContextTypes.DEFAULT_TYPE, *, clock_in: bool, override: bool) -> None:
        if not await ensure_worker(update, logger):
            return
        msg = update.effective_message

        position = position_source.fresh_position(config.POSITION_MAX_AGE_SEC * 6)
        if position is None and not override:
            await msg.reply_text("Send your current location first.", reply_markup=location_keyboard())
            return

        lat = position.lat if position else 0.0
        lng = position.lng if position else 0.0
        note = note_from_args(context.args)
        submitter = clock_context.submitter
        action = submitter.clock_in if clock_in else submitter.clock_out
        try:
            result = await action(note=note, lat=lat, lng=lng, manual_override=override)
        except StorageError as exc:
            logger.error("CLOCK_STORAGE_ERROR error=%s", exc)
            await msg.reply_text("Could not save the action on this device. Please try again.")
            return
        except GeoClockError as exc:
            logger.warning("CLOCK_REJECTED_LOCALLY error=%s", exc)
            await msg.reply_text(f"Invalid clock data: {exc}")
            return

        await msg.reply_text(format_submit_result(result))

    async def cmd_clock_in(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await submit(update, context, clock_in=True, override=False)

    async def cmd_clock_out(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await submit(update, context, clock_in=False, override=False)

    async def cmd_override_in(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await submit(update, context, clock_in=True, override=True)

    async def cmd_override_out(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await submit(update, context, clock_in=False, override=True)

    async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await ensure_worker(update, logger):
            return
        await update.effective_message.reply_text(format_status(clock_context))

    async def cmd_sync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await ensure_worker(update, logger):
            return
        msg = update.effective_message
        if not clock_context.network_monitor.is_online:
            await msg.reply_text("Offline. Pending actions will sync once the connection is back.")
            return
        report = await clock_context.sync.force_sync()
        if report is None:
            await msg.reply_text("Sync is already running.")
            return
        if report.aborted:
            await msg.reply_text(f"Sync interrupted: {report.error}. Will retry automatically.")
            return
        await msg.reply_text(f"Sync done: {report.synced} synced, {report.failed} failed, {report.skipped} skipped.")

    async def cmd_shifts(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await ensure_worker(update, logger):
            return
        try:
            listing = await clock_context.history.list_shifts()
        except StorageError as exc:
            logger.error("SHIFTS_STORAGE_ERROR error=%s", exc)
            await update.effective_message.reply_text("Local storage is unavailable.")
            return
        await update.effective_message.reply_text(format_shifts(listing))

    async def cmd_track(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await ensure_worker(update, logger):
            return
        msg = update.effective_message
        if clock_context.tracker.work_location is None:
            await msg.reply_text("No work location configured.")
            return
        await msg.reply_text("Waiting for your location…", reply_markup=location_keyboard())
        started = await clock_context.tracker.start_tracking()
        if started:
            await msg.reply_text("Background tracking is on.")
        else:
            await msg.reply_text("Could not get your location. Share your live location and try /track again.")

    async def cmd_untrack(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await ensure_worker(update, logger):
            return
        await clock_context.tracker.stop_tracking()
        await update.effective_message.reply_text("Background tracking is off.")

    return [
        CommandHandler("start", cmd_start),
        CommandHandler("clock_in", cmd_clock_in),
        CommandHandler("clock_out", cmd_clock_out),
        CommandHandler("override_in", cmd_override_in),
        CommandHandler("override_out", cmd_override_out),
        CommandHandler("status", cmd_status),
        CommandHandler("sync", cmd_sync),
        CommandHandler("shifts", cmd_shifts),
        CommandHandler("track", cmd_track, block=False),
        CommandHandler("untrack", cmd_untrack),
    ]
