from telegram.ext import ContextTypes

from geoclock.sync import STATE_IDLE


def build_job_retry_sync(clock_context, logger):
    async def job_retry_sync(context: ContextTypes.DEFAULT_TYPE) -> None:
        monitor = clock_context.network_monitor
        sync = clock_context.sync

        if not monitor.is_online:
            # A probe here lets the online edge trigger the sync on its own.
            await monitor.check_connectivity()
            return
        if sync.state != STATE_IDLE:
            return

        pending = await sync.get_pending_sync_count()
        if pending <= 0:
            return

        logger.info("SYNC_RETRY_JOB pending=%s", pending)
        report = await sync.start_sync()
        if report is not None and report.aborted:
            logger.warning("SYNC_RETRY_JOB_ABORTED error=%s", report.error)

    return job_retry_sync
