import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Optional

from geoclock.errors import NetworkError
from geoclock.models import CLOCK_IN, PendingAction, ShiftRef
from geoclock.network_monitor import EVENT_ONLINE
from geoclock.observers import ListenerSet

STATE_IDLE = "IDLE"
STATE_SYNCING = "SYNCING"
STATE_ERROR = "ERROR"

REF_KEY_PREFIX = "ref:"


@dataclass(frozen=True)
class SyncReport:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    error: Optional[str] = None


class SyncAborted(Exception):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


class SyncCoordinator:
    """Drains queued clock actions to the server, oldest first.

    ``IDLE -> SYNCING -> IDLE`` on a normal pass, ``SYNCING -> ERROR -> IDLE``
    after ``error_cooldown_sec`` when a pass aborts. Triggers that arrive while
    not IDLE are dropped; at most one pass runs at a time.
    """

    def __init__(
        self,
        store,
        api_client,
        network_monitor,
        logger,
        *,
        max_retries: int = 3,
        action_delay_sec: float = 0.1,
        error_cooldown_sec: float = 5.0,
        initial_delay_sec: float = 1.0,
    ) -> None:
        self.store = store
        self.api_client = api_client
        self.network_monitor = network_monitor
        self.logger = logger
        self.max_retries = max_retries
        self.action_delay_sec = action_delay_sec
        self.error_cooldown_sec = error_cooldown_sec
        self.initial_delay_sec = initial_delay_sec

        self.state = STATE_IDLE
        self.last_sync_attempt: Optional[float] = None
        self.last_report: Optional[SyncReport] = None
        self._listeners = ListenerSet(logger, "sync")
        self._unsubscribe_network = None
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False
        self._pass_synced = 0

    @property
    def is_syncing(self) -> bool:
        return self.state == STATE_SYNCING

    def init(self) -> None:
        self._stopping = False
        if self._unsubscribe_network is None:
            self._unsubscribe_network = self.network_monitor.add_listener(self._on_network_event)
        if self.network_monitor.is_online:
            self._spawn(self._delayed_start(self.initial_delay_sec))

    async def dispose(self) -> None:
        self._stopping = True
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._listeners.clear()

    def add_listener(self, callback):
        return self._listeners.add(callback)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _delayed_start(self, delay_sec: float) -> None:
        if delay_sec > 0:
            await asyncio.sleep(delay_sec)
        await self.start_sync()

    def _on_network_event(self, event: str, info: dict) -> None:
        if event == EVENT_ONLINE and self.state == STATE_IDLE:
            self._spawn(self.start_sync())

    async def force_sync(self) -> Optional[SyncReport]:
        if self.state != STATE_IDLE:
            self.logger.info("SYNC_FORCE_IGNORED state=%s", self.state)
            return None
        self.logger.info("SYNC_FORCE_START")
        return await self.start_sync()

    async def start_sync(self) -> Optional[SyncReport]:
        if self.state != STATE_IDLE or self._stopping:
            return None
        if not self.network_monitor.is_online:
            return None

        # No await between the check above and this assignment.
        self.state = STATE_SYNCING
        self.last_sync_attempt = time.time()
        self._listeners.notify("sync_started")

        try:
            report = await self._run_pass()
        except asyncio.CancelledError:
            self.state = STATE_IDLE
            raise
        except SyncAborted as exc:
            report = SyncReport(synced=self._pass_synced, aborted=True, error=str(exc.cause))
            self.logger.warning("SYNC_PASS_ABORTED synced=%s error=%s", report.synced, report.error)
            self._listeners.notify("sync_failed", {"error": report.error, "synced": report.synced})
            self._enter_error()
        except Exception as exc:
            report = SyncReport(synced=self._pass_synced, aborted=True, error=str(exc))
            self.logger.error("SYNC_PASS_FAILED error_type=%s error=%s", type(exc).__name__, exc)
            self._listeners.notify("sync_failed", {"error": report.error, "synced": report.synced})
            self._enter_error()
        else:
            self.state = STATE_IDLE
            self._listeners.notify(
                "sync_completed",
                {"synced": report.synced, "failed": report.failed, "skipped": report.skipped},
            )

        self.last_report = report
        return report

    def _enter_error(self) -> None:
        self.state = STATE_ERROR
        if self._stopping or self.error_cooldown_sec <= 0:
            self.state = STATE_IDLE
            return
        self._spawn(self._leave_error())

    async def _leave_error(self) -> None:
        try:
            await asyncio.sleep(self.error_cooldown_sec)
        finally:
            if self.state == STATE_ERROR:
                self.state = STATE_IDLE

    async def _run_pass(self) -> SyncReport:
        self._pass_synced = 0
        pending = await self.store.get_pending_actions()
        if not pending:
            self.logger.info("SYNC_NOTHING_PENDING")
            return SyncReport()

        self.logger.info("SYNC_PASS_START pending=%s", len(pending))
        failed = 0
        skipped = 0
        dispatched = 0

        for action in pending:
            if self._stopping:
                self.logger.info("SYNC_PASS_STOPPED synced=%s", self._pass_synced)
                break

            if action.retry_count >= self.max_retries:
                skipped += 1
                self.logger.warning(
                    "SYNC_ACTION_SKIPPED id=%s kind=%s retry_count=%s max_retries=%s",
                    action.id,
                    action.kind,
                    action.retry_count,
                    self.max_retries,
                )
                self._listeners.notify("action_skipped", {"action": action})
                continue

            if dispatched and self.action_delay_sec > 0:
                await asyncio.sleep(self.action_delay_sec)
            dispatched += 1

            try:
                ref = await self._dispatch(action)
            except Exception as exc:
                if self._is_network_error(exc):
                    self.network_monitor.report_network_failure()
                    raise SyncAborted(exc) from exc
                retry_count = await self.store.increment_retry(action.id)
                failed += 1
                self.logger.warning(
                    "SYNC_ACTION_REJECTED id=%s kind=%s retry_count=%s error=%s",
                    action.id,
                    action.kind,
                    retry_count,
                    exc,
                )
                self._listeners.notify("action_failed", {"action": action, "error": str(exc), "retry_count": retry_count})
                continue

            await self.store.mark_synced(action.id, server_ref=ref.id)
            await self._remember_reference(action, ref)
            self._pass_synced += 1
            self.logger.info("SYNC_ACTION_OK id=%s kind=%s shift_id=%s", action.id, action.kind, ref.id)
            self._listeners.notify("action_synced", {"action": action, "ref": ref, "synced_count": self._pass_synced})

        await self.store.clear_synced()
        self.logger.info("SYNC_PASS_DONE synced=%s failed=%s skipped=%s", self._pass_synced, failed, skipped)
        return SyncReport(synced=self._pass_synced, failed=failed, skipped=skipped)

    async def _dispatch(self, action: PendingAction) -> ShiftRef:
        if action.kind == CLOCK_IN:
            return await self.api_client.clock_in(action.payload)
        return await self.api_client.clock_out(action.payload)

    def _is_network_error(self, exc: BaseException) -> bool:
        if isinstance(exc, (NetworkError, asyncio.TimeoutError)):
            return True
        return not self.network_monitor.is_online

    async def _remember_reference(self, action: PendingAction, ref: ShiftRef) -> None:
        if not action.local_ref:
            return
        await self.store.cache_user_data(
            f"{REF_KEY_PREFIX}{action.local_ref}",
            {"id": ref.id, "timestamp": ref.timestamp, "kind": action.kind},
        )

    async def resolve_reference(self, local_ref: str) -> Optional[ShiftRef]:
        data = await self.store.get_cached_user_data(f"{REF_KEY_PREFIX}{local_ref}")
        if not isinstance(data, dict) or data.get("id") is None:
            return None
        return ShiftRef(id=str(data["id"]), timestamp=data.get("timestamp"))

    async def get_pending_sync_count(self) -> int:
        return len(await self.store.get_pending_actions())

    def get_sync_status(self) -> dict:
        return {
            "state": self.state,
            "is_syncing": self.is_syncing,
            "is_online": self.network_monitor.is_online,
            "last_sync_attempt": self.last_sync_attempt,
            "last_report": self.last_report,
        }
