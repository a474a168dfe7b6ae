import asyncio
import time
from typing import Callable

from geoclock.errors import NetworkError
from geoclock.models import CLOCK_IN, CLOCK_OUT, ClockPayload, ShiftRef, SubmitResult, offline_ref, utc_now_iso


class ClockActionSubmitter:
    """Single ``clock_in``/``clock_out`` entry point for online and offline use.

    Offline, or when the online attempt fails for any reason, the action is
    written to the store and an optimistic ``offline_<millis>`` reference is
    returned. Business rules (already clocked in, etc.) belong to the caller.
    """

    def __init__(
        self,
        store,
        api_client,
        network_monitor,
        logger,
        *,
        online_timeout_sec: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.api_client = api_client
        self.network_monitor = network_monitor
        self.logger = logger
        self.online_timeout_sec = online_timeout_sec
        self._clock = clock
        self.pending_sync_count = 0

    async def refresh_pending_count(self) -> int:
        self.pending_sync_count = len(await self.store.get_pending_actions())
        return self.pending_sync_count

    def on_sync_event(self, event: str, info: dict) -> None:
        if event == "action_synced":
            self.pending_sync_count = max(self.pending_sync_count - 1, 0)

    async def clock_in(
        self,
        note: str = "",
        lat: float = 0.0,
        lng: float = 0.0,
        manual_override: bool = False,
        *,
        background: bool = False,
    ) -> SubmitResult:
        payload = ClockPayload(note=note, lat=lat, lng=lng, manual_override=manual_override, background=background)
        return await self._submit(CLOCK_IN, payload)

    async def clock_out(
        self,
        note: str = "",
        lat: float = 0.0,
        lng: float = 0.0,
        manual_override: bool = False,
        *,
        background: bool = False,
    ) -> SubmitResult:
        payload = ClockPayload(note=note, lat=lat, lng=lng, manual_override=manual_override, background=background)
        return await self._submit(CLOCK_OUT, payload)

    async def _submit(self, kind: str, payload: ClockPayload) -> SubmitResult:
        created_at = utc_now_iso()

        if not self.network_monitor.is_online:
            self.logger.info("CLOCK_OFFLINE_QUEUE kind=%s", kind)
            return await self._queue(kind, payload, created_at, fallback=False)

        try:
            ref = await asyncio.wait_for(self._call_remote(kind, payload), timeout=self.online_timeout_sec)
        except Exception as exc:
            if isinstance(exc, (NetworkError, asyncio.TimeoutError)):
                self.network_monitor.report_network_failure()
            self.logger.warning(
                "CLOCK_ONLINE_FAILED kind=%s error_type=%s error=%s -> queue",
                kind,
                type(exc).__name__,
                exc,
            )
            return await self._queue(kind, payload, created_at, fallback=True)

        self.logger.info("CLOCK_ONLINE_OK kind=%s shift_id=%s", kind, ref.id)
        return SubmitResult(kind=kind, ref=ref, offline=False)

    async def _call_remote(self, kind: str, payload: ClockPayload) -> ShiftRef:
        if kind == CLOCK_IN:
            return await self.api_client.clock_in(payload)
        return await self.api_client.clock_out(payload)

    async def _queue(self, kind: str, payload: ClockPayload, created_at: str, *, fallback: bool) -> SubmitResult:
        local_ref = offline_ref(self._clock())
        action_id = await self.store.add_action(kind, payload, local_ref=local_ref, created_at=created_at)
        self.pending_sync_count += 1
        self.logger.info(
            "CLOCK_QUEUED kind=%s action_id=%s local_ref=%s fallback=%s pending=%s",
            kind,
            action_id,
            local_ref,
            fallback,
            self.pending_sync_count,
        )
        return SubmitResult(
            kind=kind,
            ref=ShiftRef(id=local_ref, timestamp=created_at, provisional=True),
            offline=True,
            fallback=fallback,
            action_id=action_id,
        )
