from dataclasses import dataclass, field
from typing import Optional

from geoclock.errors import NetworkError, ServerRejection
from geoclock.models import PendingAction, Shift


@dataclass
class ShiftListing:
    shifts: list[Shift] = field(default_factory=list)
    pending: list[PendingAction] = field(default_factory=list)
    from_cache: bool = False
    error: Optional[str] = None

    @property
    def open_shift(self) -> Optional[Shift]:
        for shift in self.shifts:
            if shift.is_open:
                return shift
        return None


class ShiftHistory:
    """Confirmed shifts from the server, with the local cache as fallback.

    Pending queued actions are returned next to the shifts so that callers
    holding an optimistic ``offline_*`` reference can see it is still
    unconfirmed.
    """

    def __init__(self, store, api_client, network_monitor, sync_coordinator, logger) -> None:
        self.store = store
        self.api_client = api_client
        self.network_monitor = network_monitor
        self.sync_coordinator = sync_coordinator
        self.logger = logger

    async def list_shifts(self) -> ShiftListing:
        pending = await self.store.get_pending_actions()

        if self.network_monitor.is_online:
            try:
                shifts = await self.api_client.shifts()
            except NetworkError as exc:
                self.network_monitor.report_network_failure()
                self.logger.warning("SHIFTS_FETCH_FAILED error=%s -> cache", exc)
                cached = await self.store.get_cached_shifts()
                return ShiftListing(shifts=cached, pending=pending, from_cache=True, error=str(exc))
            except ServerRejection as exc:
                self.logger.warning("SHIFTS_FETCH_REJECTED error=%s -> cache", exc)
                cached = await self.store.get_cached_shifts()
                return ShiftListing(shifts=cached, pending=pending, from_cache=True, error=str(exc))

            await self.store.cache_shifts(shifts)
            ordered = sorted(shifts, key=lambda shift: shift.clock_in_at or "", reverse=True)
            self.logger.info("SHIFTS_FETCHED count=%s pending=%s", len(ordered), len(pending))
            return ShiftListing(shifts=ordered, pending=pending)

        cached = await self.store.get_cached_shifts()
        return ShiftListing(shifts=cached, pending=pending, from_cache=True)

    async def resolve_reference(self, local_ref: str):
        return await self.sync_coordinator.resolve_reference(local_ref)
