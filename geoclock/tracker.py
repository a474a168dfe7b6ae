import asyncio
from typing import Any, Awaitable, Callable, Optional, Protocol

from geoclock.errors import GeoClockError, LocationPermissionError, OperationTimeoutError
from geoclock.geo import GeofenceEvaluator, GeofenceTransition
from geoclock.models import EVENT_ENTERED, Position, WorkLocation

PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_DEFAULT = "default"


class PositionSource(Protocol):
    async def get_current_position(self, *, timeout_sec: float, maximum_age_sec: float) -> Position:
        ...

    def watch(
        self,
        on_position: Callable[[Position], Awaitable[None]],
        on_error: Callable[[Exception], Any],
    ) -> Callable[[], None]:
        ...


class VisibilityObserver(Protocol):
    def add_listener(self, callback: Callable[[bool], Any]) -> Callable[[], None]:
        ...


class NotificationSink(Protocol):
    async def request_permission(self) -> str:
        ...

    async def notify(self, title: str, body: str, tag: str) -> None:
        ...


def pick_work_location(locations: list[WorkLocation], active_flags: Optional[list[bool]] = None) -> Optional[WorkLocation]:
    if not locations:
        return None
    if active_flags:
        for location, active in zip(locations, active_flags):
            if active:
                return location
    return locations[0]


class BackgroundTracker:
    """Feeds position samples into the geofence evaluator and clocks on edges.

    Device capabilities are injected: a ``PositionSource`` is required, a
    ``VisibilityObserver`` and ``NotificationSink`` are optional. Permission
    problems and timeouts stop tracking quietly instead of raising.
    """

    def __init__(
        self,
        evaluator: GeofenceEvaluator,
        submitter,
        position_source: PositionSource,
        logger,
        *,
        notification_sink: Optional[NotificationSink] = None,
        visibility: Optional[VisibilityObserver] = None,
        position_timeout_sec: float = 30.0,
        maximum_age_sec: float = 10.0,
    ) -> None:
        self.evaluator = evaluator
        self.submitter = submitter
        self.position_source = position_source
        self.logger = logger
        self.notification_sink = notification_sink
        self.visibility = visibility
        self.position_timeout_sec = position_timeout_sec
        self.maximum_age_sec = maximum_age_sec

        self.is_tracking = False
        self.notification_permission = PERMISSION_DEFAULT
        self.last_error: Optional[str] = None
        self._unwatch: Optional[Callable[[], None]] = None
        self._unsubscribe_visibility: Optional[Callable[[], None]] = None
        self._sample_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._starting: Optional[asyncio.Task] = None

    async def init(self) -> None:
        await self.request_notification_permission()
        if self.visibility is not None and self._unsubscribe_visibility is None:
            self._unsubscribe_visibility = self.visibility.add_listener(self._on_visibility_change)

    async def dispose(self) -> None:
        if self._unsubscribe_visibility is not None:
            self._unsubscribe_visibility()
            self._unsubscribe_visibility = None
        await self.stop_tracking()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def request_notification_permission(self) -> bool:
        if self.notification_sink is None:
            self.notification_permission = PERMISSION_DENIED
            return False
        try:
            self.notification_permission = await self.notification_sink.request_permission()
        except Exception as exc:
            self.logger.warning("NOTIFY_PERMISSION_FAILED error_type=%s error=%s", type(exc).__name__, exc)
            self.notification_permission = PERMISSION_DENIED
        self.logger.info("NOTIFY_PERMISSION state=%s", self.notification_permission)
        return self.notification_permission == PERMISSION_GRANTED

    def _on_visibility_change(self, hidden: bool) -> None:
        coro = self.start_tracking() if hidden else self.stop_tracking()
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def work_location(self) -> Optional[WorkLocation]:
        return self.evaluator.work_location

    def set_work_location(self, location: Optional[WorkLocation]) -> None:
        self.evaluator.set_work_location(location)
        self.logger.info("WORK_LOCATION_SET location=%s", location)

    def set_work_locations(self, locations: list[WorkLocation], active_flags: Optional[list[bool]] = None) -> Optional[WorkLocation]:
        location = pick_work_location(locations, active_flags)
        if location is not None:
            self.set_work_location(location)
        return location

    async def start_tracking(self) -> bool:
        if self._starting is not None:
            return await asyncio.shield(self._starting)
        if self.is_tracking:
            return True
        if self.evaluator.work_location is None:
            self.logger.info("TRACKING_NOT_STARTED reason=no_work_location")
            return False

        starting = asyncio.ensure_future(self._start())
        self._starting = starting
        self._tasks.add(starting)
        starting.add_done_callback(self._start_done)
        return await asyncio.shield(starting)

    def _start_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._starting is task:
            self._starting = None

    async def _start(self) -> bool:
        self.is_tracking = True
        try:
            position = await self.position_source.get_current_position(
                timeout_sec=self.position_timeout_sec,
                maximum_age_sec=self.maximum_age_sec,
            )
        except (LocationPermissionError, OperationTimeoutError) as exc:
            self.is_tracking = False
            self.last_error = str(exc)
            self.logger.warning("TRACKING_NOT_STARTED reason=%s error=%s", type(exc).__name__, exc)
            return False

        self.logger.info("TRACKING_STARTED location=%s", self.evaluator.work_location)
        await self.handle_position(position)
        if self.is_tracking and self._unwatch is None:
            self._unwatch = self.position_source.watch(self.handle_position, self._on_position_error)
        return self.is_tracking

    async def stop_tracking(self) -> None:
        if not self.is_tracking:
            return
        self.is_tracking = False
        # The next session starts from an unknown status.
        self.evaluator.reset()
        unwatch, self._unwatch = self._unwatch, None
        if unwatch is not None:
            unwatch()
        self.logger.info("TRACKING_STOPPED")

    def _on_position_error(self, exc: Exception) -> None:
        self.last_error = str(exc)
        if isinstance(exc, LocationPermissionError):
            self.logger.error("LOCATION_PERMISSION_DENIED error=%s -> stop tracking", exc)
            task = asyncio.create_task(self.stop_tracking())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        self.logger.warning("LOCATION_ERROR error_type=%s error=%s", type(exc).__name__, exc)

    async def handle_position(self, position: Position) -> Optional[GeofenceTransition]:
        async with self._sample_lock:
            if not self.is_tracking:
                return None

            transition = self.evaluator.update(position)
            if transition is None:
                return None

            self.logger.info(
                "GEOFENCE_TRANSITION event=%s distance_km=%.3f",
                transition.event,
                transition.evaluation.distance_km,
            )
            await self._auto_clock(transition, clock_in=transition.event == EVENT_ENTERED)
            return transition

    async def _auto_clock(self, transition: GeofenceTransition, *, clock_in: bool) -> None:
        position = transition.position
        distance = transition.evaluation.distance_km
        label = "clock-in" if clock_in else "clock-out"
        note = f"Auto {label} (background, {distance:.2f}km from work)"
        submit = self.submitter.clock_in if clock_in else self.submitter.clock_out

        try:
            result = await submit(note=note, lat=position.lat, lng=position.lng, manual_override=False, background=True)
        except GeoClockError as exc:
            self.last_error = str(exc)
            self.logger.error("AUTO_CLOCK_FAILED kind=%s error_type=%s error=%s", label, type(exc).__name__, exc)
            return

        self.logger.info("AUTO_CLOCK_OK kind=%s ref=%s offline=%s", label, result.ref.id, result.offline)
        if clock_in:
            await self._notify(
                "Clocked In",
                "You have been automatically clocked in as you entered the work area.",
                "clock-in",
            )
        else:
            await self._notify(
                "Clocked Out",
                "You have been automatically clocked out as you left the work area.",
                "clock-out",
            )

    async def _notify(self, title: str, body: str, tag: str) -> None:
        if self.notification_sink is None or self.notification_permission != PERMISSION_GRANTED:
            return
        try:
            await self.notification_sink.notify(title, body, tag)
        except Exception as exc:
            self.logger.warning("NOTIFY_FAILED tag=%s error=%s", tag, exc)

    def get_status(self) -> dict:
        state = self.evaluator.state
        return {
            "is_tracking": self.is_tracking,
            "has_work_location": state.work_location is not None,
            "work_location": state.work_location,
            "last_known_position": state.last_known_position,
            "last_status": state.last_status,
            "notification_permission": self.notification_permission,
            "last_error": self.last_error,
        }
