import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Optional

from geoclock.errors import OperationTimeoutError
from geoclock.observers import ListenerSet

STATE_ONLINE = "ONLINE"
STATE_OFFLINE = "OFFLINE"

EVENT_ONLINE = "online"
EVENT_OFFLINE = "offline"


class NetworkMonitor:
    """Two-state connectivity tracker.

    Host connectivity events and a periodic reachability probe drive the
    ONLINE/OFFLINE state. Listeners are notified only on real transitions.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        logger,
        *,
        probe_interval_sec: float = 30.0,
        probe_timeout_sec: float = 5.0,
        initial_online: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.probe = probe
        self.logger = logger
        self.probe_interval_sec = probe_interval_sec
        self.probe_timeout_sec = probe_timeout_sec
        self._clock = clock
        self._online = bool(initial_online)
        now = clock()
        self.last_online_time: Optional[float] = now if self._online else None
        self.last_offline_time: Optional[float] = None if self._online else now
        self._listeners = ListenerSet(logger, "network")
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def state(self) -> str:
        return STATE_ONLINE if self._online else STATE_OFFLINE

    def init(self) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            return
        if self.probe_interval_sec and self.probe_interval_sec > 0:
            self._probe_task = asyncio.create_task(self._probe_loop())
        self.logger.info("NETWORK_MONITOR_STARTED state=%s interval=%s", self.state, self.probe_interval_sec)

    async def dispose(self) -> None:
        task, self._probe_task = self._probe_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._listeners.clear()

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.probe_interval_sec)
            await self.check_connectivity()

    def add_listener(self, callback) -> Callable[[], None]:
        return self._listeners.add(callback)

    def handle_host_event(self, online: bool) -> None:
        self._transition(bool(online), source="host")

    def report_network_failure(self) -> None:
        self._transition(False, source="request")

    async def check_connectivity(self) -> bool:
        try:
            reachable = bool(await asyncio.wait_for(self.probe(), timeout=self.probe_timeout_sec))
        except asyncio.TimeoutError:
            self.logger.warning("NETWORK_PROBE_TIMEOUT timeout=%s", self.probe_timeout_sec)
            reachable = False
        except Exception as exc:
            self.logger.warning("NETWORK_PROBE_FAILED error_type=%s error=%s", type(exc).__name__, exc)
            reachable = False

        self._transition(reachable, source="probe")
        return reachable

    def _transition(self, online: bool, *, source: str) -> None:
        if online == self._online:
            return

        self._online = online
        now = self._clock()
        if online:
            self.last_online_time = now
        else:
            self.last_offline_time = now

        event = EVENT_ONLINE if online else EVENT_OFFLINE
        self.logger.info("NETWORK_TRANSITION state=%s source=%s", self.state, source)
        self._listeners.notify(event, self._info())

    def _info(self) -> dict:
        return {
            "is_online": self._online,
            "last_online_time": self.last_online_time,
            "last_offline_time": self.last_offline_time,
        }

    def get_status(self) -> dict:
        status = self._info()
        if self._online or self.last_offline_time is None:
            status["offline_duration"] = 0.0
        else:
            status["offline_duration"] = self._clock() - self.last_offline_time
        return status

    async def wait_for_online(self, timeout_sec: float = 30.0) -> None:
        if self._online:
            return

        loop = asyncio.get_running_loop()
        became_online: asyncio.Future = loop.create_future()

        def _on_change(event: str, info: dict) -> None:
            if event == EVENT_ONLINE and not became_online.done():
                became_online.set_result(None)

        unsubscribe = self.add_listener(_on_change)
        try:
            await asyncio.wait_for(became_online, timeout=timeout_sec)
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(f"Timeout waiting for network connection after {timeout_sec}s") from exc
        finally:
            unsubscribe()
