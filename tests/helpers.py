import asyncio

from geoclock.errors import NetworkError
from geoclock.models import ShiftRef


class DummyLogger:
    def __init__(self):
        self.records = []

    def _log(self, level, msg, *args):
        self.records.append((level, msg % args if args else msg))

    def debug(self, msg, *args, **kwargs):
        self._log("debug", msg, *args)

    def info(self, msg, *args, **kwargs):
        self._log("info", msg, *args)

    def warning(self, msg, *args, **kwargs):
        self._log("warning", msg, *args)

    def error(self, msg, *args, **kwargs):
        self._log("error", msg, *args)

    def exception(self, msg, *args, **kwargs):
        self._log("error", msg, *args)

    def messages(self, level=None):
        return [text for lvl, text in self.records if level is None or lvl == level]


class FakeMonitor:
    def __init__(self, online=True):
        self.is_online = online
        self.failures = 0
        self.listeners = []

    def add_listener(self, callback):
        self.listeners.append(callback)

        def unsubscribe():
            if callback in self.listeners:
                self.listeners.remove(callback)

        return unsubscribe

    def report_network_failure(self):
        self.failures += 1
        self.set_online(False)

    def set_online(self, online):
        changed = online != self.is_online
        self.is_online = online
        if changed:
            for callback in list(self.listeners):
                callback("online" if online else "offline", {"is_online": online})


class FakeApiClient:
    """Scripted clock API.

    ``script`` maps a call number (1-based, across both mutations) to an
    exception instance to raise; anything else succeeds with ``srv_<n>``.
    """

    def __init__(self, script=None, delay=0.0):
        self.script = dict(script or {})
        self.delay = delay
        self.calls = []

    async def _call(self, kind, payload):
        self.calls.append((kind, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.get(len(self.calls))
        if isinstance(outcome, BaseException):
            raise outcome
        return ShiftRef(id=f"srv_{len(self.calls)}", timestamp="2024-01-01T09:00:00.000Z")

    async def clock_in(self, payload):
        return await self._call("CLOCK_IN", payload)

    async def clock_out(self, payload):
        return await self._call("CLOCK_OUT", payload)


class UnreachableApiClient(FakeApiClient):
    async def _call(self, kind, payload):
        self.calls.append((kind, payload))
        raise NetworkError("ConnectError")
