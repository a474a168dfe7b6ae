import asyncio
import unittest

from helpers import DummyLogger

from geoclock.errors import InvalidActionError, LocationPermissionError, OperationTimeoutError
from geoclock.geo import GeofenceEvaluator
from geoclock.models import CLOCK_IN, CLOCK_OUT, Position, ShiftRef, SubmitResult, WorkLocation
from geoclock.tracker import PERMISSION_DENIED, PERMISSION_GRANTED, BackgroundTracker, pick_work_location

WORK = WorkLocation(lat=40.7128, lng=-74.0060, radius_km=0.1, name="HQ")
INSIDE = Position(lat=40.7128, lng=-74.0060, timestamp=0.0)
OUTSIDE = Position(lat=40.7228, lng=-74.0060, timestamp=0.0)


class FakeSource:
    def __init__(self, initial=None, error=None):
        self.initial = initial
        self.error = error
        self.watchers = []

    async def get_current_position(self, *, timeout_sec, maximum_age_sec):
        if self.error is not None:
            raise self.error
        return self.initial

    def watch(self, on_position, on_error):
        entry = (on_position, on_error)
        self.watchers.append(entry)
        return lambda: self.watchers.remove(entry)

    async def push(self, position):
        for on_position, _ in list(self.watchers):
            await on_position(position)

    def fail(self, exc):
        for _, on_error in list(self.watchers):
            on_error(exc)


class GatedSource(FakeSource):
    def __init__(self, position=None, error=None):
        super().__init__(initial=position)
        self.gate_error = error
        self.requests = 0
        self._gate = asyncio.Event()

    def release(self):
        self._gate.set()

    async def get_current_position(self, *, timeout_sec, maximum_age_sec):
        self.requests += 1
        await self._gate.wait()
        if self.gate_error is not None:
            raise self.gate_error
        return self.initial


class FakeSink:
    def __init__(self, permission=PERMISSION_GRANTED):
        self.permission = permission
        self.sent = []

    async def request_permission(self):
        return self.permission

    async def notify(self, title, body, tag):
        self.sent.append((title, tag))


class FakeVisibility:
    def __init__(self):
        self.listeners = []

    def add_listener(self, callback):
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    def set_hidden(self, hidden):
        for callback in list(self.listeners):
            callback(hidden)


class RecordingSubmitter:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def _submit(self, kind, **kwargs):
        self.calls.append((kind, kwargs))
        if self.error is not None:
            raise self.error
        return SubmitResult(kind=kind, ref=ShiftRef(id="offline_1", timestamp=None, provisional=True), offline=True)

    async def clock_in(self, **kwargs):
        return await self._submit(CLOCK_IN, **kwargs)

    async def clock_out(self, **kwargs):
        return await self._submit(CLOCK_OUT, **kwargs)


class BackgroundTrackerTests(unittest.IsolatedAsyncioTestCase):
    def make_tracker(self, source=None, submitter=None, sink=None, visibility=None, location=WORK):
        self.source = source or FakeSource(initial=OUTSIDE)
        self.submitter = submitter or RecordingSubmitter()
        tracker = BackgroundTracker(
            GeofenceEvaluator(location),
            self.submitter,
            self.source,
            DummyLogger(),
            notification_sink=sink,
            visibility=visibility,
        )
        self.addAsyncCleanup(tracker.dispose)
        return tracker

    async def test_entering_clocks_in_with_background_note(self):
        sink = FakeSink()
        tracker = self.make_tracker(sink=sink)
        await tracker.init()

        self.assertTrue(await tracker.start_tracking())
        self.assertEqual(self.submitter.calls, [])

        await self.source.push(INSIDE)

        kind, kwargs = self.submitter.calls[0]
        self.assertEqual(kind, CLOCK_IN)
        self.assertTrue(kwargs["background"])
        self.assertFalse(kwargs["manual_override"])
        self.assertEqual(kwargs["note"], "Auto clock-in (background, 0.00km from work)")
        self.assertEqual(sink.sent, [("Clocked In", "clock-in")])

    async def test_exit_clocks_out(self):
        tracker = self.make_tracker(source=FakeSource(initial=INSIDE))
        await tracker.start_tracking()

        await self.source.push(INSIDE)
        await self.source.push(OUTSIDE)

        self.assertEqual([kind for kind, _ in self.submitter.calls], [CLOCK_OUT])
        self.assertTrue(self.submitter.calls[0][1]["note"].startswith("Auto clock-out (background, 1.11km"))

    async def test_requires_work_location(self):
        tracker = self.make_tracker(location=None)
        self.assertFalse(await tracker.start_tracking())
        self.assertFalse(tracker.is_tracking)

    async def test_permission_denied_degrades_quietly(self):
        tracker = self.make_tracker(source=FakeSource(error=LocationPermissionError("denied")))

        self.assertFalse(await tracker.start_tracking())
        self.assertFalse(tracker.is_tracking)
        self.assertEqual(tracker.get_status()["last_error"], "denied")

    async def test_position_timeout_degrades_quietly(self):
        tracker = self.make_tracker(source=FakeSource(error=OperationTimeoutError("no fix")))
        self.assertFalse(await tracker.start_tracking())

    async def test_watch_permission_error_stops_tracking(self):
        tracker = self.make_tracker()
        await tracker.start_tracking()

        self.source.fail(LocationPermissionError("revoked"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        self.assertFalse(tracker.is_tracking)
        self.assertEqual(self.source.watchers, [])

    async def test_notifications_skipped_without_permission(self):
        sink = FakeSink(permission=PERMISSION_DENIED)
        tracker = self.make_tracker(sink=sink)
        await tracker.init()
        await tracker.start_tracking()

        await self.source.push(INSIDE)

        self.assertEqual(len(self.submitter.calls), 1)
        self.assertEqual(sink.sent, [])

    async def test_submit_error_is_recorded(self):
        tracker = self.make_tracker(submitter=RecordingSubmitter(error=InvalidActionError("bad lat")))
        await tracker.start_tracking()

        await self.source.push(INSIDE)

        self.assertTrue(tracker.is_tracking)
        self.assertEqual(tracker.last_error, "bad lat")

    async def test_restart_does_not_reuse_previous_status(self):
        tracker = self.make_tracker(source=FakeSource(initial=INSIDE))
        await tracker.start_tracking()
        await tracker.stop_tracking()
        self.assertIsNone(tracker.get_status()["last_status"])

        self.source.initial = OUTSIDE
        self.assertTrue(await tracker.start_tracking())

        self.assertEqual(self.submitter.calls, [])
        self.assertEqual(tracker.get_status()["last_status"], "outside")

    async def test_concurrent_start_shares_first_fix_outcome(self):
        source = GatedSource(error=OperationTimeoutError("no fix"))
        tracker = self.make_tracker(source=source)

        first = asyncio.create_task(tracker.start_tracking())
        await asyncio.sleep(0)
        second = asyncio.create_task(tracker.start_tracking())
        await asyncio.sleep(0)
        source.release()

        self.assertEqual(await asyncio.gather(first, second), [False, False])
        self.assertEqual(source.requests, 1)
        self.assertFalse(tracker.is_tracking)

    async def test_concurrent_start_waits_for_success(self):
        source = GatedSource(position=OUTSIDE)
        tracker = self.make_tracker(source=source)

        first = asyncio.create_task(tracker.start_tracking())
        await asyncio.sleep(0)
        second = asyncio.create_task(tracker.start_tracking())
        await asyncio.sleep(0)
        self.assertFalse(second.done())
        source.release()

        self.assertEqual(await asyncio.gather(first, second), [True, True])
        self.assertEqual(source.requests, 1)
        self.assertEqual(len(source.watchers), 1)

    async def test_samples_ignored_after_stop(self):
        tracker = self.make_tracker()
        await tracker.start_tracking()
        await tracker.stop_tracking()

        await tracker.handle_position(INSIDE)

        self.assertEqual(self.submitter.calls, [])

    async def test_visibility_toggles_tracking(self):
        visibility = FakeVisibility()
        tracker = self.make_tracker(visibility=visibility)
        await tracker.init()

        visibility.set_hidden(True)
        await asyncio.sleep(0.01)
        self.assertTrue(tracker.is_tracking)

        visibility.set_hidden(False)
        await asyncio.sleep(0.01)
        self.assertFalse(tracker.is_tracking)

    async def test_concurrent_samples_are_sequential(self):
        tracker = self.make_tracker()
        await tracker.start_tracking()

        await asyncio.gather(
            tracker.handle_position(INSIDE),
            tracker.handle_position(INSIDE),
            tracker.handle_position(OUTSIDE),
        )

        self.assertEqual([kind for kind, _ in self.submitter.calls], [CLOCK_IN, CLOCK_OUT])


class PickWorkLocationTests(unittest.TestCase):
    def test_prefers_first_active(self):
        other = WorkLocation(lat=1.0, lng=1.0)
        self.assertEqual(pick_work_location([other, WORK], [False, True]), WORK)
        self.assertEqual(pick_work_location([other, WORK]), other)
        self.assertIsNone(pick_work_location([]))


if __name__ == "__main__":
    unittest.main()
