import unittest
from types import SimpleNamespace

from helpers import DummyLogger

from geoclock.jobs import build_job_retry_sync
from geoclock.sync import STATE_IDLE, STATE_SYNCING, SyncReport


class DummyMonitor:
    def __init__(self, online=True, probe_result=True):
        self.is_online = online
        self.probe_result = probe_result
        self.probes = 0

    async def check_connectivity(self):
        self.probes += 1
        return self.probe_result


class DummySync:
    def __init__(self, pending=0, state=STATE_IDLE):
        self.pending = pending
        self.state = state
        self.started = 0

    async def get_pending_sync_count(self):
        return self.pending

    async def start_sync(self):
        self.started += 1
        return SyncReport(synced=self.pending)


class JobRetrySyncTests(unittest.IsolatedAsyncioTestCase):
    async def run_job(self, monitor, sync):
        clock_context = SimpleNamespace(network_monitor=monitor, sync=sync)
        job = build_job_retry_sync(clock_context, DummyLogger())
        await job(SimpleNamespace())

    async def test_starts_sync_when_online_with_pending(self):
        sync = DummySync(pending=2)
        await self.run_job(DummyMonitor(), sync)
        self.assertEqual(sync.started, 1)

    async def test_skips_when_nothing_pending(self):
        sync = DummySync(pending=0)
        await self.run_job(DummyMonitor(), sync)
        self.assertEqual(sync.started, 0)

    async def test_skips_while_syncing(self):
        sync = DummySync(pending=2, state=STATE_SYNCING)
        await self.run_job(DummyMonitor(), sync)
        self.assertEqual(sync.started, 0)

    async def test_probes_when_offline(self):
        monitor = DummyMonitor(online=False)
        sync = DummySync(pending=2)
        await self.run_job(monitor, sync)
        self.assertEqual(monitor.probes, 1)
        self.assertEqual(sync.started, 0)


if __name__ == "__main__":
    unittest.main()
