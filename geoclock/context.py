from dataclasses import dataclass
from typing import Optional

from geoclock import config
from geoclock.action_store import ActionStore
from geoclock.geo import GeofenceEvaluator
from geoclock.graphql_client import ClockApiClient
from geoclock.network_monitor import NetworkMonitor
from geoclock.shift_history import ShiftHistory
from geoclock.submitter import ClockActionSubmitter
from geoclock.sync import SyncCoordinator
from geoclock.tracker import BackgroundTracker


@dataclass
class ClockContext:
    store: ActionStore
    api_client: ClockApiClient
    network_monitor: NetworkMonitor
    submitter: ClockActionSubmitter
    sync: SyncCoordinator
    tracker: BackgroundTracker
    history: ShiftHistory
    logger: object
    _unsubscribe_sync: Optional[object] = None

    @classmethod
    def build(cls, logger, position_source, *, notification_sink=None, visibility=None, api_client=None, store=None) -> "ClockContext":
        store = store or ActionStore(config.DB_PATH, logger)
        api_client = api_client or ClockApiClient(
            config.GRAPHQL_URL,
            config.API_TOKEN,
            logger,
            health_url=config.HEALTH_URL or None,
            timeout_sec=config.HTTP_TIMEOUT_SEC,
        )
        network_monitor = NetworkMonitor(
            api_client.health_check,
            logger,
            probe_interval_sec=config.PROBE_INTERVAL_SEC,
            probe_timeout_sec=config.PROBE_TIMEOUT_SEC,
        )
        submitter = ClockActionSubmitter(
            store,
            api_client,
            network_monitor,
            logger,
            online_timeout_sec=config.ONLINE_TIMEOUT_SEC,
        )
        sync = SyncCoordinator(
            store,
            api_client,
            network_monitor,
            logger,
            max_retries=config.MAX_RETRIES,
            action_delay_sec=config.SYNC_ACTION_DELAY_SEC,
            error_cooldown_sec=config.SYNC_ERROR_COOLDOWN_SEC,
            initial_delay_sec=config.SYNC_INITIAL_DELAY_SEC,
        )
        tracker = BackgroundTracker(
            GeofenceEvaluator(buffer_km=config.BUFFER_KM),
            submitter,
            position_source,
            logger,
            notification_sink=notification_sink,
            visibility=visibility,
            position_timeout_sec=config.POSITION_TIMEOUT_SEC,
            maximum_age_sec=config.POSITION_MAX_AGE_SEC,
        )
        history = ShiftHistory(store, api_client, network_monitor, sync, logger)
        return cls(
            store=store,
            api_client=api_client,
            network_monitor=network_monitor,
            submitter=submitter,
            sync=sync,
            tracker=tracker,
            history=history,
            logger=logger,
        )

    async def init(self) -> None:
        await self.store.init()
        await self.submitter.refresh_pending_count()
        # Probe once so the first sync trigger reflects real reachability.
        await self.network_monitor.check_connectivity()
        self.network_monitor.init()
        if self._unsubscribe_sync is None:
            self._unsubscribe_sync = self.sync.add_listener(self.submitter.on_sync_event)
        self.sync.init()
        await self.tracker.init()
        self.logger.info(
            "CONTEXT_READY online=%s pending=%s",
            self.network_monitor.is_online,
            self.submitter.pending_sync_count,
        )

    async def dispose(self) -> None:
        await self.tracker.dispose()
        await self.sync.dispose()
        self._unsubscribe_sync = None
        await self.network_monitor.dispose()
        await self.api_client.aclose()
        await self.store.close()
        self.logger.info("CONTEXT_DISPOSED")
