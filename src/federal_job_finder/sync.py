"""Offline sync coordinator: reconciles the local job cache with USAJobs"""

import asyncio
from datetime import datetime
from typing import Callable

from loguru import logger

from federal_job_finder.client import USAJobsClient
from federal_job_finder.connectivity import ConnectivityChange, ConnectivityMonitor
from federal_job_finder.db import JobDatabase
from federal_job_finder.errors import (
    JobFinderError,
    NotFoundError,
    RateLimitError,
    TransientError,
)
from federal_job_finder.events import (
    CACHED_COUNT_CHANGED,
    SYNC_COMPLETED,
    SYNC_ITEM_FAILED,
    SYNC_STARTED,
    SYNC_STATE_CHANGED,
    EventChannel,
)
from federal_job_finder.housekeeping import CacheHousekeeper
from federal_job_finder.models import (
    CacheStatistics,
    JobRecord,
    OfflineFeature,
    SearchCriteria,
    SearchResponse,
    SyncState,
)
from federal_job_finder.state import SyncStateStore

ALWAYS_OFFLINE_FEATURES = {
    OfflineFeature.VIEW_FAVORITES,
    OfflineFeature.VIEW_APPLICATION_TRACKING,
    OfflineFeature.VIEW_SAVED_SEARCHES,
}
NETWORK_ONLY_FEATURES = {
    OfflineFeature.SEARCH_JOBS,
    OfflineFeature.APPLY_TO_JOBS,
}


class OfflineSyncCoordinator:
    """Mediates between the local job store, the remote API and connectivity.

    All SyncState mutations happen on the event loop that called ``start()``;
    connectivity changes reported from other threads are marshalled onto it.
    At most one sync cycle runs at a time.
    """

    def __init__(
        self,
        db: JobDatabase,
        client: USAJobsClient,
        monitor: ConnectivityMonitor,
        state_store: SyncStateStore,
        housekeeper: CacheHousekeeper | None = None,
        events: EventChannel | None = None,
        favorite_check_interval: float = 3600.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.client = client
        self.monitor = monitor
        self.state_store = state_store
        self.housekeeper = housekeeper or CacheHousekeeper(db)
        self.events = events or monitor.events
        self.favorite_check_interval = favorite_check_interval
        self.clock = clock or db.clock

        self.state = SyncState(
            is_offline_mode=not monitor.is_connected,
            is_syncing=False,
            last_sync_date=state_store.last_sync_date,
            has_pending_changes=state_store.has_pending_changes,
        )
        self.cached_jobs_count = db.count()

        self.shutdown_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._periodic_task: asyncio.Task | None = None
        self._background_tasks: set[asyncio.Task] = set()
        self._pending_marks = 0

    # ========== Lifecycle ==========

    async def start(self):
        """Subscribe to connectivity changes and start the periodic sync loop"""
        logger.info("Starting offline sync coordinator...")
        self._loop = asyncio.get_running_loop()
        self.shutdown_event.clear()

        self.monitor.add_listener(self._on_connectivity_change)
        self._update_state(is_offline_mode=not self.monitor.is_connected)

        if self.favorite_check_interval > 0:
            self._periodic_task = asyncio.create_task(self._periodic_sync_loop())

        # A sync may be owed from a previous run
        if self.monitor.is_connected and self.state.has_pending_changes:
            self._spawn_sync()

        logger.info(
            f"Offline sync coordinator started (offline={self.state.is_offline_mode}, "
            f"pending={self.state.has_pending_changes}, cached={self.cached_jobs_count})"
        )

    async def stop(self):
        """Stop background work; a running cycle finishes its current item and completes"""
        logger.info("Stopping offline sync coordinator...")
        self.shutdown_event.set()
        self.monitor.remove_listener(self._on_connectivity_change)

        if self._periodic_task is not None:
            self._periodic_task.cancel()
            await asyncio.gather(self._periodic_task, return_exceptions=True)
            self._periodic_task = None

        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        logger.info("Offline sync coordinator stopped")

    async def _periodic_sync_loop(self):
        """Refresh favorites every favorite_check_interval seconds"""
        while not self.shutdown_event.is_set():
            try:
                await asyncio.sleep(self.favorite_check_interval)
                await self.sync_now()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic sync loop: {e}")

    def _spawn_sync(self) -> asyncio.Task:
        task = asyncio.create_task(self.sync_now())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ========== Connectivity ==========

    def _on_connectivity_change(self, change: ConnectivityChange):
        loop = self._loop
        if loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._handle_connectivity_change(change)
        else:
            loop.call_soon_threadsafe(self._handle_connectivity_change, change)

    def _handle_connectivity_change(self, change: ConnectivityChange):
        self._update_state(is_offline_mode=not change.is_connected)

        if change.became_connected and self.state.has_pending_changes:
            logger.info("Connection restored with pending changes, starting sync")
            self._spawn_sync()

    # ========== State ==========

    def _update_state(self, **changes):
        new_state = self.state.model_copy(update=changes)
        if new_state == self.state:
            return
        self.state = new_state
        self.events.publish(SYNC_STATE_CHANGED, new_state.model_dump(mode="json"))

    def _refresh_cached_count(self):
        count = self.db.count()
        if count != self.cached_jobs_count:
            self.cached_jobs_count = count
            self.events.publish(CACHED_COUNT_CHANGED, {"count": count})

    def mark_pending_changes(self):
        """Record (durably) that a local mutation still has to be reconciled"""
        self._pending_marks += 1
        self.state_store.has_pending_changes = True
        self._update_state(has_pending_changes=True)

    # ========== Sync cycle ==========

    async def sync_now(self) -> bool:
        """Run one sync cycle unless one is already running or we are offline

        Returns:
            True if a cycle ran, False if the trigger was a no-op
        """
        # Check-and-set has no await in between, so concurrent triggers collapse here
        if self.state.is_syncing:
            logger.debug("Sync already in progress, ignoring trigger")
            return False
        if not self.monitor.is_connected:
            logger.debug("Offline, ignoring sync trigger")
            return False

        self._update_state(is_syncing=True)
        marks_at_start = self._pending_marks
        self.events.publish(SYNC_STARTED, {})

        try:
            summary = await self._sync_favorite_jobs()
            summary.update(self.housekeeper.run())
        except Exception as e:
            logger.error(f"Sync cycle aborted: {e}")
            self._refresh_cached_count()
            self._update_state(is_syncing=False)
            return True

        now = self.clock()
        self.state_store.last_sync_date = now
        changes = {"last_sync_date": now, "is_syncing": False}

        if self._pending_marks == marks_at_start:
            self.state_store.has_pending_changes = False
            changes["has_pending_changes"] = False
        else:
            logger.info("Local changes arrived during sync, keeping pending flag")

        self._refresh_cached_count()
        self._update_state(**changes)

        logger.info(
            f"Sync completed: {summary['refreshed']} refreshed, {summary['failed']} failed, "
            f"{summary['skipped']} skipped, {summary['evicted']} evicted"
        )
        self.events.publish(SYNC_COMPLETED, summary)
        return True

    async def _sync_favorite_jobs(self) -> dict[str, int]:
        """Refresh every favorite from the API; a failing item never stops the others"""
        favorites = self.db.get_favorites()
        refreshed = 0
        failed = 0
        skipped = 0

        for index, job in enumerate(favorites):
            if self.shutdown_event.is_set():
                skipped = len(favorites) - index
                logger.info(f"Shutdown requested, skipping {skipped} remaining favorites")
                break

            try:
                # Single attempt; a failed item waits for the next cycle
                latest = await self.client.get_details(job.job_id, retries=1)
                self.db.upsert_job(latest)
                refreshed += 1
            except RateLimitError as e:
                failed += 1
                skipped = len(favorites) - index - 1
                self._report_item_failure(job.job_id, e)
                logger.warning(f"Rate limited, skipping {skipped} remaining favorites until the next cycle")
                break
            except Exception as e:
                failed += 1
                self._report_item_failure(job.job_id, e)

        return {"refreshed": refreshed, "failed": failed, "skipped": skipped}

    def _report_item_failure(self, job_id: str, error: Exception):
        logger.warning(f"Failed to sync job {job_id}: {type(error).__name__}: {error}")
        self.events.publish(
            SYNC_ITEM_FAILED,
            {
                "job_id": job_id,
                "error": type(error).__name__,
                "message": str(error),
                "retryable": isinstance(error, JobFinderError) and error.retryable,
            },
        )

    # ========== Interactive operations ==========

    async def search(self, criteria: SearchCriteria) -> SearchResponse:
        """Remote search; results are not cached implicitly

        Raises:
            TransientError: When offline, or on timeouts/5xx
            RateLimitError, FatalError: Passed through from the client
        """
        if not self.monitor.is_connected:
            error = TransientError("Cannot search while offline")
            error.user_message = "No internet connection available"
            raise error
        return await self.client.search(criteria)

    def get_cached_job_details(self, job_id: str) -> JobRecord | None:
        return self.db.get_job(job_id)

    def get_cached_jobs(self, limit: int | None = None) -> list[JobRecord]:
        return self.db.get_jobs(limit)

    def query_cached_jobs(self, **filters) -> list[JobRecord]:
        return self.db.query_jobs(**filters)

    def get_favorites(self) -> list[JobRecord]:
        return self.db.get_favorites()

    async def get_job_details(self, job_id: str, refresh: bool = False) -> JobRecord:
        """Cached copy when offline or on a hit, otherwise fetch, cache and return

        Raises:
            NotFoundError: If neither the cache nor the API has the job
        """
        cached = self.db.get_job(job_id)

        if not self.monitor.is_connected:
            if cached is None:
                raise NotFoundError(job_id, f"Job {job_id} is not available offline")
            return cached

        if cached is not None and not refresh:
            return cached

        latest = await self.client.get_details(job_id)
        return self.cache_job_for_offline(latest)

    def cache_job_for_offline(self, record: JobRecord) -> JobRecord:
        """Guarantee a record is available offline later"""
        stored = self.db.upsert_job(record)
        self._refresh_cached_count()
        return stored

    def cache_search_results(self, response: SearchResponse) -> int:
        count = self.db.upsert_jobs(response.items)
        self._refresh_cached_count()
        return count

    def toggle_favorite(self, job_id: str) -> bool:
        """Flip a favorite and record that a sync is owed

        Raises:
            NotFoundError: If the job is not cached
        """
        new_state = self.db.toggle_favorite(job_id)
        self.mark_pending_changes()
        return new_state

    def get_cache_statistics(self) -> CacheStatistics:
        return self.housekeeper.get_statistics(self.state.last_sync_date)

    def clear_cache(self) -> CacheStatistics:
        """Remove every non-favorited job"""
        stats = self.housekeeper.clear_all(self.state.last_sync_date)
        self._refresh_cached_count()
        return stats

    # ========== Offline availability ==========

    def is_feature_available_offline(self, feature: OfflineFeature) -> bool:
        if feature in ALWAYS_OFFLINE_FEATURES:
            return True
        if feature in NETWORK_ONLY_FEATURES:
            return False
        return self.cached_jobs_count > 0

    def offline_message(self, feature: OfflineFeature) -> str:
        if self.is_feature_available_offline(feature):
            return "Available offline"
        return "Requires internet connection"
