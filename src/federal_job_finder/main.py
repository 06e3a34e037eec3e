"""MCP server exposing the offline job cache and sync coordinator."""

import functools
import os
import sys
import traceback
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from loguru import logger
from mcp.server.fastmcp import FastMCP

from federal_job_finder.client import USAJobsClient, create_client
from federal_job_finder.config import Settings, load_settings
from federal_job_finder.connectivity import ConnectivityMonitor
from federal_job_finder.db import Clock, JobDatabase
from federal_job_finder.errors import JobFinderError
from federal_job_finder.events import EventChannel
from federal_job_finder.housekeeping import CacheHousekeeper
from federal_job_finder.logging_config import setup_logging
from federal_job_finder.models import SearchCriteria
from federal_job_finder.state import SyncStateStore
from federal_job_finder.sync import OfflineSyncCoordinator


@dataclass
class JobFinderApp:
    """Wired components shared by the MCP tools"""

    settings: Settings
    db: JobDatabase
    client: USAJobsClient
    monitor: ConnectivityMonitor
    coordinator: OfflineSyncCoordinator
    events: EventChannel

    async def start(self):
        if not self.monitor.probe_url:
            # Without a probe nothing would ever report us online
            self.monitor.update(True)
        await self.monitor.start()
        await self.coordinator.start()

    async def stop(self):
        await self.coordinator.stop()
        await self.monitor.stop()
        await self.client.aclose()
        self.db.close()


def build_app(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock | None = None,
) -> JobFinderApp:
    """Open the store and wire client, monitor and coordinator together"""
    data_dir = settings.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)

    events = EventChannel()
    db = JobDatabase(settings.db_path, clock=clock)
    db.initialize_schema()
    http = create_client(
        api_key=settings.api_key,
        user_agent=settings.user_agent,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout,
        transport=transport,
    )
    client = USAJobsClient(http, max_retries=settings.max_retries, base_delay=settings.retry_base_delay)
    monitor = ConnectivityMonitor(
        events=events,
        probe_url=settings.connectivity_probe_url,
        probe_interval=settings.connectivity_probe_interval,
        probe_timeout=settings.connectivity_probe_timeout,
    )
    housekeeper = CacheHousekeeper(db, max_age=settings.cache_max_age)
    coordinator = OfflineSyncCoordinator(
        db,
        client,
        monitor,
        SyncStateStore(settings.state_path),
        housekeeper=housekeeper,
        events=events,
        favorite_check_interval=settings.favorite_check_interval,
        clock=clock,
    )
    return JobFinderApp(
        settings=settings,
        db=db,
        client=client,
        monitor=monitor,
        coordinator=coordinator,
        events=events,
    )


def tool_errors(func):
    """Turn JobFinderError into an error payload the MCP client can show"""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except JobFinderError as e:
            logger.warning(f"{func.__name__} failed: {type(e).__name__}: {e}")
            return {"error": e.user_message, "retryable": e.retryable}

    return wrapper


def create_server(
    settings: Settings,
    app: JobFinderApp | None = None,
    host: str = "0.0.0.0",
    port: int = 10000,
    stateless_http: bool = False,
) -> FastMCP:
    """Create the FastMCP server; its lifespan starts and stops the app"""
    app = app or build_app(settings)
    coordinator = app.coordinator

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[JobFinderApp]:
        await app.start()
        try:
            yield app
        finally:
            await app.stop()

    mcp = FastMCP(
        "federal_job_finder",
        lifespan=lifespan,
        stateless_http=stateless_http,
        host=host,
        port=port,
    )

    @mcp.tool()
    @tool_errors
    async def search_jobs(
        keyword: str = "",
        location: str = "",
        department: str = "",
        salary_min: int | None = None,
        salary_max: int | None = None,
        remote_only: bool = False,
        page: int = 1,
        results_per_page: int = 25,
        cache_results: bool = True,
    ) -> dict[str, Any]:
        """
        Searches USAJobs for federal positions. Requires an internet connection.

        Args:
            keyword: Free-text search (job title, series, skills)
            location: City, state or ZIP code
            department: Department or agency name
            salary_min: Minimum annual salary in dollars
            salary_max: Maximum annual salary in dollars
            remote_only: Only return remote-eligible positions
            page: 1-based result page
            results_per_page: Page size (1-500)
            cache_results: Store the returned jobs for offline use

        Returns:
            dict: total_count, page, page_size, has_more_results and the job items
        """
        criteria = SearchCriteria(
            keyword=keyword or None,
            location=location or None,
            department=department or None,
            salary_min=salary_min,
            salary_max=salary_max,
            remote_only=remote_only,
            page=max(page, 1),
            results_per_page=min(max(results_per_page, 1), 500),
        )
        logger.info(f"Searching jobs: {criteria.model_dump(exclude_none=True)}")
        response = await coordinator.search(criteria)
        if cache_results:
            coordinator.cache_search_results(response)

        result = response.model_dump(mode="json")
        result["has_more_results"] = response.has_more_results
        return result

    @mcp.tool()
    @tool_errors
    async def get_job_details(job_id: str, refresh: bool = False) -> dict[str, Any]:
        """
        Gets a job by its USAJobs position ID, from the offline cache when possible.

        Args:
            job_id: The USAJobs position ID
            refresh: Fetch the latest copy even if the job is cached

        Returns:
            dict: The job record
        """
        job = await coordinator.get_job_details(job_id.strip(), refresh=refresh)
        return _job_payload(job)

    @mcp.tool()
    @tool_errors
    async def get_cached_jobs(
        keyword: str = "",
        location: str = "",
        department: str = "",
        remote_only: bool = False,
        min_salary: int | None = None,
        favorites_only: bool = False,
        limit: int = 50,
    ) -> dict[str, Any]:
        """
        Lists jobs available offline, newest cached first.

        Args:
            keyword: Substring matched against title, summary and requirements
            location: Substring matched against the location
            department: Substring matched against the department
            remote_only: Only remote-eligible jobs
            min_salary: Only jobs whose maximum salary reaches this amount
            favorites_only: Only favorited jobs
            limit: Maximum number of jobs to return

        Returns:
            dict: count and the cached job records
        """
        jobs = coordinator.query_cached_jobs(
            keyword=keyword or None,
            location=location or None,
            department=department or None,
            remote_only=remote_only,
            min_salary=min_salary,
            favorites_only=favorites_only,
            limit=limit,
        )
        return {"count": len(jobs), "jobs": [_job_payload(job) for job in jobs]}

    @mcp.tool()
    @tool_errors
    async def cache_job_for_offline(job_id: str) -> dict[str, Any]:
        """
        Makes sure a job is stored locally so it can be viewed offline.

        Args:
            job_id: The USAJobs position ID

        Returns:
            dict: The cached job record
        """
        job = await coordinator.get_job_details(job_id.strip(), refresh=coordinator.monitor.is_connected)
        return _job_payload(job)

    @mcp.tool()
    @tool_errors
    async def toggle_favorite(job_id: str) -> dict[str, Any]:
        """
        Favorites or unfavorites a cached job. Favorites never expire from the cache.

        Args:
            job_id: The USAJobs position ID

        Returns:
            dict: job_id and its new is_favorited value
        """
        is_favorited = coordinator.toggle_favorite(job_id.strip())
        return {"job_id": job_id.strip(), "is_favorited": is_favorited}

    @mcp.tool()
    @tool_errors
    async def sync_now() -> dict[str, Any]:
        """
        Refreshes favorited jobs from USAJobs and evicts stale cache entries.

        Returns:
            dict: Whether a sync cycle ran, and the resulting sync status
        """
        ran = await coordinator.sync_now()
        return {"ran": ran, **_status_payload(app)}

    @mcp.tool()
    @tool_errors
    async def get_sync_status() -> dict[str, Any]:
        """
        Reports connectivity and offline sync state.

        Returns:
            dict: Sync state plus connection status and cached job count
        """
        return _status_payload(app)

    @mcp.tool()
    @tool_errors
    async def get_cache_statistics() -> dict[str, Any]:
        """
        Summarizes the offline cache.

        Returns:
            dict: Job counts, oldest/newest cache dates and readable descriptions
        """
        return _statistics_payload(coordinator.get_cache_statistics())

    @mcp.tool()
    @tool_errors
    async def clear_cache() -> dict[str, Any]:
        """
        Removes every cached job that is not favorited.

        Returns:
            dict: Cache statistics after clearing
        """
        return _statistics_payload(coordinator.clear_cache())

    return mcp


def _job_payload(job) -> dict[str, Any]:
    payload = job.model_dump(mode="json")
    payload["is_expired"] = job.is_expired
    payload["days_until_deadline"] = job.days_until_deadline
    payload["salary_display"] = job.salary_display
    return payload


def _statistics_payload(stats) -> dict[str, Any]:
    payload = stats.model_dump(mode="json")
    payload["cache_age_description"] = stats.cache_age_description
    payload["last_sync_description"] = stats.last_sync_description
    return payload


def _status_payload(app: JobFinderApp) -> dict[str, Any]:
    payload = app.coordinator.state.model_dump(mode="json")
    payload["connection_status"] = app.monitor.status_text
    payload["connection_quality"] = app.monitor.connection_quality.value
    payload["is_suitable_for_large_downloads"] = app.monitor.is_suitable_for_large_downloads
    payload["cached_jobs_count"] = app.coordinator.cached_jobs_count
    return payload


def resolve_transport() -> tuple[str, bool]:
    """Map $TRANSPORT to (transport, stateless_http)"""
    match os.environ.get("TRANSPORT", "stdio"):
        case "sse":
            logger.warning("SSE transport is deprecated. Using stdio (locally) or streamable-http (remote) instead.")
            return "sse", False
        case "streamable-http":
            return "streamable-http", True
        case _:
            return "stdio", False


def main():
    try:
        settings = load_settings()
        setup_logging(settings.log_level, settings.log_file)

        trspt, stateless_http = resolve_transport()
        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", 10000))

        mcp = create_server(settings, host=host, port=port, stateless_http=stateless_http)
        logger.info(f"Starting Federal Job Finder MCP server with {trspt} transport ({host}:{port}) and stateless_http={stateless_http}...")
        if trspt == "streamable-http":
            logger.info(f"Using HTTP transport - server will be accessible at http://{host}:{port}/mcp")

        mcp.run(transport=trspt)

    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
    except Exception as e:
        logger.error(f"Fatal error starting server: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        sys.exit(1)


if __name__ == "__main__":
    main()
