"""Network reachability monitor with change notifications"""

import asyncio
from dataclasses import dataclass

import httpx
from loguru import logger

from federal_job_finder.events import CONNECTIVITY_CHANGED, EventChannel
from federal_job_finder.models import ConnectionQuality, ConnectionType


@dataclass(frozen=True)
class ConnectivityChange:
    """Snapshot published whenever reachability or connection cost changes"""

    is_connected: bool
    is_expensive: bool
    connection_type: ConnectionType
    was_connected: bool

    @property
    def became_connected(self) -> bool:
        return self.is_connected and not self.was_connected


class ConnectivityMonitor:
    """Observable connectivity state.

    State is pushed in through ``update()`` (from an OS hook, a test, or the
    built-in polling probe started with ``start()``). Listeners receive a
    ``ConnectivityChange`` only when a value actually changes.
    """

    def __init__(
        self,
        events: EventChannel | None = None,
        probe_url: str | None = None,
        probe_interval: float = 30.0,
        probe_timeout: float = 5.0,
        is_connected: bool = False,
    ):
        self.events = events or EventChannel()
        self.probe_url = probe_url
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout

        self.is_connected = is_connected
        self.is_expensive = False
        self.connection_type = ConnectionType.UNKNOWN

        self._listeners: list = []
        self._probe_task: asyncio.Task | None = None
        self.shutdown_event = asyncio.Event()

    def add_listener(self, listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def update(
        self,
        is_connected: bool,
        is_expensive: bool = False,
        connection_type: ConnectionType = ConnectionType.UNKNOWN,
    ) -> ConnectivityChange | None:
        """Apply a new reading and notify listeners if anything changed."""
        if (
            is_connected == self.is_connected
            and is_expensive == self.is_expensive
            and connection_type == self.connection_type
        ):
            return None

        change = ConnectivityChange(
            is_connected=is_connected,
            is_expensive=is_expensive,
            connection_type=connection_type,
            was_connected=self.is_connected,
        )
        self.is_connected = is_connected
        self.is_expensive = is_expensive
        self.connection_type = connection_type

        logger.info(f"Connectivity changed: {self.status_text}")

        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

        self.events.publish(
            CONNECTIVITY_CHANGED,
            {
                "is_connected": is_connected,
                "is_expensive": is_expensive,
                "connection_type": connection_type.value,
            },
        )
        return change

    @property
    def is_suitable_for_large_downloads(self) -> bool:
        return self.is_connected and not self.is_expensive

    @property
    def connection_quality(self) -> ConnectionQuality:
        if not self.is_connected:
            return ConnectionQuality.NONE
        if self.is_expensive:
            return ConnectionQuality.LIMITED
        return ConnectionQuality.GOOD

    @property
    def status_text(self) -> str:
        if not self.is_connected:
            return "No Internet Connection"
        return {
            ConnectionType.WIFI: "Connected via WiFi",
            ConnectionType.CELLULAR: "Connected via Cellular",
            ConnectionType.ETHERNET: "Connected via Ethernet",
        }.get(self.connection_type, "Connected")

    # ========== Polling probe ==========

    async def probe_once(self, client: httpx.AsyncClient) -> bool:
        """HEAD the probe URL; any HTTP response counts as reachable."""
        try:
            await client.head(self.probe_url, timeout=self.probe_timeout)
            return True
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False

    async def start(self) -> None:
        """Start the background polling probe (no-op without a probe URL)."""
        if not self.probe_url:
            logger.info("No connectivity probe URL configured, waiting for external updates")
            return
        if self._probe_task is not None:
            logger.warning("Connectivity probe already running")
            return

        self.shutdown_event.clear()
        self._probe_task = asyncio.create_task(self._probe_loop())
        logger.info(f"Started connectivity probe against {self.probe_url} every {self.probe_interval}s")

    async def stop(self) -> None:
        self.shutdown_event.set()
        if self._probe_task is None:
            return

        task, self._probe_task = self._probe_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Connectivity probe stopped")

    async def _probe_loop(self) -> None:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            while not self.shutdown_event.is_set():
                try:
                    reachable = await self.probe_once(client)
                    self.update(
                        reachable,
                        is_expensive=self.is_expensive,
                        connection_type=self.connection_type,
                    )
                    await asyncio.sleep(self.probe_interval)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in connectivity probe: {e}")
                    await asyncio.sleep(self.probe_interval)
