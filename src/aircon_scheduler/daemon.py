"""SchedulerDaemon: wires configuration to the scheduling engine.

Startup sequence:
1. Initialize telemetry and metrics
2. Connect the power-command publisher
3. Start the refresh poller

The poller runs one reconciliation pass per enabled room, sequentially, every
``refresh_interval``.  A failing calendar is logged and skipped; the other
rooms are still reconciled and the next interval retries it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Protocol
from zoneinfo import ZoneInfo

import httpx

from aircon_scheduler.calendar.graph import GraphCalendar, StaticTokenProvider
from aircon_scheduler.config import AppConfig
from aircon_scheduler.core.metrics import SchedulerMetrics, init_metrics
from aircon_scheduler.core.telemetry import init_telemetry
from aircon_scheduler.devices import DeviceResolver
from aircon_scheduler.publisher import MqttPublisher, Publisher
from aircon_scheduler.scheduling.merger import BackToBackMerger
from aircon_scheduler.scheduling.reconciler import Calendar, PassSummary, Reconciler
from aircon_scheduler.scheduling.store import Clock, TimerStore, utc_now

logger = logging.getLogger(__name__)


class ManagedPublisher(Publisher, Protocol):
    def connect(self) -> None: ...

    def disconnect(self) -> None: ...


class SchedulerDaemon:
    """Long-running process that keeps aircon timers in sync with bookings."""

    def __init__(
        self,
        config: AppConfig,
        *,
        publisher: ManagedPublisher | None = None,
        calendars: Sequence[Calendar] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self._timezone = ZoneInfo(config.scheduler.timezone)
        self._metrics = SchedulerMetrics()
        self._publisher = publisher or MqttPublisher(config.mqtt)

        self._http_client: httpx.AsyncClient | None = None
        if calendars is None:
            self._http_client = httpx.AsyncClient(timeout=config.graph.timeout_seconds)
            token_provider = StaticTokenProvider(config.graph.access_token)
            calendars = [
                GraphCalendar(
                    room.email,
                    token_provider,
                    http_client=self._http_client,
                    base_url=config.graph.base_url,
                    sync_window=config.graph.sync_window,
                    resync_interval=config.graph.resync_interval,
                    page_size=config.graph.page_size,
                )
                for room in config.enabled_rooms
            ]
        self.calendars: list[Calendar] = list(calendars)

        self.store = TimerStore(self._publisher, clock=clock, metrics=self._metrics)
        self.resolver = DeviceResolver(config.device_table())
        self.merger = BackToBackMerger(self.store, gap=config.scheduler.merge_gap, clock=clock)
        self.reconciler = Reconciler(
            self.store,
            self.resolver,
            self.merger,
            lead_time=config.scheduler.lead_time,
            timezone=self._timezone,
            clock=clock,
            metrics=self._metrics,
        )

        self._refresh_task: asyncio.Task[None] | None = None
        self._force_refresh = asyncio.Event()

    async def start(self, *, poll: bool = True, connect: bool = True) -> None:
        """Connect the publisher and, unless *poll* is False, start the refresh poller.

        With *connect* False nothing reaches the broker; used for dry runs.
        """
        init_telemetry(self.config.scheduler.name)
        init_metrics(self.config.scheduler.name)

        if connect:
            self._publisher.connect()
        if not poll:
            return

        self._refresh_task = asyncio.create_task(self._run_refresh_poller(), name="aircon-refresh")
        logger.info(
            "Scheduler started",
            extra={
                "rooms": self.resolver.rooms,
                "refresh_interval_s": int(self.config.scheduler.refresh_interval.total_seconds()),
            },
        )

    async def refresh(self) -> list[PassSummary]:
        """Run one reconciliation pass per calendar, in configuration order."""
        summaries: list[PassSummary] = []
        for calendar in self.calendars:
            try:
                summaries.append(await self.reconciler.run_pass(calendar))
            except Exception:
                logger.exception("Reconciliation pass failed for calendar %s", calendar.name)
        return summaries

    def request_refresh(self) -> None:
        """Wake the poller for an immediate pass."""
        self._force_refresh.set()

    async def _run_refresh_poller(self) -> None:
        interval_seconds = self.config.scheduler.refresh_interval.total_seconds()
        logger.debug("Refresh poller loop started (interval=%ds)", interval_seconds)
        while True:
            await self.refresh()

            try:
                await asyncio.wait_for(self._force_refresh.wait(), timeout=interval_seconds)
                self._force_refresh.clear()
                logger.debug("Refresh poller: immediate pass requested")
            except TimeoutError:
                pass

    async def shutdown(self) -> None:
        """Stop polling, cancel every timer without publishing, close transports."""
        logger.info("Shutting down scheduler: %s", self.config.scheduler.name)

        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None

        await self.store.shutdown()

        for calendar in self.calendars:
            shutdown = getattr(calendar, "shutdown", None)
            if shutdown is None:
                continue
            try:
                await shutdown()
            except Exception:
                logger.exception("Error during shutdown of calendar: %s", calendar.name)

        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

        self._publisher.disconnect()
