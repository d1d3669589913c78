"""Tests for SchedulerDaemon wiring, refresh polling and shutdown."""

from __future__ import annotations

import pytest

from aircon_scheduler.calendar.graph import CalendarError, GraphCalendar
from aircon_scheduler.calendar.models import CalendarEntry
from aircon_scheduler.config import AppConfig, parse_config
from aircon_scheduler.daemon import SchedulerDaemon
from aircon_scheduler.scheduling.reconciler import Outcome
from tests._helpers import FakeClock, RecordingPublisher, at, drain, make_entry

pytestmark = pytest.mark.unit


class StubCalendar:
    def __init__(self, name: str, entries: list[CalendarEntry], *, fail: bool = False):
        self._name = name
        self.entries = entries
        self.fail = fail
        self.fetches = 0
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    async def fetch(self) -> list[CalendarEntry]:
        self.fetches += 1
        if self.fail:
            raise CalendarError(f"{self._name} unavailable")
        return list(self.entries)

    async def shutdown(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _no_otlp(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)


@pytest.fixture
def config() -> AppConfig:
    return parse_config(
        {
            "scheduler": {"refresh_interval_seconds": 3600, "timezone": "Pacific/Auckland"},
            "graph": {"access_token": "tok"},
            "mqtt": {"host": "broker.local"},
            "rooms": [
                {"name": "Room A", "email": "room-a@example.com", "device_id": 3},
                {"name": "Room B", "email": "room-b@example.com", "device_id": 4},
                {
                    "name": "Room C",
                    "email": "room-c@example.com",
                    "device_id": 5,
                    "disabled": True,
                },
            ],
        }
    )


def _daemon(
    config: AppConfig, calendars: list[StubCalendar]
) -> tuple[SchedulerDaemon, RecordingPublisher]:
    publisher = RecordingPublisher()
    daemon = SchedulerDaemon(config, publisher=publisher, calendars=calendars, clock=FakeClock())
    return daemon, publisher


class TestConstruction:
    async def test_builds_graph_calendar_per_enabled_room(self, config: AppConfig):
        daemon = SchedulerDaemon(config, publisher=RecordingPublisher())
        try:
            assert [cal.name for cal in daemon.calendars] == [
                "room-a@example.com",
                "room-b@example.com",
            ]
            assert all(isinstance(cal, GraphCalendar) for cal in daemon.calendars)
            assert daemon.resolver.rooms == ["Room A", "Room B"]
        finally:
            await daemon.shutdown()


class TestRefresh:
    async def test_runs_one_pass_per_calendar(self, config: AppConfig):
        room_a = StubCalendar("room-a@example.com", [make_entry("a1", at(10), at(11))])
        room_b = StubCalendar(
            "room-b@example.com", [make_entry("b1", at(10), at(11), location="Room B")]
        )
        daemon, _ = _daemon(config, [room_a, room_b])

        summaries = await daemon.refresh()

        assert [s.calendar for s in summaries] == ["room-a@example.com", "room-b@example.com"]
        assert all(s.count(Outcome.SCHEDULED) == 1 for s in summaries)
        assert daemon.store.get("a1").device_id == "3"
        assert daemon.store.get("b1").device_id == "4"
        await daemon.shutdown()

    async def test_failing_calendar_does_not_stop_others(
        self, config: AppConfig, caplog: pytest.LogCaptureFixture
    ):
        broken = StubCalendar("room-a@example.com", [], fail=True)
        healthy = StubCalendar(
            "room-b@example.com", [make_entry("b1", at(10), at(11), location="Room B")]
        )
        daemon, _ = _daemon(config, [broken, healthy])

        with caplog.at_level("ERROR"):
            summaries = await daemon.refresh()

        assert [s.calendar for s in summaries] == ["room-b@example.com"]
        assert "Reconciliation pass failed for calendar room-a@example.com" in caplog.text
        assert "b1" in daemon.store
        await daemon.shutdown()


class TestLifecycle:
    async def test_start_connects_and_polls(self, config: AppConfig):
        calendar = StubCalendar("room-a@example.com", [make_entry("a1", at(10), at(11))])
        daemon, publisher = _daemon(config, [calendar])

        await daemon.start()
        await drain(20)

        assert publisher.connected is True
        assert calendar.fetches == 1
        assert "a1" in daemon.store

        daemon.request_refresh()
        await drain(20)
        assert calendar.fetches == 2

        await daemon.shutdown()

    async def test_shutdown_releases_everything(self, config: AppConfig):
        calendar = StubCalendar("room-a@example.com", [make_entry("a1", at(10), at(11))])
        daemon, publisher = _daemon(config, [calendar])
        await daemon.start()
        await drain(20)

        await daemon.shutdown()

        assert len(daemon.store) == 0
        assert calendar.closed is True
        assert publisher.connected is False
        # Shutdown cancels timers without commanding devices.
        assert publisher.calls == []

    async def test_start_without_polling(self, config: AppConfig):
        calendar = StubCalendar("room-a@example.com", [])
        daemon, publisher = _daemon(config, [calendar])

        await daemon.start(poll=False)
        await drain(20)

        assert publisher.connected is True
        assert calendar.fetches == 0
        await daemon.shutdown()

    async def test_dry_run_never_connects(self, config: AppConfig):
        calendar = StubCalendar("room-a@example.com", [make_entry("a1", at(10), at(11))])
        daemon, publisher = _daemon(config, [calendar])

        await daemon.start(poll=False, connect=False)
        await daemon.refresh()
        await daemon.shutdown()

        assert publisher.connected is False
        assert publisher.calls == []
