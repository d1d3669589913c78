"""Shared fixtures for the scheduler test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import timedelta

import pytest

from aircon_scheduler.devices import DeviceResolver
from aircon_scheduler.scheduling.merger import BackToBackMerger
from aircon_scheduler.scheduling.reconciler import Reconciler
from aircon_scheduler.scheduling.store import TimerStore
from tests._helpers import DEVICE_TABLE, FakeClock, RecordingPublisher


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
async def store(publisher: RecordingPublisher, clock: FakeClock) -> AsyncIterator[TimerStore]:
    timer_store = TimerStore(publisher, clock=clock)
    yield timer_store
    await timer_store.shutdown()


@pytest.fixture
def merger(store: TimerStore, clock: FakeClock) -> BackToBackMerger:
    return BackToBackMerger(store, gap=timedelta(minutes=10), clock=clock)


@pytest.fixture
def reconciler(store: TimerStore, merger: BackToBackMerger, clock: FakeClock) -> Reconciler:
    return Reconciler(
        store,
        DeviceResolver(DEVICE_TABLE),
        merger,
        lead_time=timedelta(minutes=5),
        clock=clock,
    )
