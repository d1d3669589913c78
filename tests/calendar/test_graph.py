"""Tests for GraphCalendar delta sync against a mocked Graph API."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from aircon_scheduler.calendar.graph import (
    CalendarError,
    CalendarRequestError,
    GraphCalendar,
    StaticTokenProvider,
)
from tests._helpers import FakeClock, at, entry_payload

pytestmark = pytest.mark.unit

BASE_URL = "https://graph.test/v1.0"
DELTA_URL = f"{BASE_URL}/users/room-a@example.com/calendarView/delta"
DELTA_LINK = f"{DELTA_URL}?$deltatoken=tok-1"


def _calendar(
    handler: Callable[[httpx.Request], httpx.Response],
    clock: FakeClock | None = None,
) -> GraphCalendar:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphCalendar(
        "room-a@example.com",
        StaticTokenProvider("tok-abc"),
        http_client=client,
        base_url=BASE_URL,
        page_size=25,
        clock=clock or FakeClock(),
    )


def _is_full_sync(request: httpx.Request) -> bool:
    return "startDateTime" in request.url.params


class TestFullSync:
    async def test_follows_pages_until_delta_link(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "skiptoken" in str(request.url):
                return httpx.Response(
                    200,
                    json={
                        "value": [entry_payload("e1", at(9), at(10))],
                        "@odata.deltaLink": DELTA_LINK,
                    },
                )
            return httpx.Response(
                200,
                json={
                    "value": [entry_payload("e2", at(11), at(12))],
                    "@odata.nextLink": f"{DELTA_URL}?$skiptoken=page-2",
                },
            )

        calendar = _calendar(handler)
        entries = await calendar.fetch()

        assert [entry.id for entry in entries] == ["e1", "e2"]
        assert calendar.delta_link == DELTA_LINK
        assert len(requests) == 2

        first = requests[0]
        assert str(first.url).startswith(DELTA_URL)
        query = parse_qs(urlparse(str(first.url)).query)
        assert query["startDateTime"] == ["2026-03-02T08:00:00Z"]
        assert query["endDateTime"] == ["2026-03-03T08:00:00Z"]
        assert first.headers["Authorization"] == "Bearer tok-abc"
        assert 'outlook.timezone="UTC"' in first.headers["Prefer"]
        assert "odata.maxpagesize=25" in first.headers["Prefer"]

    async def test_malformed_entries_are_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "value": [
                        entry_payload("ok", at(9), at(10)),
                        {"id": "broken", "type": "singleInstance"},
                    ],
                    "@odata.deltaLink": DELTA_LINK,
                },
            )

        entries = await _calendar(handler).fetch()
        assert [entry.id for entry in entries] == ["ok"]


class TestDeltaSync:
    async def test_merges_changes_and_tombstones_removals(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if _is_full_sync(request):
                return httpx.Response(
                    200,
                    json={
                        "value": [
                            entry_payload("e1", at(9), at(10)),
                            entry_payload("e2", at(11), at(12), change_key="ck-e2"),
                        ],
                        "@odata.deltaLink": DELTA_LINK,
                    },
                )
            assert "deltatoken=" in str(request.url)
            return httpx.Response(
                200,
                json={
                    "value": [
                        entry_payload("e1", at(9, 30), at(10), change_key="ck-2"),
                        {"id": "e2", "@removed": {"reason": "deleted"}},
                    ],
                    "@odata.deltaLink": f"{DELTA_URL}?$deltatoken=tok-2",
                },
            )

        calendar = _calendar(handler)
        await calendar.fetch()
        entries = await calendar.fetch()

        by_id = {entry.id: entry for entry in entries}
        assert by_id["e1"].change_key == "ck-2"
        assert by_id["e2"].is_cancelled is True
        assert by_id["e2"].change_key == "removed:ck-e2"
        assert calendar.delta_link.endswith("tok-2")

        # Tombstones are reported once only.
        third = await calendar.fetch()
        assert [entry.id for entry in third] == ["e1"]

    async def test_gone_triggers_single_full_resync(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if not _is_full_sync(request):
                return httpx.Response(410, json={"error": {"message": "resync required"}})
            return httpx.Response(
                200,
                json={
                    "value": [entry_payload("e1", at(9), at(10))],
                    "@odata.deltaLink": DELTA_LINK,
                },
            )

        calendar = _calendar(handler)
        await calendar.fetch()
        entries = await calendar.fetch()

        assert [entry.id for entry in entries] == ["e1"]
        assert [_is_full_sync(r) for r in requests] == [True, False, True]

    async def test_resync_after_interval(self):
        requests: list[httpx.Request] = []
        clock = FakeClock()

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            value = [entry_payload("e1", at(9), at(10))] if _is_full_sync(request) else []
            return httpx.Response(200, json={"value": value, "@odata.deltaLink": DELTA_LINK})

        calendar = _calendar(handler, clock)
        await calendar.fetch()
        clock.advance(timedelta(hours=1))
        await calendar.fetch()
        clock.advance(timedelta(hours=12))
        await calendar.fetch()

        assert [_is_full_sync(r) for r in requests] == [True, False, True]
        query = parse_qs(urlparse(str(requests[2].url)).query)
        assert query["startDateTime"] == ["2026-03-02T21:00:00Z"]

    async def test_entries_missing_from_full_resync_are_tombstoned(self):
        full_syncs = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if not _is_full_sync(request):
                return httpx.Response(410)
            full_syncs["n"] += 1
            value = [entry_payload("e1", at(9), at(10))]
            if full_syncs["n"] == 1:
                value.append(entry_payload("e2", at(11), at(12)))
            return httpx.Response(200, json={"value": value, "@odata.deltaLink": DELTA_LINK})

        calendar = _calendar(handler)
        await calendar.fetch()
        entries = await calendar.fetch()

        by_id = {entry.id: entry for entry in entries}
        assert by_id["e2"].is_cancelled is True
        assert by_id["e1"].is_cancelled is False


class TestErrors:
    async def test_http_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": {"message": "try later"}})

        with pytest.raises(CalendarRequestError, match="try later") as exc_info:
            await _calendar(handler).fetch()
        assert exc_info.value.status_code == 503

    async def test_transport_error_is_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(CalendarError, match="unreachable"):
            await _calendar(handler).fetch()

    async def test_invalid_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>")

        with pytest.raises(CalendarError, match="invalid JSON"):
            await _calendar(handler).fetch()

    async def test_missing_links(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"value": []})

        with pytest.raises(CalendarError, match="neither nextLink nor deltaLink"):
            await _calendar(handler).fetch()

    async def test_failure_keeps_cache_and_delta_link(self):
        fail = {"on": False}

        def handler(request: httpx.Request) -> httpx.Response:
            if fail["on"]:
                return httpx.Response(500)
            return httpx.Response(
                200,
                json={
                    "value": [entry_payload("e1", at(9), at(10))],
                    "@odata.deltaLink": DELTA_LINK,
                },
            )

        calendar = _calendar(handler)
        await calendar.fetch()
        fail["on"] = True

        with pytest.raises(CalendarRequestError):
            await calendar.fetch()
        assert calendar.delta_link == DELTA_LINK

        fail["on"] = False
        assert [entry.id for entry in await calendar.fetch()] == ["e1"]


def test_static_token_provider_rejects_blank():
    with pytest.raises(ValueError):
        StaticTokenProvider("  ")
