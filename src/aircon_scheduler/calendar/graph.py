"""Microsoft Graph calendar collaborator.

Fetches a room mailbox's bookings with the ``calendarView/delta`` flow:

- the first sync requests ``startDateTime``/``endDateTime`` covering
  ``now .. now + sync_window`` and follows ``@odata.nextLink`` pages until an
  ``@odata.deltaLink`` is returned;
- later syncs start from the stored delta link and only receive changes,
  which are merged into a local cache so :meth:`GraphCalendar.fetch` always
  returns the full current batch;
- a ``410 Gone`` response, or a delta link older than ``resync_interval``,
  triggers a fresh full sync so the window keeps moving forward.

Entries reported as ``@removed`` are returned once as cancelled tombstones so
the scheduler tears down any timers they still own.

Token acquisition is not handled here; callers inject a :class:`TokenProvider`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from aircon_scheduler.calendar.models import CalendarEntry, SingleInstanceEntry, parse_entry
from aircon_scheduler.config import DEFAULT_GRAPH_BASE_URL

logger = logging.getLogger(__name__)

DEFAULT_SYNC_WINDOW = timedelta(hours=24)
DEFAULT_RESYNC_INTERVAL = timedelta(hours=12)
DEFAULT_PAGE_SIZE = 50


class CalendarError(RuntimeError):
    """Base error for calendar fetch failures."""


class CalendarRequestError(CalendarError):
    def __init__(self, *, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class CalendarSyncExpiredError(CalendarError):
    """Raised when Graph rejects a delta link with 410 Gone."""


class TokenProvider(Protocol):
    async def get_access_token(self) -> str: ...


class StaticTokenProvider:
    """Serves a pre-issued access token from configuration."""

    def __init__(self, token: str) -> None:
        if not token.strip():
            raise ValueError("Access token must be a non-empty string")
        self._token = token.strip()

    async def get_access_token(self) -> str:
        return self._token


@dataclass
class _SyncResult:
    items: list[dict[str, Any]]
    delta_link: str
    full: bool


def _graph_datetime(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"Graph request failed with status {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return f"Graph request failed ({response.status_code}): {error['message']}"
    return f"Graph request failed with status {response.status_code}"


def _tombstone(entry: CalendarEntry) -> SingleInstanceEntry:
    return SingleInstanceEntry(
        id=entry.id,
        start=entry.start,
        end=entry.end,
        change_key=f"removed:{entry.change_key}",
        subject=entry.subject,
        is_cancelled=True,
    )


class GraphCalendar:
    """Calendar collaborator for one room mailbox."""

    def __init__(
        self,
        email: str,
        token_provider: TokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        sync_window: timedelta = DEFAULT_SYNC_WINDOW,
        resync_interval: timedelta = DEFAULT_RESYNC_INTERVAL,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.email = email
        self._token_provider = token_provider
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")
        self._sync_window = sync_window
        self._resync_interval = resync_interval
        self._page_size = page_size
        self._clock = clock or (lambda: datetime.now(UTC))

        self._delta_link: str | None = None
        self._synced_at: datetime | None = None
        self._entries: dict[str, CalendarEntry] = {}

    @property
    def name(self) -> str:
        return self.email

    @property
    def delta_link(self) -> str | None:
        return self._delta_link

    def reset(self) -> None:
        """Forget the delta link so the next fetch performs a full sync."""
        self._delta_link = None
        self._synced_at = None

    async def fetch(self) -> list[CalendarEntry]:
        """Return every known entry, sorted by start ascending.

        Raises:
            CalendarError: When Graph cannot be reached or answers with an
                error; the cache and delta link are left untouched.
        """
        now = self._clock()
        if self._synced_at is not None and now - self._synced_at >= self._resync_interval:
            logger.info("Delta link expired by age; running full sync")
            self.reset()

        try:
            result = await self._sync(now)
        except CalendarSyncExpiredError:
            logger.warning("Delta link rejected by Graph; running full sync")
            self.reset()
            result = await self._sync(now)

        tombstones = self._apply(result)
        self._delta_link = result.delta_link
        if result.full:
            self._synced_at = now

        entries: list[CalendarEntry] = [*self._entries.values(), *tombstones]
        # Prefer: outlook.timezone="UTC" makes the raw dateTime strings comparable.
        return sorted(entries, key=lambda e: (e.start.date_time, e.id))

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply(self, result: _SyncResult) -> list[SingleInstanceEntry]:
        previous = self._entries
        current: dict[str, CalendarEntry] = {} if result.full else dict(previous)
        removed: list[str] = []

        for item in result.items:
            entry_id = item.get("id")
            if not isinstance(entry_id, str) or not entry_id:
                continue
            if "@removed" in item:
                current.pop(entry_id, None)
                removed.append(entry_id)
                continue
            try:
                current[entry_id] = parse_entry(item)
            except (ValidationError, ValueError):
                logger.warning("Skipping malformed calendar entry", extra={"entry": entry_id[:10]})

        if result.full:
            # Anything missing from a full sync no longer exists in the window.
            removed.extend(entry_id for entry_id in previous if entry_id not in current)

        self._entries = current
        return [_tombstone(previous[entry_id]) for entry_id in removed if entry_id in previous]

    async def _sync(self, now: datetime) -> _SyncResult:
        token = await self._token_provider.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Prefer": f'outlook.timezone="UTC", odata.maxpagesize={self._page_size}',
        }

        full = self._delta_link is None
        params: dict[str, str] | None
        if self._delta_link is not None:
            url = self._delta_link
            params = None
        else:
            url = f"{self._base_url}/users/{quote(self.email, safe='@')}/calendarView/delta"
            params = {
                "startDateTime": _graph_datetime(now),
                "endDateTime": _graph_datetime(now + self._sync_window),
            }

        items: list[dict[str, Any]] = []
        while True:
            try:
                response = await self._http_client.get(url, params=params, headers=headers)
            except httpx.HTTPError as exc:
                raise CalendarError(f"Graph request for {self.email} failed: {exc}") from exc

            if response.status_code == 410:
                raise CalendarSyncExpiredError(f"Delta link expired for calendar '{self.email}'")
            if response.status_code < 200 or response.status_code >= 300:
                raise CalendarRequestError(
                    status_code=response.status_code,
                    message=_safe_error_message(response),
                )

            try:
                payload = response.json()
            except ValueError as exc:
                raise CalendarError("Graph delta response returned invalid JSON") from exc
            if not isinstance(payload, dict):
                raise CalendarError("Graph delta response has unexpected payload shape")

            value = payload.get("value")
            if isinstance(value, list):
                items.extend(item for item in value if isinstance(item, dict))

            next_link = payload.get("@odata.nextLink")
            delta_link = payload.get("@odata.deltaLink")
            if isinstance(next_link, str) and next_link:
                url, params = next_link, None
                continue
            if isinstance(delta_link, str) and delta_link:
                return _SyncResult(items=items, delta_link=delta_link, full=full)
            raise CalendarError(
                f"Graph delta response for '{self.email}' returned neither nextLink nor deltaLink"
            )
