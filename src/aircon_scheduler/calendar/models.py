"""Calendar entry models as returned by Microsoft Graph ``calendarView``.

Entries are a tagged union over the ``type`` discriminant.  Series masters,
single instances and exceptions carry display metadata; occurrences only point
back at their series master through ``seriesMasterId``.
"""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
from enum import StrEnum
from typing import Annotated, Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class EntryType(StrEnum):
    """Recurrence role of a calendar entry."""

    SERIES_MASTER = "seriesMaster"
    SINGLE_INSTANCE = "singleInstance"
    EXCEPTION = "exception"
    OCCURRENCE = "occurrence"


class _GraphModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class EntryDateTime(_GraphModel):
    """A wall-clock ``dateTime`` paired with the zone it is expressed in."""

    date_time: str
    time_zone: str = "UTC"

    def resolve(self, default_tz: tzinfo = UTC) -> datetime:
        """Return a timezone-aware datetime.

        Graph emits up to seven fractional digits and no offset; the zone comes
        from ``timeZone``.  Zone names Python cannot resolve (Windows names such
        as "New Zealand Standard Time") fall back to *default_tz*.
        """
        normalized = self.date_time.strip()
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValueError(f"Calendar returned an invalid dateTime: {self.date_time}") from exc
        if parsed.tzinfo is not None:
            return parsed
        return parsed.replace(tzinfo=_coerce_zone(self.time_zone, default_tz))


def _coerce_zone(name: str, default_tz: tzinfo) -> tzinfo:
    normalized = name.strip()
    if normalized.upper() in ("UTC", "Z", "ETC/UTC"):
        return UTC
    if not normalized:
        return default_tz
    try:
        return ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError):
        return default_tz


class EmailAddress(_GraphModel):
    name: str = ""
    address: str = ""


class Attendee(_GraphModel):
    email_address: EmailAddress = Field(default_factory=EmailAddress)
    type: str | None = None

    @property
    def display_name(self) -> str:
        return self.email_address.name


class Location(_GraphModel):
    display_name: str = ""


class _EntryBase(_GraphModel):
    id: str
    start: EntryDateTime
    end: EntryDateTime
    change_key: str = ""
    subject: str | None = ""
    is_cancelled: bool = False
    is_all_day: bool = False
    locations: list[Location] = Field(default_factory=list)
    attendees: list[Attendee] = Field(default_factory=list)

    @property
    def title(self) -> str:
        return (self.subject or "").strip()


class SeriesMasterEntry(_EntryBase):
    """Template for a recurring series; never scheduled itself."""

    type: Literal["seriesMaster"] = "seriesMaster"


class SingleInstanceEntry(_EntryBase):
    type: Literal["singleInstance"] = "singleInstance"


class ExceptionEntry(_EntryBase):
    """An occurrence of a series that was edited and now describes itself."""

    type: Literal["exception"] = "exception"


class OccurrenceEntry(_EntryBase):
    """An unmodified occurrence of a series; metadata lives on the master."""

    type: Literal["occurrence"] = "occurrence"
    series_master_id: str


CalendarEntry = Annotated[
    SeriesMasterEntry | SingleInstanceEntry | ExceptionEntry | OccurrenceEntry,
    Field(discriminator="type"),
]

# Entries that carry their own display metadata.
InstanceEntry = SeriesMasterEntry | SingleInstanceEntry | ExceptionEntry

_ENTRY_ADAPTER: TypeAdapter[CalendarEntry] = TypeAdapter(CalendarEntry)


def parse_entry(payload: dict[str, Any]) -> CalendarEntry:
    """Validate a raw Graph event payload into its entry variant.

    Raises:
        pydantic.ValidationError: If the payload is malformed or its type is
            not one of the known recurrence roles.
    """
    return _ENTRY_ADAPTER.validate_python(payload)
