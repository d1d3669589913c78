"""Map calendar entries to the climate unit serving their room."""

from __future__ import annotations

from collections.abc import Mapping

from aircon_scheduler.calendar.models import InstanceEntry

# Separator used when several rooms are booked under one location name.
LOCATION_SEPARATOR = "&"


class DeviceResolver:
    """Resolves an instance entry to a device id via the static room table.

    Lookup order is fixed: every location (split on ``&``) is tried before any
    attendee, and the first match wins.  Room resources usually appear both
    as the location and as an attendee; attendees only matter when the
    location text was edited by hand.
    """

    def __init__(self, device_table: Mapping[str, str]) -> None:
        self._table = device_table

    @property
    def rooms(self) -> list[str]:
        return sorted(self._table)

    def resolve(self, entry: InstanceEntry) -> str | None:
        """Return the device id for *entry*, or ``None`` when unsupported."""
        for location in entry.locations:
            for part in location.display_name.split(LOCATION_SEPARATOR):
                device_id = self._table.get(part.strip())
                if device_id is not None:
                    return device_id

        for attendee in entry.attendees:
            device_id = self._table.get(attendee.display_name)
            if device_id is not None:
                return device_id

        return None
