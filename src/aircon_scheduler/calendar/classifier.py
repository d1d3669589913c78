"""Resolve calendar entries to the instance entry that describes them."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from aircon_scheduler.calendar.models import CalendarEntry, EntryType, InstanceEntry

logger = logging.getLogger(__name__)


class EntryClassifier:
    """Classifies entries of one fetched batch by recurrence role.

    Occurrences are resolved against series masters of the *same* batch only;
    a master fetched in an earlier pass is never consulted.
    """

    def __init__(self, batch: Sequence[CalendarEntry]) -> None:
        self._masters: dict[str, InstanceEntry] = {
            entry.id: entry for entry in batch if entry.type == EntryType.SERIES_MASTER
        }

    @staticmethod
    def is_template(entry: CalendarEntry) -> bool:
        """Series masters describe their occurrences but are never scheduled."""
        return entry.type == EntryType.SERIES_MASTER

    def instance_for(self, entry: CalendarEntry) -> InstanceEntry | None:
        """Return the entry carrying display metadata for *entry*.

        Returns ``None`` when an occurrence's series master is not part of the
        batch.
        """
        match entry.type:
            case EntryType.SINGLE_INSTANCE | EntryType.EXCEPTION | EntryType.SERIES_MASTER:
                return entry
            case EntryType.OCCURRENCE:
                master = self._masters.get(entry.series_master_id)
                if master is None:
                    logger.debug(
                        "Series master %s not in batch",
                        entry.series_master_id,
                        extra={"entry": entry.id[:10]},
                    )
                return master
            case _:
                raise ValueError(f"Unknown calendar entry type: {entry.type!r}")
