"""Calendar entry models, classification and the Microsoft Graph source."""

from aircon_scheduler.calendar.classifier import EntryClassifier
from aircon_scheduler.calendar.models import (
    CalendarEntry,
    EntryType,
    InstanceEntry,
    parse_entry,
)

__all__ = ["CalendarEntry", "EntryClassifier", "EntryType", "InstanceEntry", "parse_entry"]
