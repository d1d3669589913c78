"""Reconciliation passes: diff fetched calendar entries against active timers.

A pass fetches the calendar, then, holding the store lock, classifies every
entry into exactly one outcome, cancels or (re)creates its scheduled event,
and finally lets the back-to-back merger rewrite timer boundaries.

Outcomes are evaluated in priority order::

    all-day, cancelled, past, unsupported, schedulable

Only schedulable entries create events; every other outcome cancels an
existing event for the entry, if there is one.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import Protocol

from aircon_scheduler.calendar.classifier import EntryClassifier
from aircon_scheduler.calendar.models import CalendarEntry, InstanceEntry
from aircon_scheduler.core.logging import calendar_context
from aircon_scheduler.core.metrics import SchedulerMetrics
from aircon_scheduler.core.telemetry import get_tracer
from aircon_scheduler.devices import DeviceResolver
from aircon_scheduler.scheduling.merger import BackToBackMerger, MergeResult
from aircon_scheduler.scheduling.store import Clock, ScheduledEvent, TimerStore, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LEAD_TIME = timedelta(minutes=5)


class Calendar(Protocol):
    """Source of calendar entries for one room mailbox."""

    @property
    def name(self) -> str: ...

    async def fetch(self) -> list[CalendarEntry]:
        """Return the current entries ordered by start time ascending."""
        ...


class Outcome(StrEnum):
    TEMPLATE = "template"
    UNRESOLVED = "unresolved"
    UNCHANGED = "unchanged"
    ALL_DAY = "all_day"
    CANCELLED = "cancelled"
    PAST = "past"
    UNSUPPORTED = "unsupported"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"


# Human labels for the non-schedulable outcomes, used in log messages.
_SKIP_LABELS = {
    Outcome.ALL_DAY: "all-day",
    Outcome.CANCELLED: "cancelled",
    Outcome.PAST: "past",
    Outcome.UNSUPPORTED: "unsupported location",
}


@dataclass
class PassSummary:
    """What a single reconciliation pass did."""

    calendar: str
    entries: int = 0
    outcomes: Counter[Outcome] = field(default_factory=Counter)
    unscheduled: int = 0
    merge: MergeResult = field(default_factory=MergeResult)

    def count(self, outcome: Outcome) -> int:
        return self.outcomes[outcome]


class Reconciler:
    """Drives create/cancel decisions for fetched calendar entries."""

    def __init__(
        self,
        store: TimerStore,
        resolver: DeviceResolver,
        merger: BackToBackMerger,
        *,
        lead_time: timedelta = DEFAULT_LEAD_TIME,
        timezone: tzinfo = UTC,
        clock: Clock = utc_now,
        metrics: SchedulerMetrics | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._merger = merger
        self._lead_time = lead_time
        self._timezone = timezone
        self._clock = clock
        self._metrics = metrics or SchedulerMetrics()

    async def run_pass(self, calendar: Calendar) -> PassSummary:
        """Fetch *calendar* and reconcile its entries against the store.

        Fetch errors propagate before anything is touched.
        """
        with calendar_context(calendar.name):
            entries = await calendar.fetch()
            logger.info("Scheduling calendar entries", extra={"count": len(entries)})

            tracer = get_tracer()
            with tracer.start_as_current_span("aircon.reconcile") as span:
                span.set_attribute("calendar", calendar.name)
                span.set_attribute("entries", len(entries))
                async with self._store.lock:
                    summary = self.reconcile(entries, calendar=calendar.name)
                for outcome, count in summary.outcomes.items():
                    span.set_attribute(f"outcome.{outcome}", count)
                span.set_attribute("active_events", len(self._store))
            return summary

    def reconcile(self, entries: Sequence[CalendarEntry], *, calendar: str = "") -> PassSummary:
        """Reconcile one batch.  Caller holds the store lock."""
        now = self._clock()
        classifier = EntryClassifier(entries)
        summary = PassSummary(calendar=calendar, entries=len(entries))

        for entry in entries:
            if classifier.is_template(entry):
                summary.outcomes[Outcome.TEMPLATE] += 1
                continue
            outcome, unscheduled = self._reconcile_entry(entry, classifier, now)
            summary.outcomes[outcome] += 1
            summary.unscheduled += int(unscheduled)
            self._metrics.outcome(outcome.value)

        summary.merge = self._merger.merge()
        return summary

    def _reconcile_entry(
        self,
        entry: CalendarEntry,
        classifier: EntryClassifier,
        now: datetime,
    ) -> tuple[Outcome, bool]:
        instance = classifier.instance_for(entry)
        if instance is None:
            logger.error(
                "Skipping entry without instance to describe it",
                extra={"entry": entry.id[:10], "series_master": entry.series_master_id[:10]},
            )
            return Outcome.UNRESOLVED, False

        existing = self._store.get(entry.id)
        if existing is not None and existing.change_key == instance.change_key:
            return Outcome.UNCHANGED, False

        try:
            start = entry.start.resolve(self._timezone)
            end = entry.end.resolve(self._timezone)
        except ValueError:
            logger.exception(
                "Skipping entry with unreadable start/end", extra={"entry": entry.id[:10]}
            )
            return Outcome.UNRESOLVED, False

        fields = _log_fields(entry, instance, start, end, self._timezone)

        if instance.is_all_day:
            return Outcome.ALL_DAY, self._unschedule(entry.id, Outcome.ALL_DAY, fields)

        if instance.is_cancelled:
            return Outcome.CANCELLED, self._unschedule(entry.id, Outcome.CANCELLED, fields)

        scheduled_start = start - self._lead_time
        if scheduled_start < now:
            return Outcome.PAST, self._unschedule(entry.id, Outcome.PAST, fields)

        device_id = self._resolver.resolve(instance)
        if device_id is None:
            fields["locations"] = [loc.display_name for loc in instance.locations]
            return Outcome.UNSUPPORTED, self._unschedule(entry.id, Outcome.UNSUPPORTED, fields)

        # Cancel first so two timer pairs are never in flight for one entry.
        if existing is not None:
            self._store.cancel(entry.id)

        self._store.create(
            ScheduledEvent(
                id=entry.id,
                entry=entry,
                instance=instance,
                device_id=device_id,
                start=scheduled_start,
                end=end,
                change_key=instance.change_key,
            )
        )
        fields["device_id"] = device_id
        if existing is not None:
            logger.info("Rescheduled event", extra=fields)
            return Outcome.RESCHEDULED, False
        logger.info("Scheduled event", extra=fields)
        return Outcome.SCHEDULED, False

    def _unschedule(self, entry_id: str, outcome: Outcome, fields: dict) -> bool:
        label = _SKIP_LABELS[outcome]
        if self._store.cancel(entry_id):
            logger.info("Unscheduling %s event", label, extra=fields)
            return True
        logger.info("Skipping %s event", label, extra=fields)
        return False


def _log_fields(
    entry: CalendarEntry,
    instance: InstanceEntry,
    start: datetime,
    end: datetime,
    timezone: tzinfo,
) -> dict:
    duration_min = int((end - start).total_seconds() // 60)
    return {
        "entry": entry.id[:10],
        "instance": instance.id[:10],
        "subject": instance.title,
        "start": start.astimezone(timezone).strftime("%d/%m/%Y, %H:%M"),
        "end": end.astimezone(timezone).strftime("%d/%m/%Y, %H:%M"),
        "duration": f"{duration_min}min",
    }
