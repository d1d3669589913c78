"""Back-to-back merging of adjacent scheduled events.

After every pass the merger rewrites timer boundaries so a room that is
booked continuously is not power-cycled between meetings:

- events are grouped per device and sorted by power-on time;
- an event joins the current chain when its power-on time is less than
  ``gap`` after the chain's running end (the latest power-off seen so far in
  the chain, not merely the previous event's);
- a chain of two or more keeps only two timers: power-on at the first event's
  start and power-off at the chain end, which releases every member.

Timers are reconciled against that plan rather than torn down and rebuilt,
so running the merger twice over an unchanged store arms and cancels nothing.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from aircon_scheduler.publisher import PowerState
from aircon_scheduler.scheduling.store import (
    Clock,
    ScheduledEvent,
    TimerCommand,
    TimerKind,
    TimerStore,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MERGE_GAP = timedelta(minutes=10)

_Plan = dict[tuple[str, TimerKind], tuple[datetime, TimerCommand]]


@dataclass
class MergeResult:
    chains: int = 0
    armed: int = 0
    cancelled: int = 0
    expired: int = 0


class BackToBackMerger:
    """Collapses timers of adjacent events on the same device."""

    def __init__(
        self,
        store: TimerStore,
        *,
        gap: timedelta = DEFAULT_MERGE_GAP,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._gap = gap
        self._clock = clock

    def chains(self) -> list[list[ScheduledEvent]]:
        """Return maximal chains of the active set, per device, in start order."""
        by_device: dict[str, list[ScheduledEvent]] = defaultdict(list)
        for event in self._store.events():
            by_device[event.device_id].append(event)

        chains: list[list[ScheduledEvent]] = []
        for device_id in sorted(by_device):
            events = sorted(by_device[device_id], key=lambda ev: (ev.start, ev.end, ev.id))
            chain = [events[0]]
            chain_end = events[0].end
            for event in events[1:]:
                if event.start - chain_end < self._gap:
                    chain.append(event)
                    chain_end = max(chain_end, event.end)
                else:
                    chains.append(chain)
                    chain = [event]
                    chain_end = event.end
            chains.append(chain)
        return chains

    def merge(self) -> MergeResult:
        """Bring every event's timers in line with the chain plan.

        Caller holds the store lock.
        """
        now = self._clock()
        result = MergeResult(expired=self._expire(now))

        for chain in self.chains():
            plan = _plan_chain(chain)
            armed, cancelled = self._apply(chain, plan, now)
            result.armed += armed
            result.cancelled += cancelled
            if len(chain) > 1:
                result.chains += 1
                if armed or cancelled:
                    logger.info(
                        "Found back-to-back events",
                        extra={
                            "device_id": chain[0].device_id,
                            "events": [ev.log_fields() for ev in chain],
                            "start": chain[0].start.isoformat(),
                            "end": max(ev.end for ev in chain).isoformat(),
                        },
                    )
        return result

    def _expire(self, now: datetime) -> int:
        """Drop ended events whose timers are gone and no live timer will release.

        These are left behind when a chain breaks up after its first members
        have already finished.
        """
        referenced: set[str] = set()
        for event in self._store.events():
            for kind in TimerKind:
                timer = event.timer(kind)
                if timer is not None:
                    referenced.update(timer.command.releases)

        expired = 0
        for event in self._store.events():
            if event.end <= now and not event.has_live_timers and event.id not in referenced:
                self._store.discard(event.id)
                expired += 1
        return expired

    def _apply(self, chain: list[ScheduledEvent], plan: _Plan, now: datetime) -> tuple[int, int]:
        armed = cancelled = 0
        for event in chain:
            for kind in TimerKind:
                current = event.timer(kind)
                wanted = plan.get((event.id, kind))

                if wanted is None:
                    if current is not None and self._store.disarm(event, kind):
                        cancelled += 1
                    continue

                fire_at, command = wanted
                if current is not None and current.matches(fire_at, command):
                    continue
                replaced = current is not None and self._store.disarm(event, kind)
                if replaced:
                    cancelled += 1
                # A boundary already behind us has fired; never replay it. A live
                # timer that was due but had not run yet is re-armed to fire now.
                if fire_at <= now and not replaced:
                    continue
                self._store.arm(event, kind, fire_at, command)
                armed += 1
        return armed, cancelled


def _plan_chain(chain: list[ScheduledEvent]) -> _Plan:
    first = chain[0]
    device_id = first.device_id

    if len(chain) == 1:
        return {
            (first.id, TimerKind.ON): (first.start, TimerCommand(device_id, PowerState.ON)),
            (first.id, TimerKind.OFF): (
                first.end,
                TimerCommand(device_id, PowerState.OFF, releases=(first.id,)),
            ),
        }

    # The power-off lives on the member ending last; ties go to the later start.
    last = max(reversed(chain), key=lambda ev: ev.end)
    return {
        (first.id, TimerKind.ON): (first.start, TimerCommand(device_id, PowerState.ON)),
        (last.id, TimerKind.OFF): (
            last.end,
            TimerCommand(
                device_id,
                PowerState.OFF,
                releases=tuple(ev.id for ev in chain),
            ),
        ),
    }
