"""Active scheduled events and the power timers armed for them.

The :class:`TimerStore` is the single owner of the active-event set.  Every
mutation (reconciliation passes, merges and timer firings) happens while
holding :attr:`TimerStore.lock`:

- passes take the lock for their whole classify/diff/merge phase;
- timers fire through :meth:`TimerStore.dispatch`, which takes the lock
  before publishing and releasing events.

The synchronous primitives (:meth:`create`, :meth:`cancel`, :meth:`arm`,
:meth:`disarm`) assume the caller already holds the lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from aircon_scheduler.calendar.models import CalendarEntry, InstanceEntry
from aircon_scheduler.core.metrics import SchedulerMetrics
from aircon_scheduler.publisher import PowerState, Publisher

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class TimerKind(StrEnum):
    ON = "on"
    OFF = "off"


@dataclass(frozen=True)
class TimerCommand:
    """Immutable payload carried by a timer and executed when it fires.

    ``releases`` lists the events removed from the active set once the
    command has been published; power-on commands release nothing.
    """

    device_id: str
    power: PowerState
    releases: tuple[str, ...] = ()


class Timer:
    """One armed power timer backed by an asyncio task."""

    def __init__(self, fire_at: datetime, command: TimerCommand, task: asyncio.Task[None]) -> None:
        self.fire_at = fire_at
        self.command = command
        self._task = task

    @property
    def live(self) -> bool:
        return not self._task.done()

    def cancel(self) -> bool:
        """Cancel the timer; returns False if it already fired or is firing now."""
        if not self.live or self._task is asyncio.current_task():
            return False
        self._task.cancel()
        return True

    def matches(self, fire_at: datetime, command: TimerCommand) -> bool:
        return self.live and self.fire_at == fire_at and self.command == command

    def __repr__(self) -> str:
        state = "live" if self.live else "done"
        return f"Timer({self.command.power} {self.command.device_id} at {self.fire_at}, {state})"


@dataclass(eq=False)
class ScheduledEvent:
    """Runtime record pairing a calendar entry with its power timers.

    ``start`` is the power-on time (meeting start minus lead time) and ``end``
    the power-off time.  ``change_key`` is the instance entry's change key at
    creation; events are never edited, only cancelled and recreated.
    """

    id: str
    entry: CalendarEntry
    instance: InstanceEntry
    device_id: str
    start: datetime
    end: datetime
    change_key: str
    on_timer: Timer | None = None
    off_timer: Timer | None = None

    def timer(self, kind: TimerKind) -> Timer | None:
        timer = self.on_timer if kind is TimerKind.ON else self.off_timer
        if timer is not None and not timer.live:
            return None
        return timer

    def _set_timer(self, kind: TimerKind, timer: Timer | None) -> None:
        if kind is TimerKind.ON:
            self.on_timer = timer
        else:
            self.off_timer = timer

    @property
    def has_live_timers(self) -> bool:
        return self.timer(TimerKind.ON) is not None or self.timer(TimerKind.OFF) is not None

    def window_contains(self, moment: datetime) -> bool:
        return self.start < moment < self.end

    def log_fields(self) -> dict[str, str]:
        return {
            "entry": self.id[:10],
            "subject": self.instance.title,
            "device_id": self.device_id,
        }


class TimerStore:
    """Owns the active scheduled events and their power timers."""

    def __init__(
        self,
        publisher: Publisher,
        *,
        clock: Clock = utc_now,
        metrics: SchedulerMetrics | None = None,
    ) -> None:
        self.lock = asyncio.Lock()
        self._publisher = publisher
        self._clock = clock
        self._metrics = metrics or SchedulerMetrics()
        self._events: dict[str, ScheduledEvent] = {}

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def get(self, event_id: str) -> ScheduledEvent | None:
        return self._events.get(event_id)

    def events(self) -> list[ScheduledEvent]:
        return list(self._events.values())

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ScheduledEvent]:
        return iter(self.events())

    # ------------------------------------------------------------------
    # Event lifecycle (caller holds the lock)
    # ------------------------------------------------------------------

    def create(self, event: ScheduledEvent) -> ScheduledEvent:
        """Register *event* and arm its power-on and power-off timers."""
        if event.id in self._events:
            raise ValueError(f"Event {event.id!r} is already scheduled; cancel it first")
        self._events[event.id] = event
        self.arm(event, TimerKind.ON, event.start, TimerCommand(event.device_id, PowerState.ON))
        self.arm(
            event,
            TimerKind.OFF,
            event.end,
            TimerCommand(event.device_id, PowerState.OFF, releases=(event.id,)),
        )
        return event

    def cancel(self, event_id: str) -> bool:
        """Cancel an event's timers and remove it; no-op when absent.

        If the event's window is in progress the device is presumed on, so the
        power-off command is executed immediately before the event is dropped.
        """
        event = self._events.get(event_id)
        if event is None:
            return False

        self.disarm(event, TimerKind.ON)
        self.disarm(event, TimerKind.OFF)

        if event.window_contains(self._clock()):
            logger.info("Powering off in-progress event", extra=event.log_fields())
            self._execute(TimerCommand(event.device_id, PowerState.OFF))

        del self._events[event_id]
        return True

    def discard(self, event_id: str) -> bool:
        """Drop an event and any timers it still holds without publishing."""
        event = self._events.pop(event_id, None)
        if event is None:
            return False
        self.disarm(event, TimerKind.ON)
        self.disarm(event, TimerKind.OFF)
        return True

    # ------------------------------------------------------------------
    # Timer primitives (caller holds the lock)
    # ------------------------------------------------------------------

    def arm(
        self,
        event: ScheduledEvent,
        kind: TimerKind,
        fire_at: datetime,
        command: TimerCommand,
    ) -> Timer:
        """Arm a *kind* timer on *event*, replacing any live one."""
        self.disarm(event, kind)
        delay = max(0.0, (fire_at - self._clock()).total_seconds())
        task = asyncio.get_running_loop().create_task(
            self._fire_after(delay, command),
            name=f"aircon-{kind}-{event.id[:10]}",
        )
        timer = Timer(fire_at, command, task)
        event._set_timer(kind, timer)
        self._metrics.timer_armed(kind.value)
        return timer

    def disarm(self, event: ScheduledEvent, kind: TimerKind) -> bool:
        """Cancel the live *kind* timer on *event*; returns whether one was live."""
        timer = event.timer(kind)
        event._set_timer(kind, None)
        if timer is None or not timer.cancel():
            return False
        self._metrics.timer_cancelled(kind.value)
        return True

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def _fire_after(self, delay: float, command: TimerCommand) -> None:
        await asyncio.sleep(delay)
        await self.dispatch(command)

    async def dispatch(self, command: TimerCommand) -> None:
        """Execute a fired timer's command under the store lock."""
        async with self.lock:
            self._execute(command)

    def _execute(self, command: TimerCommand) -> None:
        logger.info(
            "Fire event",
            extra={"power": command.power.value, "device_id": command.device_id},
        )
        self._metrics.publish(command.power.value)
        try:
            self._publisher.publish(command.device_id, command.power)
        except Exception:
            # Retained delivery and the next pass correct the device state.
            self._metrics.publish_failed()
            logger.exception(
                "Failed to publish power command",
                extra={"power": command.power.value, "device_id": command.device_id},
            )

        for event_id in command.releases:
            self.discard(event_id)

    async def shutdown(self) -> None:
        """Cancel every live timer without publishing and clear the store."""
        async with self.lock:
            for event_id in list(self._events):
                self.discard(event_id)
