"""Timer store, reconciliation passes and back-to-back merging."""

from aircon_scheduler.scheduling.merger import BackToBackMerger, MergeResult
from aircon_scheduler.scheduling.reconciler import Outcome, PassSummary, Reconciler
from aircon_scheduler.scheduling.store import ScheduledEvent, TimerCommand, TimerKind, TimerStore

__all__ = [
    "BackToBackMerger",
    "MergeResult",
    "Outcome",
    "PassSummary",
    "Reconciler",
    "ScheduledEvent",
    "TimerCommand",
    "TimerKind",
    "TimerStore",
]
