"""Scheduler package for triggering sync runs."""

from .sync_scheduler import SyncScheduler, SchedulerError, SYNC_JOB_ID

__all__ = [
    "SyncScheduler",
    "SchedulerError",
    "SYNC_JOB_ID"
]
