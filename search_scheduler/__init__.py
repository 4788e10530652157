"""
Recurring Search Scheduler

Runs persisted, time-windowed searches on their own cadence and keeps the
running set in sync with the search store.

Features:
- Fixed-interval tick with per-job next-run computation
- One-time expiry callback when a search's window ends
- At most one in-flight run per search
- Periodic reconciliation (add/remove/refresh) against the store
- Run history and per-search run statistics
"""

from search_scheduler.scheduler import Scheduler
from search_scheduler.jobs import Job, JobState, DuplicateJobError, JobNotFoundError, JobExecutionError
from search_scheduler.reconcile import ReconcileCommand, ReconciliationState, SearchReconciler
from search_scheduler.service import SchedulerService
from search_scheduler.store import SearchStore
from search_scheduler.config import SchedulerConfig

__version__ = "0.1.0"
__all__ = [
    "Scheduler",
    "Job",
    "JobState",
    "DuplicateJobError",
    "JobNotFoundError",
    "JobExecutionError",
    "ReconcileCommand",
    "ReconciliationState",
    "SearchReconciler",
    "SchedulerService",
    "SearchStore",
    "SchedulerConfig",
]
