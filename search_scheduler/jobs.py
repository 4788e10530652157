"""
Job model and run history for the search scheduler.

A Job is one recurring, time-windowed unit of work. The scheduler owns
the jobs; this module only knows how a single job decides whether it is
due, when it runs next and when it has expired.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from models import to_local_naive

logger = logging.getLogger(__name__)


class DuplicateJobError(ValueError):
    """Raised when a job id is registered twice."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' already exists")


class JobNotFoundError(LookupError):
    """Raised when a job id is not registered."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class JobExecutionError(Exception):
    """Raised when a job's work fails."""

    def __init__(self, job_id: str, cause: Exception):
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"Job '{job_id}' failed: {cause}")


class JobState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class Job:
    """
    A recurring unit of work bounded by a start/end window.

    With ``immediate`` set, the first run happens on the next tick even if
    the window has not started yet. Otherwise the first run is at
    ``start_date``, or at ``next_run`` when one is supplied (a resumed
    schedule), but never before ``start_date``.
    """
    id: str
    start_date: datetime
    end_date: datetime
    frequency_hours: float
    work: Callable[[], Any]
    on_expire: Callable[[], Any]
    immediate: bool = False
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    state: JobState = JobState.PENDING
    runs: int = 0
    failures: int = 0
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.start_date = to_local_naive(self.start_date)
        self.end_date = to_local_naive(self.end_date)
        self.next_run = to_local_naive(self.next_run)

        if self.frequency_hours <= 0:
            raise ValueError(f"Job '{self.id}': frequency_hours must be positive")
        if self.end_date <= self.start_date:
            logger.warning(f"Job '{self.id}' has an empty window ({self.start_date} - {self.end_date})")

        if self.immediate:
            self.next_run = None
        elif self.next_run is None or self.next_run < self.start_date:
            self.next_run = self.start_date

    @property
    def frequency(self) -> timedelta:
        return timedelta(hours=self.frequency_hours)

    def compute_next_run(self) -> datetime:
        """Next eligible run: the last run (or window start) plus one period."""
        return (self.last_run or self.start_date) + self.frequency

    def is_expired(self, now: datetime) -> bool:
        return now >= self.end_date

    def is_due(self, now: datetime) -> bool:
        """Whether the job should fire at ``now``, ignoring expiry."""
        if self.state == JobState.EXPIRED:
            return False
        if self.immediate and self.runs == 0:
            return True
        if now < self.start_date:
            return False
        return self.next_run is not None and now >= self.next_run

    def mark_run(self, now: datetime) -> datetime:
        """Record a run starting at ``now`` and advance ``next_run``."""
        self.last_run = now
        self.runs += 1
        self.next_run = self.compute_next_run()
        if self.state == JobState.PENDING:
            self.state = JobState.ACTIVE
        return self.next_run

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'state': self.state.value,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'frequency_hours': self.frequency_hours,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'runs': self.runs,
            'failures': self.failures,
        }


class HistoryStore:
    """
    Persists job run history to a JSON file.

    Each run record contains:
    - job_id: Id of the job
    - run_id: Unique run identifier
    - start_time: When the run started (ISO format)
    - end_time: When the run ended (ISO format)
    - elapsed_seconds: Duration in seconds
    - status: 'success', 'failed', or 'running'
    - error: Error message (if failed)
    """

    def __init__(self, history_file: Path, max_entries: int = 1000):
        """
        Initialize history store.

        Args:
            history_file: Path to history JSON file
            max_entries: Maximum number of history entries to keep
        """
        self.history_file = Path(history_file)
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        """Ensure the history file and its parent directory exist."""
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.history_file.exists():
            self._write_history([])

    def _read_history(self) -> List[Dict[str, Any]]:
        try:
            with open(self.history_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, FileNotFoundError):
            return []

    def _write_history(self, history: List[Dict[str, Any]]):
        with open(self.history_file, 'w') as f:
            json.dump(history, f, indent=2, default=str)

    def add_run(self, record: Dict[str, Any]):
        """Append a run record, keeping only the most recent entries."""
        with self._lock:
            history = self._read_history()
            history.append(record)
            if len(history) > self.max_entries:
                history = history[-self.max_entries:]
            self._write_history(history)

    def update_run(self, run_id: str, updates: Dict[str, Any]):
        """Update an existing run record."""
        with self._lock:
            history = self._read_history()
            for record in history:
                if record.get('run_id') == run_id:
                    record.update(updates)
                    break
            self._write_history(history)

    def get_history(
        self,
        job_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Get run history with optional filters.

        Args:
            job_id: Filter by job id
            status: Filter by status ('success', 'failed', 'running')
            limit: Maximum number of entries to return

        Returns:
            List of run records (most recent first)
        """
        with self._lock:
            history = self._read_history()

        if job_id:
            history = [r for r in history if r.get('job_id') == job_id]
        if status:
            history = [r for r in history if r.get('status') == status]

        history.sort(key=lambda r: r.get('start_time', ''), reverse=True)

        if limit:
            history = history[:limit]
        return history

    def clear_history(self, job_id: Optional[str] = None):
        """Clear history, optionally for a single job."""
        with self._lock:
            if job_id:
                history = [r for r in self._read_history() if r.get('job_id') != job_id]
                self._write_history(history)
            else:
                self._write_history([])
