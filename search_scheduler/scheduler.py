"""
Tick-driven scheduling engine.

Provides a Scheduler that owns a set of recurring, time-windowed jobs:
- A periodic tick (APScheduler background timer) evaluates every job
- Expired jobs fire their expiry callback once and are dropped
- Due jobs are submitted to a worker pool without blocking the tick
- A per-job in-flight guard keeps runs of the same job strictly ordered

The scheduler knows nothing about what a job does; work and expiry
callbacks are supplied by the caller.
"""

import asyncio
import inspect
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_MISSED,
    EVENT_JOB_MAX_INSTANCES
)

from models import to_local_naive
from search_scheduler.jobs import (
    DuplicateJobError,
    HistoryStore,
    Job,
    JobNotFoundError,
    JobState
)

DEFAULT_TICK_INTERVAL_MS = 10000
TICK_JOB_ID = "scheduler-tick"

logger = logging.getLogger(__name__)


def _call(callback: Callable[[], Any]) -> Any:
    """Invoke a callback, running it to completion if it is a coroutine function."""
    result = callback()
    if inspect.iscoroutine(result):
        return asyncio.run(result)
    return result


class Scheduler:
    """
    Recurring job scheduler driven by a fixed-interval tick.

    Jobs are evaluated on every tick: expiry first, then due-ness. Work
    runs on a thread pool and is never awaited by the tick, so a slow
    external call cannot delay other jobs. ``stop()`` halts the tick but
    lets in-flight work run to completion.
    """

    def __init__(
        self,
        tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
        max_workers: int = 8,
        history: Optional[HistoryStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        executor: Optional[ThreadPoolExecutor] = None
    ):
        """
        Initialize the scheduler.

        Args:
            tick_interval_ms: Polling granularity of the tick loop
            max_workers: Size of the worker pool running job work
            history: Optional run history store
            clock: Callable returning the current time (defaults to datetime.now)
            executor: Optional pre-built worker pool
        """
        if tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")

        self.tick_interval_ms = tick_interval_ms
        self.history = history
        self._clock = clock or datetime.now
        self._jobs: Dict[str, Job] = {}
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.RLock()
        self._stopped = False

        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="search-job"
        )

        interval_seconds = tick_interval_ms / 1000
        self._timer = BackgroundScheduler(
            job_defaults={
                'coalesce': True,  # Collapse missed ticks into one
                'max_instances': 1,  # Never overlap two ticks
                'misfire_grace_time': max(1, int(interval_seconds))
            }
        )
        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Log problems with the tick timer itself."""

        def tick_error_listener(event):
            logger.error(f"Scheduler tick raised exception: {event.exception}")

        def tick_missed_listener(event):
            logger.warning(f"Scheduler tick missed its run time ({event.scheduled_run_time})")

        def tick_overlap_listener(event):
            logger.warning("Previous scheduler tick still running, skipping")

        self._timer.add_listener(tick_error_listener, EVENT_JOB_ERROR)
        self._timer.add_listener(tick_missed_listener, EVENT_JOB_MISSED)
        self._timer.add_listener(tick_overlap_listener, EVENT_JOB_MAX_INSTANCES)

    @property
    def running(self) -> bool:
        return not self._stopped and self._timer.running

    def start(self):
        """Start the periodic tick."""
        if self._stopped:
            raise RuntimeError("Scheduler has been stopped and cannot be restarted")
        if self._timer.running:
            logger.warning("Scheduler is already running")
            return

        self._timer.add_job(
            self.tick,
            'interval',
            seconds=self.tick_interval_ms / 1000,
            id=TICK_JOB_ID,
            replace_existing=True
        )
        self._timer.start()
        logger.info(f"Scheduler started (tick every {self.tick_interval_ms}ms)")

    def stop(self, wait: bool = False):
        """
        Stop the tick loop. Safe to call more than once.

        Args:
            wait: If True, block until in-flight work has finished
        """
        with self._lock:
            if self._stopped:
                logger.debug("Scheduler already stopped")
                return
            self._stopped = True

        if self._timer.running:
            self._timer.shutdown(wait=False)
        self._executor.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def add_job(
        self,
        job_id: str,
        start_date: datetime,
        end_date: datetime,
        frequency_hours: float,
        work: Callable[[], Any],
        on_expire: Callable[[], Any],
        immediate: bool = False,
        next_run: Optional[datetime] = None
    ) -> Job:
        """
        Register a job.

        Args:
            job_id: Unique job id
            start_date: Start of the active window
            end_date: End of the active window
            frequency_hours: Hours between runs
            work: Callback invoked on each due run
            on_expire: Callback invoked once when the window has ended
            immediate: Run on the next tick regardless of the window start
            next_run: Resume time for a previously scheduled job

        Returns:
            The registered Job

        Raises:
            DuplicateJobError: If a job with this id is already registered
        """
        with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobError(job_id)

            job = Job(
                id=job_id,
                start_date=start_date,
                end_date=end_date,
                frequency_hours=frequency_hours,
                work=work,
                on_expire=on_expire,
                immediate=immediate,
                next_run=next_run
            )
            self._jobs[job_id] = job

        logger.info(
            f"Job '{job_id}' added (every {frequency_hours}h, "
            f"next run: {'next tick' if immediate else job.next_run})"
        )
        return job

    def remove_job(self, job_id: str):
        """
        Unregister a job. In-flight work is not cancelled.

        Raises:
            JobNotFoundError: If no job with this id is registered
        """
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is None:
                raise JobNotFoundError(job_id)
            running = self._is_in_flight(job_id)

        if running:
            logger.info(f"Job '{job_id}' removed while running; its result will be discarded")
        else:
            logger.info(f"Job '{job_id}' removed")

    def has_job(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def get_job(self, job_id: str) -> Job:
        """
        Get a registered job.

        Raises:
            JobNotFoundError: If no job with this id is registered
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    def get_next_run(self, job_id: str) -> Optional[datetime]:
        """
        Get the next run time of a job, for reporting.

        Returns None for an immediate job that has not run yet.

        Raises:
            JobNotFoundError: If no job with this id is registered
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.next_run

    def get_jobs(self) -> List[Dict[str, Any]]:
        """List registered jobs as dictionaries."""
        with self._lock:
            jobs = []
            for job in self._jobs.values():
                info = job.to_dict()
                info['in_flight'] = self._is_in_flight(job.id)
                jobs.append(info)
            return jobs

    def in_flight(self, job_id: str) -> bool:
        with self._lock:
            return self._is_in_flight(job_id)

    def _is_in_flight(self, job_id: str) -> bool:
        future = self._in_flight.get(job_id)
        return future is not None and not future.done()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all in-flight work to finish.

        Returns:
            True if nothing is left running
        """
        with self._lock:
            futures = list(self._in_flight.values())
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """
        Run one evaluation pass over all jobs.

        A job that cannot be evaluated is logged and skipped; the rest of
        the pass continues.

        Args:
            now: Evaluation time (defaults to the scheduler clock)

        Returns:
            Futures of the runs launched on this tick
        """
        if self._stopped:
            return []
        now = to_local_naive(now or self._clock())

        expired = []
        with self._lock:
            for job in self._jobs.values():
                if job.state == JobState.EXPIRED:
                    continue
                try:
                    if job.is_expired(now):
                        job.state = JobState.EXPIRED
                        expired.append(job)
                    elif job.state == JobState.PENDING and now >= job.start_date:
                        job.state = JobState.ACTIVE
                except Exception as e:
                    logger.error(f"Failed to evaluate expiry of job '{job.id}': {e}", exc_info=True)

        for job in expired:
            self._expire(job)

        launched = []
        with self._lock:
            if self._stopped:
                return launched

            for job in list(self._jobs.values()):
                try:
                    if not job.is_due(now):
                        continue
                except Exception as e:
                    logger.error(f"Failed to evaluate job '{job.id}': {e}", exc_info=True)
                    continue
                if self._is_in_flight(job.id):
                    logger.warning(f"Job '{job.id}' is still running, skipping this tick")
                    continue

                job.mark_run(now)
                future = self._executor.submit(self._run_job, job, now)
                self._in_flight[job.id] = future
                future.add_done_callback(partial(self._release, job.id))
                launched.append(future)

        if launched:
            logger.debug(f"Tick at {now.isoformat()} launched {len(launched)} job(s)")
        return launched

    def _release(self, job_id: str, future: Future):
        with self._lock:
            if self._in_flight.get(job_id) is future:
                del self._in_flight[job_id]

    def _expire(self, job: Job):
        """Fire the expiry callback, then drop the job."""
        logger.info(f"Job '{job.id}' expired (window ended {job.end_date})")
        try:
            _call(job.on_expire)
        except Exception as e:
            logger.error(f"Expiry callback for job '{job.id}' failed: {e}", exc_info=True)
        finally:
            with self._lock:
                if self._jobs.get(job.id) is job:
                    del self._jobs[job.id]

    def _run_job(self, job: Job, started_at: datetime) -> bool:
        """
        Execute a job's work on a worker thread.

        Returns:
            True on success, False if the work raised
        """
        run_id = uuid.uuid4().hex[:8]
        log_prefix = f"[{job.id}:{run_id}]"
        logger.info(f"{log_prefix} Starting job run")

        if self.history:
            self.history.add_run({
                'job_id': job.id,
                'run_id': run_id,
                'start_time': started_at.isoformat(),
                'end_time': None,
                'elapsed_seconds': None,
                'status': 'running',
                'error': None,
            })

        wall_start = datetime.now()
        try:
            _call(job.work)
        except Exception as e:
            with self._lock:
                job.failures += 1
            elapsed = (datetime.now() - wall_start).total_seconds()
            logger.error(f"{log_prefix} Failed after {elapsed:.2f}s: {e}", exc_info=True)
            if self.history:
                self.history.update_run(run_id, {
                    'end_time': datetime.now().isoformat(),
                    'elapsed_seconds': round(elapsed, 2),
                    'status': 'failed',
                    'error': str(e),
                })
            return False

        elapsed = (datetime.now() - wall_start).total_seconds()
        logger.info(f"{log_prefix} Completed successfully in {elapsed:.2f}s")
        if self.history:
            self.history.update_run(run_id, {
                'end_time': datetime.now().isoformat(),
                'elapsed_seconds': round(elapsed, 2),
                'status': 'success',
            })
        return True

    def __repr__(self):
        return f"Scheduler(jobs={len(self._jobs)}, tick={self.tick_interval_ms}ms)"
