"""
Search scheduler service.

Wires the scheduling engine to the search store and keeps them in sync:
- Fatal check for required credentials at startup
- Loads enabled searches and starts the tick
- Periodic reconciliation pass (APScheduler interval job)
- SIGHUP queues a refresh pass; SIGINT/SIGTERM shut down cleanly
- PID and info files for status tracking
"""

import atexit
import json
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from config import Config, get_config, require_env
from models import Search
from search_client import SearchAPIClient
from search_scheduler.config import SchedulerConfig
from search_scheduler.jobs import HistoryStore
from search_scheduler.reconcile import ReconcileCommand, SearchReconciler
from search_scheduler.scheduler import Scheduler
from search_scheduler.store import SearchStore

RECONCILE_JOB_ID = "reconcile"

logger = logging.getLogger(__name__)


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_scheduler_running(config: Optional[Config] = None) -> Tuple[bool, Optional[int]]:
    """
    Check if the scheduler is running by reading the PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = (config or get_config()).pid_file

    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
        if _is_process_running(pid):
            return True, pid
        # Stale PID file
        pid_file.unlink()
        return False, None
    except (ValueError, OSError):
        return False, None


def get_scheduler_info(config: Optional[Config] = None) -> Optional[Dict[str, Any]]:
    """
    Get information about the running scheduler.

    Returns:
        Dict with scheduler info or None if not running.
    """
    config = config or get_config()
    running, pid = is_scheduler_running(config)
    if not running:
        return None

    try:
        with open(config.info_file, 'r') as f:
            info = json.load(f)
    except (json.JSONDecodeError, OSError):
        info = {'data_dir': str(config.data_dir)}

    info['running'] = True
    info['pid'] = pid
    return info


class SchedulerService:
    """
    Main service running searches on their schedules.

    Owns the scheduler, the search store and the reconciler; nothing is
    kept in module-level state so several services can coexist in tests.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        data_config: Optional[Config] = None,
        handler: Optional[Callable[[Search], Any]] = None,
        install_signal_handlers: bool = True
    ):
        """
        Initialize the service.

        Args:
            config_path: Path to scheduler configuration file
            data_config: Data directory configuration (global one by default)
            handler: Work run for each due search (defaults to a search API poll)
            install_signal_handlers: Install SIGINT/SIGTERM/SIGHUP handlers on start
        """
        self.data_config = data_config or get_config()
        self.config = SchedulerConfig(config_path)
        self.install_signal_handlers = install_signal_handlers

        errors = self.config.validate()
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            raise ValueError("Invalid scheduler configuration")

        self.store = SearchStore(self.data_config.searches_file, self.data_config.results_dir)
        self.history = HistoryStore(self.data_config.history_file)
        self.client: Optional[SearchAPIClient] = None
        self.handler = handler

        self.scheduler = Scheduler(
            tick_interval_ms=self.config.timing.tick_interval_ms,
            max_workers=self.config.timing.max_workers,
            history=self.history
        )
        self.reconciler: Optional[SearchReconciler] = None

        self._reconcile_timer = BackgroundScheduler(
            job_defaults={'coalesce': True, 'max_instances': 1}
        )
        self._setup_event_listeners()
        self._started = False

    def _setup_event_listeners(self):

        def reconcile_error_listener(event):
            logger.error(f"Reconciliation job '{event.job_id}' raised exception: {event.exception}")

        def reconcile_missed_listener(event):
            logger.warning(f"Reconciliation job '{event.job_id}' missed scheduled run time")

        self._reconcile_timer.add_listener(reconcile_error_listener, EVENT_JOB_ERROR)
        self._reconcile_timer.add_listener(reconcile_missed_listener, EVENT_JOB_MISSED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown and refresh."""

        def shutdown_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self.stop()
            sys.exit(0)

        def refresh_handler(signum, frame):
            logger.info(f"Received signal {signum}, queueing refresh")
            self.trigger(ReconcileCommand.REFRESH)

        signal.signal(signal.SIGINT, shutdown_handler)
        signal.signal(signal.SIGTERM, shutdown_handler)
        if hasattr(signal, 'SIGHUP'):
            signal.signal(signal.SIGHUP, refresh_handler)

    def _build_handler(self) -> Callable[[Search], Any]:
        """
        Resolve the per-search work.

        Raises:
            MissingConfigurationError: If a required variable is not set
        """
        env = require_env(self.config.required_env)
        if self.handler is not None:
            return self.handler

        token = env.get(self.config.search_api.token_env) or self.config.api_token
        self.client = SearchAPIClient(
            base_url=self.config.search_api.base_url,
            token=token or "",
            timeout=self.config.search_api.timeout
        )
        return self.client.run_search

    def start(self):
        """
        Start the service.

        Raises:
            MissingConfigurationError: If required credentials are missing
        """
        if self._started:
            logger.warning("Scheduler service is already running")
            return

        running, pid = is_scheduler_running(self.data_config)
        if running and pid != os.getpid():
            logger.warning(f"Scheduler is already running (PID: {pid})")
            return

        handler = self._build_handler()
        self.reconciler = SearchReconciler(self.scheduler, self.store, handler)

        logger.info("Starting search scheduler...")
        self.reconciler.load()
        self.scheduler.start()

        self._reconcile_timer.add_job(
            self.reconciler.dispatch,
            'interval',
            seconds=self.config.timing.reconcile_interval_seconds,
            args=[ReconcileCommand.REFRESH],
            id=RECONCILE_JOB_ID,
            replace_existing=True
        )
        self._reconcile_timer.start()
        self._started = True

        if self.install_signal_handlers:
            self._setup_signal_handlers()
        self._write_pid_file()

        jobs = self.scheduler.get_jobs()
        if jobs:
            logger.info(f"Scheduled {len(jobs)} search(es):")
            for job in jobs:
                logger.info(f"  - {job['id']}: next run at {job['next_run'] or 'next tick'}")
        else:
            logger.warning("No searches scheduled")

    def trigger(self, command: ReconcileCommand):
        """Queue a reconciliation pass on the reconciliation timer."""
        if not self._started or self.reconciler is None:
            logger.warning(f"Ignoring {ReconcileCommand(command).value}: service not running")
            return
        self._reconcile_timer.add_job(
            self.reconciler.dispatch,
            'date',
            run_date=datetime.now(),
            args=[ReconcileCommand(command)]
        )

    def stop(self, wait: bool = False):
        """
        Stop the service.

        Timers stop before anything else is released so that no tick or
        reconciliation pass runs against a torn-down dependency.

        Args:
            wait: If True, wait for in-flight searches to complete
        """
        if not self._started:
            logger.warning("Scheduler service is not running")
            return

        logger.info("Stopping search scheduler...")
        if self._reconcile_timer.running:
            self._reconcile_timer.shutdown(wait=False)
        self.scheduler.stop(wait=wait)
        if wait and self.client is not None:
            self.client.close()
        self._remove_pid_file()
        self._started = False
        logger.info("Search scheduler stopped")

    def is_running(self) -> bool:
        return self._started and self.scheduler.running

    def _write_pid_file(self):
        """Write the current process PID and scheduler info files."""
        pid_file = self.data_config.pid_file
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        scheduler_info = {
            'pid': os.getpid(),
            'started_at': datetime.now().isoformat(),
            'config_path': str(self.config.config_path),
            'data_dir': str(self.data_config.data_dir),
            'searches_file': str(self.data_config.searches_file),
            'history_file': str(self.data_config.history_file),
            'log_file': self.config.logging.file,
            'tick_interval_ms': self.config.timing.tick_interval_ms,
        }

        try:
            with open(self.data_config.info_file, 'w') as f:
                json.dump(scheduler_info, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write scheduler info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (self.data_config.pid_file, self.data_config.info_file):
            try:
                if Path(path).exists():
                    Path(path).unlink()
            except OSError as e:
                logger.debug(f"Failed to remove {path}: {e}")
