"""
Reconciliation between persisted searches and the scheduler.

The store is the source of truth for which searches are enabled. The
reconciler keeps a local mirror of what it has scheduled and, on each
pass, registers newly enabled searches and unregisters disabled ones.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from models import Search, SearchResult
from search_scheduler.jobs import DuplicateJobError, Job, JobExecutionError, JobNotFoundError
from search_scheduler.scheduler import Scheduler
from search_scheduler.store import SearchStore

logger = logging.getLogger(__name__)


class ReconcileCommand(str, Enum):
    REFRESH = "refresh"
    ADD = "add"
    REMOVE = "remove"


@dataclass
class ReconciliationState:
    """Searches currently scheduled by one reconciler."""
    searches: List[Search] = field(default_factory=list)

    def ids(self) -> List[str]:
        return [s.id for s in self.searches]

    def add(self, search: Search):
        self.discard(search.id)
        self.searches.append(search)

    def discard(self, search_id: str):
        self.searches = [s for s in self.searches if s.id != search_id]


class SearchReconciler:
    """
    Keeps the scheduler's jobs in sync with the search store.

    Args:
        scheduler: Scheduler to register jobs with
        store: Persisted search store
        handler: Work run for each due search
        state: Mirror of scheduled searches (a fresh one by default)
        clock: Callable returning the current time
    """

    def __init__(
        self,
        scheduler: Scheduler,
        store: SearchStore,
        handler: Callable[[Search], Any],
        state: Optional[ReconciliationState] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.scheduler = scheduler
        self.store = store
        self.handler = handler
        self.state = state if state is not None else ReconciliationState()
        self._clock = clock or datetime.now
        self._jobs: Dict[str, Job] = {}
        # Guards the mirror; expiry callbacks arrive from the tick thread
        self._lock = threading.RLock()

    def load(self) -> int:
        """
        Register every enabled search at startup.

        A search whose persisted next run is still in the future resumes at
        that time; anything else runs on the next tick.

        Returns:
            Number of searches registered
        """
        searches = self.store.get_enabled_searches()
        now = self._clock()
        logger.info(f"Loading {len(searches)} enabled search(es)")

        registered = 0
        with self._lock:
            for search in searches:
                if search.next_run and search.next_run > now:
                    ok = self._register(search, immediate=False)
                else:
                    ok = self._register(search, immediate=True)
                if ok:
                    registered += 1
        return registered

    def dispatch(self, command: ReconcileCommand) -> bool:
        """
        Run one reconciliation pass.

        Failures to read the store are logged and the pass is skipped;
        already scheduled searches keep running.

        Returns:
            True if the pass completed
        """
        command = ReconcileCommand(command)
        logger.debug(f"Reconciliation pass: {command.value}")

        try:
            with self._lock:
                current = list(self.state.searches)
                if command == ReconcileCommand.REFRESH:
                    new_searches = self.store.get_new_searches(current)
                    disabled = self.store.get_new_disabled_searches(current)
                    self._add_searches(new_searches)
                    self._remove_searches(disabled)
                elif command == ReconcileCommand.ADD:
                    self._add_searches(self.store.get_new_searches(current))
                elif command == ReconcileCommand.REMOVE:
                    self._remove_searches(self.store.get_new_disabled_searches(current))
        except Exception as e:
            logger.error(f"Reconciliation pass '{command.value}' failed, skipping: {e}", exc_info=True)
            return False

        logger.debug(f"Finished reconciliation pass: {command.value}")
        return True

    def refresh(self) -> bool:
        return self.dispatch(ReconcileCommand.REFRESH)

    def _add_searches(self, searches: List[Search]):
        for search in searches:
            self._register(search, immediate=True)

    def _remove_searches(self, searches: List[Search]):
        for search in searches:
            try:
                self.scheduler.remove_job(search.id)
            except JobNotFoundError as e:
                logger.error(f"Failed to unschedule search '{search.id}': {e}")

            self.state.discard(search.id)
            self._jobs.pop(search.id, None)
            try:
                self.store.disable_search(search)
            except Exception as e:
                logger.error(f"Failed to update search '{search.id}' after unscheduling: {e}")

    def _register(self, search: Search, immediate: bool) -> bool:
        try:
            job = self.scheduler.add_job(
                search.id,
                search.start_date,
                search.end_date,
                search.frequency,
                partial(self._run_search, search),
                partial(self._expire_search, search),
                immediate=immediate,
                next_run=None if immediate else search.next_run
            )
        except DuplicateJobError as e:
            logger.error(f"Search '{search.id}' is already scheduled: {e}")
            return False
        except ValueError as e:
            logger.error(f"Search '{search.id}' has an invalid schedule: {e}")
            return False

        self._jobs[search.id] = job
        self.state.add(search)
        return True

    def _run_search(self, search: Search):
        """Run the handler for one search and record its result and statistics."""
        with self._lock:
            job = self._jobs.get(search.id)

        logger.debug(f"Running search {search.id}")
        start = time.monotonic()

        try:
            result = self.handler(search)
        except Exception as e:
            raise JobExecutionError(search.id, e) from e

        duration_ms = int((time.monotonic() - start) * 1000)

        # Only the registration that launched this run may record its outcome
        try:
            current = self.scheduler.get_job(search.id)
        except JobNotFoundError:
            logger.info(f"Search {search.id} was unscheduled during its run, discarding result")
            return
        if current is not job:
            logger.info(f"Search {search.id} was rescheduled during its run, discarding result")
            return

        if isinstance(result, SearchResult):
            self.store.add_search_result(search, result)
        self.store.set_run_stats(search, duration_ms, current.next_run)
        logger.debug(f"Finished search {search.id} in {duration_ms}ms (next run: {current.next_run})")

    def _expire_search(self, search: Search):
        logger.debug(f"Disabling expired search {search.id}")
        with self._lock:
            self.state.discard(search.id)
            self._jobs.pop(search.id, None)
        self.store.disable_search(search)
