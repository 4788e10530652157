"""
Persisted search storage.

Searches are kept in a JSON file under the data directory. This store is
the source of truth for which searches are enabled; the reconciliation
driver diffs it against what the scheduler currently runs.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from models import Search, SearchResult

logger = logging.getLogger(__name__)


class SearchStore:
    """
    JSON-file backed store of search descriptors.

    All methods are thread-safe; run statistics are written from worker
    threads while the reconciliation pass reads the same file.
    """

    def __init__(
        self,
        searches_file: Path,
        results_dir: Optional[Path] = None,
        max_results_kept: int = 100
    ):
        """
        Initialize the search store.

        Args:
            searches_file: Path to the searches JSON file
            results_dir: Directory for poll results (next to the searches file by default)
            max_results_kept: Number of results kept per search
        """
        self.searches_file = Path(searches_file)
        self.results_dir = Path(results_dir) if results_dir else self.searches_file.parent / "results"
        self.max_results_kept = max_results_kept
        self._lock = threading.RLock()
        self._ensure_file_exists()

    def _ensure_file_exists(self):
        self.searches_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.searches_file.exists():
            self._write([])

    def _read(self) -> List[Dict[str, Any]]:
        with open(self.searches_file, 'r') as f:
            return json.load(f)

    def _write(self, records: List[Dict[str, Any]]):
        tmp_path = self.searches_file.with_suffix('.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(records, f, indent=2, default=str)
        tmp_path.replace(self.searches_file)

    def _load(self) -> List[Search]:
        return [Search.from_dict(r) for r in self._read()]

    def _save(self, searches: Iterable[Search]):
        self._write([s.to_dict() for s in searches])

    def list_searches(self) -> List[Search]:
        """Get all persisted searches."""
        with self._lock:
            return self._load()

    def get_search(self, search_id: str) -> Optional[Search]:
        with self._lock:
            for search in self._load():
                if search.id == search_id:
                    return search
        return None

    def get_enabled_searches(self) -> List[Search]:
        """Get all enabled searches."""
        with self._lock:
            return [s for s in self._load() if s.enabled]

    def get_new_searches(self, current: Iterable[Search]) -> List[Search]:
        """
        Get enabled searches that are not in ``current``.

        Args:
            current: Searches already scheduled

        Returns:
            Newly enabled searches
        """
        known = {s.id for s in current}
        return [s for s in self.get_enabled_searches() if s.id not in known]

    def get_new_disabled_searches(self, current: Iterable[Search]) -> List[Search]:
        """
        Get searches in ``current`` that are no longer enabled.

        A search that was deleted from the store counts as disabled.

        Args:
            current: Searches already scheduled

        Returns:
            Searches that should be unscheduled
        """
        with self._lock:
            persisted = {s.id: s for s in self._load()}

        disabled = []
        for search in current:
            stored = persisted.get(search.id)
            if stored is None:
                disabled.append(search)
            elif not stored.enabled:
                disabled.append(stored)
        return disabled

    def add_search(self, search: Search) -> Search:
        """
        Persist a new search.

        Raises:
            ValueError: If a search with the same id exists
        """
        with self._lock:
            searches = self._load()
            if any(s.id == search.id for s in searches):
                raise ValueError(f"Search with id '{search.id}' already exists")
            if search.created_at is None:
                search.created_at = datetime.now()
            searches.append(search)
            self._save(searches)

        logger.info(f"Added search: {search.id}")
        return search

    def update_search(self, search_id: str, **fields) -> Search:
        """
        Update fields of a persisted search.

        Raises:
            KeyError: If the search does not exist
        """
        with self._lock:
            searches = self._load()
            for search in searches:
                if search.id == search_id:
                    for key, value in fields.items():
                        if hasattr(search, key):
                            setattr(search, key, value)
                    self._save(searches)
                    return search

        raise KeyError(f"Search '{search_id}' not found")

    def remove_search(self, search_id: str) -> bool:
        """
        Delete a search.

        Returns:
            True if removed, False if not found
        """
        with self._lock:
            searches = self._load()
            remaining = [s for s in searches if s.id != search_id]
            if len(remaining) == len(searches):
                return False
            self._save(remaining)

        logger.info(f"Removed search: {search_id}")
        return True

    def enable_search(self, search_id: str) -> Search:
        return self.update_search(search_id, enabled=True)

    def disable_search(self, search: Search):
        """Mark a search disabled and clear its schedule."""
        try:
            self.update_search(search.id, enabled=False, next_run=None)
        except KeyError:
            logger.warning(f"Cannot disable search '{search.id}': not in store")
            return
        logger.info(f"Disabled search: {search.id}")

    def set_run_stats(self, search: Search, duration_ms: int, next_run: Optional[datetime]):
        """Record the outcome of a successful run."""
        try:
            self.update_search(
                search.id,
                last_run=datetime.now(),
                last_duration_ms=int(duration_ms),
                next_run=next_run
            )
        except KeyError:
            logger.warning(f"Cannot record run stats for search '{search.id}': not in store")

    def add_search_result(self, search: Search, result: SearchResult):
        """
        Append a poll result to the search's results file.

        Only the newest ``max_results_kept`` results are retained.
        """
        results_file = self._results_file(search.id)
        with self._lock:
            results = self._read_results(results_file)
            results.append(result.to_dict())
            if len(results) > self.max_results_kept:
                results = results[-self.max_results_kept:]

            self.results_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = results_file.with_suffix('.tmp')
            with open(tmp_path, 'w') as f:
                json.dump(results, f, indent=2, default=str)
            tmp_path.replace(results_file)

        logger.debug(f"Stored {result.result_count} result(s) for search {search.id}")

    def get_search_results(self, search_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Get stored poll results for a search, newest first.

        Args:
            search_id: Search id
            limit: Maximum number of results to return
        """
        with self._lock:
            results = self._read_results(self._results_file(search_id))
        results.reverse()
        if limit:
            results = results[:limit]
        return results

    def _results_file(self, search_id: str) -> Path:
        return self.results_dir / f"{search_id}.json"

    def _read_results(self, results_file: Path) -> List[Dict[str, Any]]:
        if not results_file.exists():
            return []
        with open(results_file, 'r') as f:
            return json.load(f)

    def __repr__(self):
        return f"SearchStore(path={self.searches_file})"
