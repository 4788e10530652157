"""
Search API client.

Polls the external search service for a single search descriptor. This
is the default work run by the scheduler for each due search; what the
service does with keywords and results is outside the scheduler.
"""

import logging
import time
from datetime import datetime
from typing import Dict, Optional

import requests

from models import Search, SearchResult

DEFAULT_TIMEOUT = 30

logger = logging.getLogger(__name__)


class SearchAPIError(Exception):
    """Raised when the search API fails or returns unusable data."""
    pass


class SearchAPIClient:
    """Client for the external search API"""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the search API client

        Args:
            base_url: Root URL of the search API
            token: Bearer token sent with every request
            timeout: Request timeout in seconds
            session: Optional pre-configured requests session
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": "search-scheduler/0.1",
        }

    def _build_query(self, search: Search) -> Dict:
        """Build the request body for a search."""
        body = {
            'keywords': search.keywords,
            'negative_keywords': search.negative_keywords,
            'max_results': search.max_results,
            'start_time': search.start_date.isoformat(),
            'end_time': search.end_date.isoformat(),
        }
        if search.last_run:
            body['since'] = search.last_run.isoformat()
        return body

    def run_search(self, search: Search) -> SearchResult:
        """
        Run one poll of the search API.

        Args:
            search: Search descriptor to poll for

        Returns:
            SearchResult with the returned items

        Raises:
            SearchAPIError: On transport errors or unusable responses
        """
        url = f"{self.base_url}/search"
        start = time.monotonic()

        try:
            response = self.session.post(
                url,
                json=self._build_query(search),
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            raise SearchAPIError(f"Search request failed for {search.id}: {e}") from e
        except ValueError as e:
            raise SearchAPIError(f"Search API returned invalid JSON for {search.id}") from e

        duration_ms = int((time.monotonic() - start) * 1000)

        if not isinstance(payload, dict) or not isinstance(payload.get('data'), list):
            raise SearchAPIError(f"Search API returned unusable data for {search.id}")

        result = SearchResult(
            search_id=search.id,
            data=payload['data'],
            meta=payload.get('meta') or {},
            duration_ms=duration_ms,
            fetched_at=datetime.now()
        )
        logger.info(f"Search {search.id} returned {result.result_count} result(s) in {duration_ms}ms")
        return result

    def close(self):
        """Close the underlying HTTP session."""
        self.session.close()
