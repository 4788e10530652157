"""
Data models for persisted searches and search API results.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware datetime to naive local time. Naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_local_naive(datetime.fromisoformat(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Search:
    """A recurring, time-windowed search descriptor"""
    id: str
    name: str
    start_date: datetime
    end_date: datetime
    frequency: float  # hours between runs, fractional allowed
    keywords: List[str] = field(default_factory=list)
    negative_keywords: List[str] = field(default_factory=list)
    max_results: int = 100
    enabled: bool = True
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        # All scheduling compares against naive local time
        for name in ('start_date', 'end_date', 'next_run', 'last_run', 'created_at'):
            setattr(self, name, to_local_naive(getattr(self, name)))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict"""
        return {
            'id': self.id,
            'name': self.name,
            'start_date': _format_datetime(self.start_date),
            'end_date': _format_datetime(self.end_date),
            'frequency': self.frequency,
            'keywords': list(self.keywords),
            'negative_keywords': list(self.negative_keywords),
            'max_results': self.max_results,
            'enabled': self.enabled,
            'next_run': _format_datetime(self.next_run),
            'last_run': _format_datetime(self.last_run),
            'last_duration_ms': self.last_duration_ms,
            'created_at': _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Search':
        """Create from a stored record"""
        return cls(
            id=str(data['id']),
            name=data.get('name') or str(data['id']),
            start_date=_parse_datetime(data['start_date']),
            end_date=_parse_datetime(data['end_date']),
            frequency=float(data['frequency']),
            keywords=list(data.get('keywords') or []),
            negative_keywords=list(data.get('negative_keywords') or []),
            max_results=int(data.get('max_results', 100)),
            enabled=bool(data.get('enabled', True)),
            next_run=_parse_datetime(data.get('next_run')),
            last_run=_parse_datetime(data.get('last_run')),
            last_duration_ms=data.get('last_duration_ms'),
            created_at=_parse_datetime(data.get('created_at')),
        )


@dataclass
class SearchResult:
    """Result of one search API poll"""
    search_id: str
    data: List[Dict[str, Any]]
    meta: Dict[str, Any]
    duration_ms: int
    fetched_at: datetime

    @property
    def result_count(self) -> int:
        """Number of items returned"""
        return len(self.data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict"""
        return {
            'search_id': self.search_id,
            'fetched_at': _format_datetime(self.fetched_at),
            'duration_ms': self.duration_ms,
            'result_count': self.result_count,
            'meta': self.meta,
            'data': self.data,
        }
