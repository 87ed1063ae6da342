"""Data models for calendar feed synchronization."""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

EVENT_SOURCE = 'ical_feed'


class SyncStatus(str, Enum):
    """Lifecycle states of a calendar's most recent sync."""
    PENDING = 'pending'
    SYNCING = 'syncing'
    SUCCESS = 'success'
    ERROR = 'error'


class ErrorType(str, Enum):
    """Classification persisted with an error status."""
    NETWORK = 'network'
    PARSE = 'parse'


@dataclass(frozen=True)
class CalendarSource:
    """Calendar registered against a remote feed."""
    calendar_id: str
    name: str
    feed_address: str

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> Optional['CalendarSource']:
        """
        Build a source from a stored calendar document.

        Returns None when the document carries no feed address.
        """
        source = document.get('source') or {}
        feed_address = source.get('calendarAddress') or document.get('feedAddress')
        if not feed_address:
            return None
        return cls(
            calendar_id=document.get('calendarId') or document['id'],
            name=document.get('name', ''),
            feed_address=feed_address
        )


@dataclass
class NormalizedEvent:
    """Canonical event decoded from one VEVENT block."""
    event_id: str
    title: str
    description: str
    location: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    calendar_id: str
    source: str = EVENT_SOURCE

    def to_document(self) -> Dict[str, Any]:
        """Render the event as stored under the calendar's events map."""
        return {
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'startTime': format_timestamp(self.start_time),
            'endTime': format_timestamp(self.end_time),
            'isAllDay': self.is_all_day,
            'calendarId': self.calendar_id,
            'source': self.source
        }


@dataclass(frozen=True)
class DateRange:
    """Window of relevance for one sync call."""
    start_date: datetime
    end_date: datetime


@dataclass
class SyncOutcome:
    """Result of a sync call as reported to callers."""
    success: bool
    event_count: Optional[int] = None
    error: Optional[str] = None
    retryable: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'success': self.success}
        if self.event_count is not None:
            result['eventCount'] = self.event_count
        if self.error is not None:
            result['error'] = self.error
        if self.retryable is not None:
            result['retryable'] = self.retryable
        return result


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as an ISO 8601 UTC string (Z suffix)."""
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
