"""Rolling relevance window applied to normalized events."""
import logging
from datetime import datetime, time, timezone
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta

from processor.models import DateRange, NormalizedEvent, utc_now

logger = logging.getLogger(__name__)

MONTHS_BACK = 6
YEARS_FORWARD = 1


def compute_sync_window(now: Optional[datetime] = None) -> DateRange:
    """
    Compute the sync window: start of day six months back to end of day one year ahead.

    Args:
        now: Reference time (default: current UTC time)

    Returns:
        DateRange in UTC
    """
    now = (now or utc_now()).astimezone(timezone.utc)
    start_day = (now - relativedelta(months=MONTHS_BACK)).date()
    end_day = (now + relativedelta(years=YEARS_FORWARD)).date()
    return DateRange(
        start_date=datetime.combine(start_day, time.min, tzinfo=timezone.utc),
        end_date=datetime.combine(end_day, time.max, tzinfo=timezone.utc)
    )


def is_in_range(event: NormalizedEvent, date_range: DateRange) -> bool:
    """True if the event interval overlaps the range (a zero-length event is a point)."""
    return (
        event.end_time >= date_range.start_date and
        event.start_time <= date_range.end_date
    )


def filter_events(
    events: Dict[str, NormalizedEvent],
    date_range: DateRange
) -> Dict[str, NormalizedEvent]:
    """Keep only the events overlapping the range."""
    kept = {
        event_id: event for event_id, event in events.items()
        if is_in_range(event, date_range)
    }
    logger.info(
        f"Kept {len(kept)} of {len(events)} events within "
        f"{date_range.start_date.date()} to {date_range.end_date.date()}"
    )
    return kept
