"""Normalizer turning raw VEVENT property bags into canonical events."""
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple

from bs4 import BeautifulSoup
from dateutil import tz
from dateutil.parser import isoparse

from processor.ics_parser import PropertyKind, RawPropertyBag, classify_property
from processor.models import NormalizedEvent

logger = logging.getLogger(__name__)

DEFAULT_TITLE = 'Untitled Event'
EVENT_ID_PREFIX = 'event-'

UTC_PATTERN = re.compile(r'^\d{8}T\d{6}Z$')
LOCAL_PATTERN = re.compile(r'^\d{8}T\d{6}$')
DATE_PATTERN = re.compile(r'^\d{8}$')
ESCAPE_PATTERN = re.compile(r'\\([\\;,nN])')


def decode_ical_text(text: str) -> str:
    """Unescape iCalendar TEXT values (\\n, \\, \\; and \\\\)."""
    return ESCAPE_PATTERN.sub(
        lambda match: '\n' if match.group(1) in 'nN' else match.group(1),
        text
    )


def html_to_text(html: str) -> str:
    """Extract visible text from an HTML description."""
    soup = BeautifulSoup(html, 'html.parser')
    return soup.get_text(separator='\n', strip=True)


def _as_utc(value: datetime, zone_name: Optional[str] = None) -> datetime:
    """Attach a zone to a naive timestamp (TZID, else host local) and convert to UTC."""
    if value.tzinfo is None:
        zone = tz.gettz(zone_name) if zone_name else None
        if zone is not None:
            value = value.replace(tzinfo=zone)
        else:
            # naive astimezone() reads the value as host local time
            value = value.astimezone()
    return value.astimezone(timezone.utc)


def decode_ical_date(
    value: str,
    params: Optional[Dict[str, str]] = None
) -> Optional[Tuple[datetime, bool]]:
    """
    Decode a DTSTART/DTEND value.

    Tries UTC (20250110T090000Z), local (20250110T090000), all-day
    (20250110) and finally generic ISO 8601.

    Args:
        value: Raw property value
        params: Property parameters, TZID is honored for local timestamps

    Returns:
        Tuple of (UTC datetime, is_all_day) or None if undecodable
    """
    params = params or {}
    value = value.strip()

    try:
        if UTC_PATTERN.match(value):
            parsed = datetime.strptime(value, '%Y%m%dT%H%M%SZ')
            return parsed.replace(tzinfo=timezone.utc), False

        if LOCAL_PATTERN.match(value):
            parsed = datetime.strptime(value, '%Y%m%dT%H%M%S')
            return _as_utc(parsed, params.get('TZID')), False

        if DATE_PATTERN.match(value):
            parsed = datetime.strptime(value, '%Y%m%d')
            return _as_utc(parsed), True

        parsed = isoparse(value)
        return _as_utc(parsed, params.get('TZID')), False

    except (ValueError, OverflowError) as e:
        logger.debug(f"Failed to decode iCal date '{value}': {e}")
        return None


class EventNormalizer:
    """Converts raw property bags into NormalizedEvent records."""

    def normalize_events(
        self,
        bags: Iterable[RawPropertyBag],
        calendar_id: str
    ) -> Dict[str, NormalizedEvent]:
        """
        Normalize every bag, dropping malformed events.

        Args:
            bags: Property bags in feed order
            calendar_id: Owning calendar

        Returns:
            Mapping of event_id to event; a repeated UID keeps the last block
        """
        events = {}
        total = 0

        for bag in bags:
            total += 1
            event = self.normalize(bag, calendar_id)
            if event:
                events[event.event_id] = event

        logger.info(
            f"Normalized {len(events)} events out of {total} VEVENT blocks"
        )
        return events

    def normalize(
        self,
        bag: RawPropertyBag,
        calendar_id: str
    ) -> Optional[NormalizedEvent]:
        """
        Normalize a single property bag.

        Returns:
            NormalizedEvent, or None when the UID, start or end is missing
            or a date cannot be decoded
        """
        uid = None
        title = None
        description = None
        alt_description = None
        location = None
        start = None
        end = None
        start_is_date = False

        for name, value in bag.items():
            kind, params = classify_property(name)

            if kind is PropertyKind.UID:
                uid = value.strip()
            elif kind is PropertyKind.SUMMARY:
                title = decode_ical_text(value)
            elif kind is PropertyKind.DESCRIPTION:
                description = decode_ical_text(value)
            elif kind is PropertyKind.ALT_DESCRIPTION:
                if params.get('FMTTYPE', '').lower() == 'text/html':
                    alt_description = decode_ical_text(value)
            elif kind is PropertyKind.LOCATION:
                location = decode_ical_text(value)
            elif kind is PropertyKind.DTSTART:
                start = (value, params)
                start_is_date = params.get('VALUE', '').upper() == 'DATE'
            elif kind is PropertyKind.DTEND:
                end = (value, params)
            elif kind is PropertyKind.UNRECOGNIZED:
                continue

        if not uid:
            logger.debug("Dropping event without UID")
            return None

        if start is None or end is None:
            logger.debug(f"Dropping event '{uid}': missing DTSTART or DTEND")
            return None

        decoded_start = decode_ical_date(*start)
        decoded_end = decode_ical_date(*end)
        if decoded_start is None or decoded_end is None:
            logger.debug(f"Dropping event '{uid}': undecodable date")
            return None

        start_time, start_all_day = decoded_start
        end_time, _ = decoded_end

        if description is None and alt_description:
            description = html_to_text(alt_description)

        return NormalizedEvent(
            event_id=f"{EVENT_ID_PREFIX}{uid}",
            title=title or DEFAULT_TITLE,
            description=description or '',
            location=location or '',
            start_time=start_time,
            end_time=end_time,
            is_all_day=start_is_date or start_all_day,
            calendar_id=calendar_id
        )
