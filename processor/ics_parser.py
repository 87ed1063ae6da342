"""Line-oriented scanner extracting VEVENT property bags from ICS text."""
import logging
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from sync.errors import ParseError

logger = logging.getLogger(__name__)

RawPropertyBag = Dict[str, str]

BEGIN_CALENDAR = 'BEGIN:VCALENDAR'
END_CALENDAR = 'END:VCALENDAR'
BEGIN_EVENT = 'BEGIN:VEVENT'
END_EVENT = 'END:VEVENT'
SEPARATOR = ':'


class ScanState(Enum):
    OUTSIDE_EVENT = 'outside_event'
    INSIDE_EVENT = 'inside_event'


class PropertyKind(Enum):
    """Event properties the normalizer understands."""
    UID = 'UID'
    SUMMARY = 'SUMMARY'
    DESCRIPTION = 'DESCRIPTION'
    LOCATION = 'LOCATION'
    DTSTART = 'DTSTART'
    DTEND = 'DTEND'
    ALT_DESCRIPTION = 'X-ALT-DESC'
    UNRECOGNIZED = None


_KINDS_BY_NAME = {
    kind.value: kind for kind in PropertyKind if kind is not PropertyKind.UNRECOGNIZED
}


def classify_property(name: str) -> Tuple[PropertyKind, Dict[str, str]]:
    """
    Split a property name such as 'DTSTART;VALUE=DATE' into its kind and parameters.

    Args:
        name: Property name as it appears before the separator

    Returns:
        Tuple of (PropertyKind, parameter dict with upper-cased keys)
    """
    base, *raw_params = name.split(';')
    params = {}
    for raw_param in raw_params:
        key, _, value = raw_param.partition('=')
        params[key.strip().upper()] = value.strip().strip('"')
    kind = _KINDS_BY_NAME.get(base.strip().upper(), PropertyKind.UNRECOGNIZED)
    return kind, params


def unfold_lines(raw_text: str) -> Iterator[str]:
    """
    Yield logical lines, joining RFC 5545 continuation lines.

    A physical line starting with a space or tab continues the previous one.
    """
    pending: Optional[str] = None
    for physical in raw_text.splitlines():
        if physical[:1] in (' ', '\t') and pending is not None:
            pending += physical[1:]
            continue
        if pending is not None:
            yield pending.strip()
        pending = physical
    if pending is not None:
        yield pending.strip()


def has_uid(bag: RawPropertyBag) -> bool:
    return any(
        classify_property(name)[0] is PropertyKind.UID and value.strip()
        for name, value in bag.items()
    )


def scan_line(
    state: ScanState,
    bag: Optional[RawPropertyBag],
    line: str
) -> Tuple[ScanState, Optional[RawPropertyBag], Optional[RawPropertyBag]]:
    """
    Advance the scanner by one logical line.

    Args:
        state: Current scanner state
        bag: Property bag being accumulated, None outside an event
        line: Logical line

    Returns:
        Tuple of (next state, next bag, completed bag or None)
    """
    marker = line.upper()
    if marker == BEGIN_EVENT:
        return ScanState.INSIDE_EVENT, {}, None

    if state is ScanState.OUTSIDE_EVENT:
        return state, None, None

    if marker == END_EVENT:
        emitted = bag if has_uid(bag) else None
        if emitted is None:
            logger.debug("Discarding VEVENT block without UID")
        return ScanState.OUTSIDE_EVENT, None, emitted

    if SEPARATOR in line:
        name, value = line.split(SEPARATOR, 1)
        bag = dict(bag)
        bag[name] = value

    return state, bag, None


def parse_feed(raw_text: str) -> List[RawPropertyBag]:
    """
    Extract the property bag of every identifiable VEVENT block.

    Args:
        raw_text: ICS feed text

    Returns:
        Property bags in feed order

    Raises:
        ParseError: If the text cannot be scanned as a calendar, or was
            cut off before its closing line
    """
    if not raw_text or not raw_text.strip():
        raise ParseError("Feed body is empty")

    lines = list(unfold_lines(raw_text))
    markers = {line.upper() for line in lines}
    if BEGIN_CALENDAR not in markers and BEGIN_EVENT not in markers:
        raise ParseError("Feed body contains no VCALENDAR or VEVENT blocks")

    state = ScanState.OUTSIDE_EVENT
    bag: Optional[RawPropertyBag] = None
    bags = []
    completed_blocks = 0

    for line in lines:
        if state is ScanState.INSIDE_EVENT and line.upper() == END_EVENT:
            completed_blocks += 1
        state, bag, emitted = scan_line(state, bag, line)
        if emitted is not None:
            bags.append(emitted)

    # Truncated bodies are rejected whole
    if state is ScanState.INSIDE_EVENT:
        raise ParseError("Feed ended inside an unterminated VEVENT block")
    if BEGIN_CALENDAR in markers and END_CALENDAR not in markers:
        raise ParseError("Feed ended before END:VCALENDAR")
    if completed_blocks == 0 and END_CALENDAR not in markers:
        raise ParseError("Feed contains no complete VEVENT blocks")

    logger.info(f"Scanned {len(bags)} VEVENT blocks")
    return bags
