"""
Translate between schedule slots and Google Calendar events.

Slot metadata travels in two channels:
- extendedProperties.private, the structured copy
- a versioned JSON block inside the description, which survives edits and
  clients that drop extended properties

Block format (version 1):

    [classsync:v1]
    {"v": 1, "source": "class_sync", "weekStart": "2024-09-02", "weekday": 1, ...}
    [/classsync]

Reading also accepts the legacy unversioned form "ClassSync 資料：" followed
by a JSON object on the next line.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytz

from classsync import config
from classsync.core.models import PERIODS, WEEKDAYS, ScheduleSlot, SlotKey

logger = logging.getLogger('event-mapper')

METADATA_VERSION = 1

# (start, end) as (hour, minute); identical for every weekday
PERIOD_TIMES = {
    1: ((8, 25), (9, 10)),
    2: ((9, 20), (10, 5)),
    3: ((10, 15), (11, 0)),
    4: ((11, 10), (11, 55)),
    5: ((13, 15), (14, 0)),
    6: ((14, 10), (14, 55)),
    7: ((15, 5), (15, 50)),
    8: ((16, 0), (16, 45)),
}

BLOCK_PATTERN = re.compile(
    r'\[classsync:v(?P<version>\d+)\]\s*\n(?P<body>\{.*?\})\s*\n\[/classsync\]',
    re.DOTALL
)
LEGACY_BLOCK_PATTERN = re.compile(r'ClassSync 資料：\s*\n(?P<body>\{.*?\})(?:\n|$)', re.DOTALL)


@dataclass
class RemoteSlot:
    """A tagged Google Calendar event mapped back into slot terms."""

    event_id: str
    weekday: int
    period_start: int
    period_end: int
    course_name: str
    course_ref: Optional[str] = None
    location: str = ''
    series_id: Optional[str] = None
    url: Optional[str] = None
    week_start: Optional[date] = None
    created: str = ''
    metadata_source: str = 'properties'

    @property
    def course_key(self) -> str:
        return self.course_ref or self.course_name

    @property
    def slot_key(self) -> SlotKey:
        return (self.weekday, self.period_start, self.period_end, self.course_key)

    @property
    def period_range(self) -> Tuple[int, int, int]:
        return (self.weekday, self.period_start, self.period_end)

    @property
    def sort_key(self) -> Tuple[bool, str, str]:
        """Deterministic duplicate tie-break: earliest created, then id."""
        return (not self.created, self.created, self.event_id)


def get_timezone(name: Optional[str] = None):
    return pytz.timezone(name or config.TIMEZONE)


def period_window(week_start: date, weekday: int, period_start: int, period_end: int,
                  tz=None) -> Tuple[datetime, datetime]:
    """Localized start/end datetimes of a period range on a weekday of a week."""
    tz = tz or get_timezone()
    day = week_start + timedelta(days=weekday - 1)

    (start_hour, start_minute), _ = PERIOD_TIMES[period_start]
    _, (end_hour, end_minute) = PERIOD_TIMES[period_end]

    start = tz.localize(datetime(day.year, day.month, day.day, start_hour, start_minute))
    end = tz.localize(datetime(day.year, day.month, day.day, end_hour, end_minute))
    return start, end


def build_metadata(slot: ScheduleSlot, source_tag: Optional[str] = None) -> Dict[str, str]:
    """Structured metadata, as strings, for extendedProperties.private."""
    return {
        'source': source_tag or config.EVENT_SOURCE_TAG,
        'weekStart': slot.week_start.isoformat(),
        'weekday': str(slot.weekday),
        'periodStart': str(slot.period_start),
        'periodEnd': str(slot.period_end),
        'courseId': slot.course_ref or '',
        'seriesId': slot.series_id or '',
    }


def encode_metadata_block(slot: ScheduleSlot, source_tag: Optional[str] = None) -> str:
    payload = {
        'v': METADATA_VERSION,
        'source': source_tag or config.EVENT_SOURCE_TAG,
        'weekStart': slot.week_start.isoformat(),
        'weekday': slot.weekday,
        'periodStart': slot.period_start,
        'periodEnd': slot.period_end,
        'courseId': slot.course_ref or '',
        'courseName': slot.course_name,
        'seriesId': slot.series_id or '',
        'location': slot.location_label,
        'url': slot.url or '',
    }
    body = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return f"[classsync:v{METADATA_VERSION}]\n{body}\n[/classsync]"


def decode_metadata_block(description: Optional[str]) -> Optional[Dict]:
    """Extract the metadata block from an event description, if any."""
    if not description:
        return None

    match = BLOCK_PATTERN.search(description)
    if match:
        version = int(match.group('version'))
        if version > METADATA_VERSION:
            logger.warning(f"⚠️  Unknown metadata block version {version}")
            return None
    else:
        match = LEGACY_BLOCK_PATTERN.search(description)
        if not match:
            return None

    try:
        data = json.loads(match.group('body'))
    except ValueError as e:
        logger.warning(f"⚠️  Failed to parse description metadata: {e}")
        return None

    return data if isinstance(data, dict) else None


def build_description(slot: ScheduleSlot, source_tag: Optional[str] = None) -> str:
    if slot.period_start == slot.period_end:
        lines = [f"Period {slot.period_start}"]
    else:
        lines = [f"Periods {slot.period_start}-{slot.period_end}"]

    if slot.url:
        lines.append('')
        lines.append(f"Course link: {slot.url}")

    lines.append('')
    lines.append(encode_metadata_block(slot, source_tag))
    return '\n'.join(lines)


def slot_to_event(slot: ScheduleSlot, tz=None, source_tag: Optional[str] = None) -> Dict:
    """Build the Google Calendar event body for a slot."""
    tz = tz or get_timezone()
    start, end = period_window(slot.week_start, slot.weekday,
                               slot.period_start, slot.period_end, tz)

    return {
        'summary': slot.course_name,
        'start': {'dateTime': start.isoformat(), 'timeZone': tz.zone},
        'end': {'dateTime': end.isoformat(), 'timeZone': tz.zone},
        'location': slot.location_label,
        'description': build_description(slot, source_tag),
        'extendedProperties': {
            'private': build_metadata(slot, source_tag),
        },
    }


def _private_properties(event: Dict) -> Dict:
    return (event.get('extendedProperties') or {}).get('private') or {}


def is_tagged(event: Dict, source_tag: Optional[str] = None) -> bool:
    """True when either metadata channel carries this system's namespace tag."""
    tag = source_tag or config.EVENT_SOURCE_TAG

    if _private_properties(event).get('source') == tag:
        return True

    block = decode_metadata_block(event.get('description'))
    return bool(block) and block.get('source') == tag


def _parse_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_date(value) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _periods_from(metadata: Dict) -> Optional[Tuple[int, int, int]]:
    weekday = _parse_int(metadata.get('weekday'))
    period_start = _parse_int(metadata.get('periodStart'))
    period_end = _parse_int(metadata.get('periodEnd'))
    if period_end is None:
        period_end = period_start

    if weekday not in WEEKDAYS or period_start not in PERIODS or period_end not in PERIODS:
        return None
    if period_start > period_end:
        return None
    return weekday, period_start, period_end


def event_to_remote_slot(event: Dict) -> Optional[RemoteSlot]:
    """
    Reverse-map a tagged event.

    Structured properties win; the description block is the fallback. Returns
    None when neither channel yields a usable period range.
    """
    event_id = event.get('id')
    if not event_id:
        return None

    properties = _private_properties(event)
    block = decode_metadata_block(event.get('description')) or {}

    periods = _periods_from(properties)
    metadata, source = properties, 'properties'
    if periods is None:
        periods = _periods_from(block)
        metadata, source = block, 'description'

    if periods is None:
        logger.warning(f"⚠️  Event {event_id} has no recoverable slot metadata, skipping")
        return None

    weekday, period_start, period_end = periods
    course_name = event.get('summary') or block.get('courseName') or ''

    return RemoteSlot(
        event_id=event_id,
        weekday=weekday,
        period_start=period_start,
        period_end=period_end,
        course_name=course_name,
        course_ref=metadata.get('courseId') or None,
        location=event.get('location') or block.get('location') or '',
        series_id=metadata.get('seriesId') or None,
        url=block.get('url') or None,
        week_start=_parse_date(metadata.get('weekStart')),
        created=event.get('created') or '',
        metadata_source=source,
    )


def parse_event_start(event: Dict) -> Optional[datetime]:
    start = event.get('start') or {}
    value = start.get('dateTime')
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


def map_events(events: List[Dict]) -> List[RemoteSlot]:
    """Reverse-map a listing, dropping unrecoverable events, in canonical order."""
    mapped = [remote for remote in (event_to_remote_slot(e) for e in events) if remote]
    mapped.sort(key=lambda remote: remote.sort_key)
    return mapped
