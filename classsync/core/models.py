"""
Schedule data model shared by the store, the merger and the sync engine.
"""

from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from classsync.core.errors import ValidationError

WEEKDAYS = range(1, 8)      # 1 = Monday ... 7 = Sunday
PERIODS = range(1, 9)       # 8 teaching periods per day
LUNCH_BREAK_AFTER = 4       # periods 4 and 5 never merge

SlotKey = Tuple[int, int, int, str]


@dataclass
class ScheduleSlot:
    """One local schedule record: a course on one weekday over a period range."""

    user_id: str
    week_start: date
    weekday: int
    period_start: int
    period_end: int
    course_name: str = ''
    course_ref: Optional[str] = None
    base_name: Optional[str] = None
    room_name: Optional[str] = None
    series_id: Optional[str] = None
    url: Optional[str] = None
    external_ref: Optional[str] = None
    id: Optional[int] = None

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
    def location_label(self) -> str:
        return format_location(self.base_name, self.room_name)

    def copy(self, **changes) -> 'ScheduleSlot':
        return replace(self, **changes)


@dataclass
class AccessCredential:
    """Google OAuth credential as handed over by the session layer."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None   # epoch seconds

    def to_dict(self) -> Dict:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'expires_at': self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AccessCredential':
        expires_at = data.get('expires_at')
        return cls(
            access_token=data.get('access_token') or '',
            refresh_token=data.get('refresh_token'),
            expires_at=int(expires_at) if expires_at not in (None, '') else None,
        )


@dataclass
class ScheduleCell:
    """A single (weekday, period) entry of the weekly grid."""

    course_name: str = ''
    course_ref: Optional[str] = None
    location: Optional[str] = None
    base_name: Optional[str] = None
    room_name: Optional[str] = None
    url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.course_name or self.course_ref)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'ScheduleCell':
        if not data:
            return cls()
        return cls(
            course_name=data.get('courseName') or '',
            course_ref=data.get('courseId') or None,
            location=data.get('location') or None,
            base_name=data.get('base') or None,
            room_name=data.get('room') or None,
            url=data.get('url') or None,
        )

    def to_dict(self) -> Dict:
        data = {'courseName': self.course_name}
        if self.course_ref:
            data['courseId'] = self.course_ref
        location = format_location(self.base_name, self.room_name) or self.location
        if location:
            data['location'] = location
        if self.url:
            data['url'] = self.url
        return data


WeekGrid = Dict[int, Dict[int, Optional[ScheduleCell]]]


def format_location(base_name: Optional[str], room_name: Optional[str]) -> str:
    """Build the "base - room" label, or the single non-empty part."""
    if base_name and room_name:
        return f"{base_name} - {room_name}"
    return base_name or room_name or ''


def split_location(location: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a "base - room" label back into its parts."""
    if not location:
        return None, None
    parts = location.split(' - ')
    if len(parts) == 2:
        return parts[0].strip() or None, parts[1].strip() or None
    return location.strip() or None, None


def validate_slot(slot: ScheduleSlot) -> List[str]:
    """Return the list of problems with a slot; empty when it is valid."""
    errors = []

    if slot.weekday not in WEEKDAYS:
        errors.append(f"Invalid weekday: {slot.weekday} (must be 1-7)")
    if slot.period_start not in PERIODS:
        errors.append(f"Invalid periodStart: {slot.period_start} (must be 1-8)")
    if slot.period_end not in PERIODS:
        errors.append(f"Invalid periodEnd: {slot.period_end} (must be 1-8)")
    if slot.period_start > slot.period_end:
        errors.append(
            f"periodStart ({slot.period_start}) cannot be greater than periodEnd ({slot.period_end})"
        )
    if not slot.course_name and not slot.course_ref:
        errors.append('Course name or ID is required')

    return errors


def week_start_of(day: date) -> date:
    """Monday of the week containing day."""
    return day - timedelta(days=day.weekday())


def parse_week_start(value: str) -> date:
    """Parse an ISO date and normalize it to the Monday of its week."""
    try:
        day = date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid week: {value} (expected YYYY-MM-DD)") from e
    return week_start_of(day)
