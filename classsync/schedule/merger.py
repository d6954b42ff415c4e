"""
Turn a per-period weekly grid into canonical schedule slots.

Contiguous periods of the same course on the same weekday become one slot,
except across the lunch break between period 4 and period 5, which always
splits the run into a morning and an afternoon slot.
"""

import logging
from collections import OrderedDict
from datetime import date
from typing import Dict, List, Optional

from classsync.core.errors import ValidationError
from classsync.core.models import (LUNCH_BREAK_AFTER, PERIODS, WEEKDAYS, ScheduleCell,
                                   ScheduleSlot, WeekGrid, split_location)

logger = logging.getLogger('slot-merger')


def parse_grid(data: Dict) -> WeekGrid:
    """Parse a JSON-style grid ({"1": {"1": {...}}}) into ScheduleCells."""
    grid: WeekGrid = {}
    errors = []

    for day_key, periods in (data or {}).items():
        try:
            weekday = int(day_key)
        except (TypeError, ValueError):
            errors.append(f"Invalid weekday: {day_key} (must be 1-7 for Mon-Sun)")
            continue
        if weekday not in WEEKDAYS:
            errors.append(f"Invalid weekday: {day_key} (must be 1-7 for Mon-Sun)")
            continue

        grid[weekday] = {}
        for period_key, cell in (periods or {}).items():
            try:
                period = int(period_key)
            except (TypeError, ValueError):
                errors.append(f"Invalid period: {period_key} on day {day_key} (must be 1-8)")
                continue
            if period not in PERIODS:
                errors.append(f"Invalid period: {period_key} on day {day_key} (must be 1-8)")
                continue
            grid[weekday][period] = ScheduleCell.from_dict(cell) if cell else None

    if errors:
        raise ValidationError('; '.join(errors), errors)

    return grid


def grid_to_slots(grid: WeekGrid, user_id: str, week_start: date) -> List[ScheduleSlot]:
    """Expand every non-empty cell into a single-period slot."""
    slots = []

    for weekday in sorted(grid):
        if weekday not in WEEKDAYS:
            raise ValidationError(f"Invalid weekday: {weekday} (must be 1-7)")

        for period in sorted(grid[weekday] or {}):
            if period not in PERIODS:
                raise ValidationError(f"Invalid period: {period} on day {weekday} (must be 1-8)")

            cell: Optional[ScheduleCell] = grid[weekday][period]
            if cell is None or cell.is_empty:
                continue

            base_name, room_name = cell.base_name, cell.room_name
            if not base_name and cell.location:
                base_name, room_name = split_location(cell.location)

            slots.append(ScheduleSlot(
                user_id=user_id,
                week_start=week_start,
                weekday=weekday,
                period_start=period,
                period_end=period,
                course_name=cell.course_name or cell.course_ref or '',
                course_ref=cell.course_ref,
                base_name=base_name,
                room_name=room_name,
                url=cell.url,
            ))

    return slots


def merge_adjacent_periods(slots: List[ScheduleSlot]) -> List[ScheduleSlot]:
    """
    Merge contiguous same-course slots per weekday.

    Output is ordered by (weekday, periodStart) and contains no overlapping
    ranges. The first slot of a run provides location, url and series id.
    """
    if not slots:
        return []

    groups: Dict[tuple, List[ScheduleSlot]] = OrderedDict()
    for slot in slots:
        groups.setdefault((slot.weekday, slot.course_key), []).append(slot)

    merged = []
    for group in groups.values():
        group = sorted(group, key=lambda s: s.period_start)

        current = group[0].copy()
        for following in group[1:]:
            contiguous = following.period_start == current.period_end + 1
            crosses_lunch = (current.period_end == LUNCH_BREAK_AFTER
                             and following.period_start == LUNCH_BREAK_AFTER + 1)

            if contiguous and not crosses_lunch:
                current.period_end = max(current.period_end, following.period_end)
            else:
                merged.append(current)
                current = following.copy()

        merged.append(current)

    merged.sort(key=lambda s: (s.weekday, s.period_start))
    logger.debug(f"Merged {len(slots)} cells into {len(merged)} slots")
    return merged


def build_week_slots(grid: WeekGrid, user_id: str, week_start: date) -> List[ScheduleSlot]:
    """Grid → canonical, merged slots for one week."""
    return merge_adjacent_periods(grid_to_slots(grid, user_id, week_start))


def slots_to_grid(slots: List[ScheduleSlot]) -> WeekGrid:
    """Expand stored slots back into a per-period grid."""
    grid: WeekGrid = {weekday: {period: None for period in PERIODS} for weekday in WEEKDAYS}

    for slot in slots:
        for period in range(slot.period_start, slot.period_end + 1):
            grid[slot.weekday][period] = ScheduleCell(
                course_name=slot.course_name,
                course_ref=slot.course_ref,
                base_name=slot.base_name,
                room_name=slot.room_name,
                url=slot.url,
            )

    return grid
