#!/usr/bin/env python3
"""
Schedule Writer

The single write path from a user's weekly grid into the local store:
1. Parse and validate the grid
2. Merge adjacent periods into canonical slots
3. Carry calendar links over to slots that keep the same period range
4. Replace the whole week in one transaction

Slots whose period range disappeared release their calendar event id; the
caller hands those ids to the next sync as explicit deletions.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List

from classsync.core.db_manager import DatabaseManager
from classsync.core.models import ScheduleSlot, WeekGrid
from classsync.schedule.merger import build_week_slots, slots_to_grid


@dataclass
class WriteResult:
    slots: List[ScheduleSlot] = field(default_factory=list)
    released_refs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'slotsWritten': len(self.slots),
            'releasedRefs': list(self.released_refs),
        }


class ScheduleWriter:
    """Write user-edited weekly grids into the local store."""

    def __init__(self, store: DatabaseManager):
        self.logger = logging.getLogger('schedule-writer')
        self.store = store

    def write_week(self, user_id: str, week_start: date, grid: WeekGrid) -> WriteResult:
        """Merge the grid and atomically replace the week's slots."""
        merged = build_week_slots(grid, user_id, week_start)
        self.logger.info(f"Writing week {week_start}: {len(merged)} merged slots")

        with self.store.week_lock(user_id, week_start):
            previous = self.store.get_week_slots(user_id, week_start)
            previous_by_range = {slot.period_range: slot for slot in previous}

            kept_refs = set()
            for slot in merged:
                old = previous_by_range.get(slot.period_range)
                if old is None:
                    continue
                slot.external_ref = old.external_ref
                if old.external_ref:
                    kept_refs.add(old.external_ref)
                # Same course at the same range keeps its series grouping
                if old.course_key == slot.course_key:
                    slot.series_id = old.series_id

            released = [
                slot.external_ref for slot in previous
                if slot.external_ref and slot.external_ref not in kept_refs
            ]

            written = self.store.replace_week(user_id, week_start, merged)

        if released:
            self.logger.info(f"  {len(released)} calendar events released for deletion")

        return WriteResult(slots=written, released_refs=released)

    def read_week(self, user_id: str, week_start: date) -> WeekGrid:
        """Load the week's slots as a per-period grid."""
        return slots_to_grid(self.store.get_week_slots(user_id, week_start))

    def copy_previous_week(self, user_id: str, week_start: date) -> WriteResult:
        """
        Copy last week's slots into this week.

        Calendar event ids are never copied; the copies are unsynced until
        the next sync creates their own events. Events linked to the slots
        being overwritten are released for deletion.
        """
        previous_week = week_start - timedelta(days=7)
        source = self.store.get_week_slots(user_id, previous_week)
        if not source:
            self.logger.warning(f"⚠️  No slots in {previous_week} to copy")
            return WriteResult()

        copies = [
            slot.copy(id=None, week_start=week_start, external_ref=None)
            for slot in source
        ]

        with self.store.week_lock(user_id, week_start):
            current = self.store.get_week_slots(user_id, week_start)
            released = [slot.external_ref for slot in current if slot.external_ref]
            written = self.store.replace_week(user_id, week_start, copies)

        self.logger.info(f"✅ Copied {len(written)} slots from {previous_week} to {week_start}")
        return WriteResult(slots=written, released_refs=released)
