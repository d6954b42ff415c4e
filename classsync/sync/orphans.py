#!/usr/bin/env python3
"""
Orphan Collector

A local slot is an orphan when its calendar event id no longer appears in
the week's remote listing (deleted in Google Calendar, or recreated by
another client). Each orphan is either re-linked to a matching unreferenced
event (same title, start within the tolerance window) or removed locally.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List

from classsync import config
from classsync.core.db_manager import DatabaseManager
from classsync.core.errors import PersistenceError
from classsync.core.models import ScheduleSlot
from classsync.gcal.event_mapper import get_timezone, parse_event_start, period_window
from classsync.sync.executor import KIND_PERSISTENCE, ActionResult, ActionStatus, SyncSummary


class OrphanCollector:
    """Re-link or delete local slots whose calendar event vanished."""

    def __init__(self, store: DatabaseManager, tolerance_minutes: int = None, tz=None):
        self.logger = logging.getLogger('orphan-collector')
        self.store = store
        self.tolerance = timedelta(minutes=(tolerance_minutes if tolerance_minutes is not None
                                            else config.ORPHAN_MATCH_TOLERANCE_MINUTES))
        self.tz = tz or get_timezone()

    def collect(self, user_id: str, week_start: date, remote_events: List[Dict]) -> SyncSummary:
        """
        Process every orphan of the week.

        remote_events must be the complete tagged listing of the week; the
        caller must not invoke this when the listing failed.
        """
        summary = SyncSummary()
        local = self.store.get_week_slots(user_id, week_start)

        remote_ids = {event['id'] for event in remote_events if event.get('id')}
        referenced = {slot.external_ref for slot in local
                      if slot.external_ref and slot.external_ref in remote_ids}
        orphans = [slot for slot in local
                   if slot.external_ref and slot.external_ref not in remote_ids]

        if not orphans:
            self.logger.info(f"✅ No orphaned slots in week {week_start}")
            return summary

        self.logger.info(f"🔍 Found {len(orphans)} orphaned slots in week {week_start}")

        candidates = sorted(
            (event for event in remote_events
             if event.get('id') and event['id'] not in referenced),
            key=lambda event: (not event.get('created'), event.get('created') or '', event['id'])
        )

        for slot in orphans:
            match = self._find_match(slot, candidates, referenced)

            try:
                if match:
                    self.store.set_external_ref(slot.id, match['id'])
                    referenced.add(match['id'])
                    self.logger.info(f"  🔗 Re-linked slot {slot.id} ({slot.course_name}) to {match['id']}")
                    summary.record(ActionResult('relink', ActionStatus.SUCCESS, slot_id=slot.id,
                                                external_id=match['id']))
                else:
                    self.store.delete_slot(slot.id)
                    self.logger.info(f"  🗑️  Removed orphaned slot {slot.id} ({slot.course_name})")
                    summary.record(ActionResult('orphan', ActionStatus.SUCCESS, slot_id=slot.id,
                                                external_id=slot.external_ref))
            except PersistenceError as e:
                self.logger.error(f"❌ Failed to clean up slot {slot.id}: {e}")
                summary.record(ActionResult('orphan', ActionStatus.FAILED, KIND_PERSISTENCE, str(e),
                                            slot_id=slot.id, external_id=slot.external_ref))

        self.logger.info(
            f"📋 Orphan cleanup done: {summary.relinked} re-linked, "
            f"{summary.orphans_removed} removed, {summary.failed} failed"
        )
        return summary

    def _find_match(self, slot: ScheduleSlot, candidates: List[Dict], referenced: set):
        expected_start, _ = period_window(slot.week_start, slot.weekday,
                                          slot.period_start, slot.period_end, self.tz)

        for event in candidates:
            if event['id'] in referenced:
                continue
            if (event.get('summary') or '') != slot.course_name:
                continue

            start = parse_event_start(event)
            if start is None:
                continue
            if start.tzinfo is None:
                start = self.tz.localize(start)

            if abs(start - expected_start) <= self.tolerance:
                return event

        return None
