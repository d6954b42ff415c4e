#!/usr/bin/env python3
"""
Recovery Scanner

Rebuilds local schedule slots from ClassSync events already on the calendar,
e.g. after the local store was lost or a week was created on another device.

For every tagged event not referenced by a local slot:
- an unlinked local slot with the same course at the same periods is linked
- a period range already held by another slot is left alone
- otherwise a new local slot is created from the event

Recovery never deletes anything, locally or remotely.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from classsync.core.db_manager import DatabaseManager
from classsync.core.errors import PersistenceError
from classsync.core.models import ScheduleSlot, split_location
from classsync.gcal.event_mapper import RemoteSlot, map_events
from classsync.sync.executor import (KIND_OCCUPIED, KIND_PERSISTENCE, ActionResult, ActionStatus,
                                     SyncSummary)


def _overlaps(slot: ScheduleSlot, remote: RemoteSlot) -> bool:
    return (slot.weekday == remote.weekday
            and slot.period_start <= remote.period_end
            and remote.period_start <= slot.period_end)


class RecoveryScanner:
    """Recover or link local slots from a week's remote events."""

    def __init__(self, store: DatabaseManager):
        self.logger = logging.getLogger('recovery-scanner')
        self.store = store

    def recover(self, user_id: str, week_start: date, remote_events: List[Dict]) -> SyncSummary:
        summary = SyncSummary()
        local = self.store.get_week_slots(user_id, week_start)
        referenced = {slot.external_ref for slot in local if slot.external_ref}

        self.logger.info(f"🔄 Recovering week {week_start}: {len(remote_events)} remote events, "
                         f"{len(local)} local slots")

        for remote in map_events(remote_events):
            if remote.event_id in referenced:
                continue

            holder = self._find_holder(local, remote)
            if holder is not None:
                summary.record(self._link_or_skip(holder, remote, referenced))
                continue

            base_name, room_name = split_location(remote.location)
            slot = ScheduleSlot(
                user_id=user_id,
                week_start=week_start,
                weekday=remote.weekday,
                period_start=remote.period_start,
                period_end=remote.period_end,
                course_name=remote.course_name,
                course_ref=remote.course_ref,
                base_name=base_name,
                room_name=room_name,
                series_id=remote.series_id,
                url=remote.url,
                external_ref=remote.event_id,
            )

            try:
                inserted = self.store.insert_slot(slot)
            except PersistenceError as e:
                self.logger.error(f"❌ Failed to recover {remote.event_id} ({remote.course_name}): {e}")
                summary.record(ActionResult('recover', ActionStatus.FAILED, KIND_PERSISTENCE, str(e),
                                            external_id=remote.event_id))
                continue

            local.append(inserted)
            referenced.add(remote.event_id)
            self.logger.info(f"  ✅ Recovered {remote.course_name} "
                             f"(day {remote.weekday} periods {remote.period_start}-{remote.period_end})")
            summary.record(ActionResult('recover', ActionStatus.SUCCESS, slot_id=inserted.id,
                                        external_id=remote.event_id))

        self.logger.info(
            f"📋 Recovery done: {summary.recovered} recovered, {summary.linked} linked, "
            f"{summary.skipped} skipped, {summary.failed} failed"
        )
        return summary

    @staticmethod
    def _find_holder(local: List[ScheduleSlot], remote: RemoteSlot) -> Optional[ScheduleSlot]:
        """The local slot occupying the remote event's periods, exact range first."""
        overlapping = [slot for slot in local if _overlaps(slot, remote)]
        for slot in overlapping:
            if slot.period_range == remote.period_range:
                return slot
        return overlapping[0] if overlapping else None

    def _link_or_skip(self, slot: ScheduleSlot, remote: RemoteSlot, referenced: set) -> ActionResult:
        same_course = (slot.course_name == remote.course_name
                       or (slot.course_ref and slot.course_ref == remote.course_ref))

        if slot.external_ref or slot.period_range != remote.period_range or not same_course:
            self.logger.debug(f"  Periods of {remote.event_id} already occupied by slot {slot.id}")
            return ActionResult('link', ActionStatus.SKIPPED, KIND_OCCUPIED,
                                slot_id=slot.id, external_id=remote.event_id)

        try:
            self.store.set_external_ref(slot.id, remote.event_id)
        except PersistenceError as e:
            self.logger.error(f"❌ Failed to link slot {slot.id} to {remote.event_id}: {e}")
            return ActionResult('link', ActionStatus.FAILED, KIND_PERSISTENCE, str(e),
                                slot_id=slot.id, external_id=remote.event_id)

        slot.external_ref = remote.event_id
        referenced.add(remote.event_id)
        self.logger.info(f"  🔗 Linked slot {slot.id} to {remote.event_id}")
        return ActionResult('link', ActionStatus.SUCCESS, slot_id=slot.id,
                            external_id=remote.event_id)
