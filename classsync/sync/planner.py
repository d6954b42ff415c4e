#!/usr/bin/env python3
"""
Reconciliation Planner

Diffs the local slots of one (user, week) against the ClassSync events of
the same week and produces a SyncPlan:

- unlinked slot, no remote event at its slot-key    -> Create
- unlinked slot, remote event at its slot-key       -> LinkAndUpdate
- linked slot, remote unchanged                     -> nothing
- linked slot, same slot-key but stale details    -> LinkAndUpdate
- linked slot, remote holds a different course      -> Replace
- linked slot, remote event gone                    -> orphan (reported only)

Extra remote events sharing one slot-key are queued for deletion. Remote
events referenced by a local slot are never offered to another slot.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

from classsync.core.models import ScheduleSlot, SlotKey, validate_slot
from classsync.gcal.event_mapper import RemoteSlot, map_events
from classsync.sync.plan import (DELETE_DUPLICATE, DELETE_REQUESTED, Create, Delete, InvalidSlot,
                                 LinkAndUpdate, Replace, SyncPlan)


class ReconciliationPlanner:
    """Build the per-week action plan."""

    def __init__(self):
        self.logger = logging.getLogger('sync-planner')

    def build_plan(self, local_slots: List[ScheduleSlot], remote_events: List[Dict],
                   delete_ids: Iterable[str] = ()) -> SyncPlan:
        remotes = map_events(remote_events)
        by_id = {remote.event_id: remote for remote in remotes}
        by_key: Dict[SlotKey, List[RemoteSlot]] = defaultdict(list)
        for remote in remotes:
            by_key[remote.slot_key].append(remote)

        plan = SyncPlan()
        queued: Set[str] = set()

        def queue_delete(external_id: str, reason: str, remote: bool = True):
            if external_id and external_id not in queued:
                queued.add(external_id)
                plan.to_delete.append(Delete(external_id, reason, remote))

        # 1. Deletions the caller asked for (cleared cells). Ids outside the
        # week's tagged listing never reach Google.
        tagged_ids = {event.get('id') for event in remote_events}
        for external_id in delete_ids:
            if external_id and external_id not in tagged_ids:
                self.logger.warning(f"  ⚠️  {external_id} is not a ClassSync event of this week, "
                                    f"dropping local refs only")
            queue_delete(external_id, DELETE_REQUESTED, external_id in tagged_ids)

        active_slots = [slot for slot in local_slots if slot.external_ref not in queued]
        claimed = {slot.external_ref for slot in active_slots if slot.external_ref}
        owners = {slot.slot_key for slot in active_slots
                  if slot.external_ref in by_id
                  and by_id[slot.external_ref].slot_key == slot.slot_key}

        # 2. Duplicates: one canonical event per slot-key survives
        canonical: Dict[SlotKey, RemoteSlot] = {}
        for key, group in by_key.items():
            unclaimed = [r for r in group if r.event_id not in claimed and r.event_id not in queued]
            if not unclaimed:
                continue
            if key in owners:
                duplicates = unclaimed
            else:
                canonical[key] = unclaimed[0]
                duplicates = unclaimed[1:]
            for remote in duplicates:
                self.logger.info(f"  🔴 Duplicate event {remote.event_id} at {key}")
                queue_delete(remote.event_id, DELETE_DUPLICATE)

        # 3. Per-slot decisions
        for slot in active_slots:
            errors = validate_slot(slot)
            if errors:
                self.logger.warning(f"  ⚠️  Skipping invalid slot {slot.period_range}: {errors}")
                plan.invalid.append(InvalidSlot(slot, errors))
                continue

            if not slot.external_ref:
                match = self._take_canonical(canonical, slot.slot_key, claimed, queued)
                if match:
                    claimed.add(match.event_id)
                    plan.to_link_and_update.append(LinkAndUpdate(slot, match.event_id))
                else:
                    plan.to_create.append(Create(slot))
                continue

            remote = by_id.get(slot.external_ref)
            if remote is None:
                plan.orphaned.append(slot)
                continue

            if remote.slot_key == slot.slot_key:
                if not self._content_matches(slot, remote):
                    plan.to_link_and_update.append(LinkAndUpdate(slot, remote.event_id))
                continue

            stale = [slot.external_ref]
            match = self._take_canonical(canonical, slot.slot_key, claimed, queued)
            if match:
                stale.append(match.event_id)
            queued.update(stale)
            plan.to_replace.append(Replace(slot, tuple(stale)))

        self.logger.info(
            f"📋 SYNC PLAN: {len(plan.to_delete)} to delete, {len(plan.to_replace)} to replace, "
            f"{len(plan.to_create)} to create, {len(plan.to_link_and_update)} to link/update"
        )
        if plan.orphaned:
            self.logger.info(f"  {len(plan.orphaned)} slots point at vanished events")
        return plan

    @staticmethod
    def _take_canonical(canonical: Dict[SlotKey, RemoteSlot], key: SlotKey,
                        claimed: Set[str], queued: Set[str]) -> Optional[RemoteSlot]:
        match = canonical.get(key)
        if match is None or match.event_id in claimed or match.event_id in queued:
            return None
        del canonical[key]
        return match

    @staticmethod
    def _content_matches(slot: ScheduleSlot, remote: RemoteSlot) -> bool:
        return (
            remote.course_name == slot.course_name
            and (remote.location or '') == slot.location_label
            and (remote.url or None) == (slot.url or None)
            and (remote.series_id or None) == (slot.series_id or None)
            and remote.metadata_source == 'properties'
        )
