#!/usr/bin/env python3
"""
Sync Executor

Applies a SyncPlan against Google Calendar and the local store, in order:
1. deletions (requested by the caller, then duplicates)
2. replacements (delete stale events, create the new one)
3. creations
4. links / updates

Every remote mutation is followed right away by its local store update, so
at most one action can be half-applied at any time. A 401 from Google aborts
the batch; every other failure is recorded and the batch goes on.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from classsync.core.db_manager import DatabaseManager
from classsync.core.errors import (CalendarAuthError, CalendarError, PersistenceError,
                                   RemoteNotFoundError, RemoteTimeoutError)
from classsync.gcal.calendar_service import GoogleCalendarService
from classsync.gcal.event_mapper import get_timezone, slot_to_event
from classsync.sync.plan import (DELETE_REQUESTED, Create, Delete, LinkAndUpdate, Replace,
                                 SyncAction, SyncPlan)


class ActionStatus(Enum):
    SUCCESS = 'success'
    SKIPPED = 'skipped'
    FAILED = 'failed'


# Failure / skip kinds
KIND_VALIDATION = 'validation'
KIND_AUTH = 'auth'
KIND_REMOTE = 'remote_conflict'
KIND_TIMEOUT = 'timeout'
KIND_PERSISTENCE = 'persistence'
KIND_REMOTE_GONE = 'remote_gone'
KIND_OCCUPIED = 'occupied'

SUCCESS_COUNTERS = {
    'create': 'created',
    'update': 'updated',
    'replace': 'replaced',
    'delete': 'deleted',
    'recover': 'recovered',
    'link': 'linked',
    'relink': 'relinked',
    'orphan': 'orphans_removed',
}


@dataclass
class ActionResult:
    action: str
    status: ActionStatus
    kind: str = ''
    reason: str = ''
    slot_id: Optional[int] = None
    external_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'action': self.action,
            'status': self.status.value,
            'kind': self.kind,
            'reason': self.reason,
            'slotId': self.slot_id,
            'externalId': self.external_id,
        }


@dataclass
class SyncSummary:
    created: int = 0
    updated: int = 0
    replaced: int = 0
    deleted: int = 0
    recovered: int = 0
    linked: int = 0
    relinked: int = 0
    orphans_removed: int = 0
    skipped: int = 0
    failed: int = 0
    reauth_required: bool = False
    results: List[ActionResult] = field(default_factory=list)

    def record(self, result: ActionResult) -> ActionResult:
        self.results.append(result)
        if result.status is ActionStatus.SUCCESS:
            counter = SUCCESS_COUNTERS[result.action]
            setattr(self, counter, getattr(self, counter) + 1)
        elif result.status is ActionStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        return result

    def merge(self, other: 'SyncSummary'):
        for counter in set(SUCCESS_COUNTERS.values()) | {'skipped', 'failed'}:
            setattr(self, counter, getattr(self, counter) + getattr(other, counter))
        self.reauth_required = self.reauth_required or other.reauth_required
        self.results.extend(other.results)

    @property
    def changes(self) -> int:
        return (self.created + self.updated + self.replaced + self.deleted + self.recovered
                + self.linked + self.relinked + self.orphans_removed)

    def counts(self) -> Dict[str, int]:
        return {
            'created': self.created,
            'updated': self.updated,
            'replaced': self.replaced,
            'deleted': self.deleted,
            'recovered': self.recovered,
            'linked': self.linked,
            'relinked': self.relinked,
            'orphansRemoved': self.orphans_removed,
            'skipped': self.skipped,
            'failed': self.failed,
        }

    def to_dict(self, include_results: bool = False) -> Dict:
        data = self.counts()
        data['reauthRequired'] = self.reauth_required
        if include_results:
            data['results'] = [result.to_dict() for result in self.results]
        return data


def failure_kind(error: CalendarError) -> str:
    if isinstance(error, RemoteTimeoutError):
        return KIND_TIMEOUT
    return KIND_REMOTE


class SyncExecutor:
    """Apply one week's plan, one action at a time."""

    def __init__(self, calendar: GoogleCalendarService, store: DatabaseManager,
                 tz=None, source_tag: str = None):
        self.logger = logging.getLogger('sync-executor')
        self.calendar = calendar
        self.store = store
        self.tz = tz or get_timezone()
        self.source_tag = source_tag

    def execute(self, plan: SyncPlan, user_id: str) -> SyncSummary:
        summary = SyncSummary()

        for invalid in plan.invalid:
            summary.record(ActionResult(
                'create', ActionStatus.SKIPPED, KIND_VALIDATION,
                '; '.join(invalid.errors), slot_id=invalid.slot.id
            ))

        for action in plan.actions():
            try:
                result = self._dispatch(action, user_id)
            except CalendarAuthError as e:
                self.logger.error(f"🔑 Google rejected the access token, aborting batch: {e}")
                summary.reauth_required = True
                summary.record(ActionResult(
                    _action_name(action), ActionStatus.FAILED, KIND_AUTH, str(e),
                    slot_id=_slot_id(action), external_id=_external_id(action)
                ))
                break
            summary.record(result)

        self.logger.info(
            f"✅ Executed plan: created {summary.created}, updated {summary.updated}, "
            f"replaced {summary.replaced}, deleted {summary.deleted}, "
            f"skipped {summary.skipped}, failed {summary.failed}"
        )
        return summary

    def _dispatch(self, action: SyncAction, user_id: str) -> ActionResult:
        if isinstance(action, Delete):
            return self._delete(action, user_id)
        if isinstance(action, Replace):
            return self._replace(action)
        if isinstance(action, Create):
            return self._create(action)
        if isinstance(action, LinkAndUpdate):
            return self._link_and_update(action)
        raise TypeError(f"Unhandled sync action: {action!r}")

    def _event_body(self, slot) -> Dict:
        return slot_to_event(slot, self.tz, self.source_tag)

    def _persist_ref(self, action: str, slot_id: int, external_id: Optional[str]) -> Optional[ActionResult]:
        """Store a slot's new external ref; a failure here means drift."""
        try:
            self.store.set_external_ref(slot_id, external_id)
            return None
        except PersistenceError as e:
            self.logger.error(
                f"❌ Drift risk: remote change applied but slot {slot_id} not updated "
                f"(external ref {external_id}): {e}"
            )
            return ActionResult(action, ActionStatus.FAILED, KIND_PERSISTENCE, str(e),
                                slot_id=slot_id, external_id=external_id)

    def _delete(self, action: Delete, user_id: str) -> ActionResult:
        existed = False
        try:
            if action.remote:
                existed = self.calendar.delete_event(action.external_id)
        except CalendarAuthError:
            raise
        except CalendarError as e:
            self.logger.warning(f"⚠️  Failed to delete {action.external_id}: {e}")
            return ActionResult('delete', ActionStatus.FAILED, failure_kind(e), str(e),
                                external_id=action.external_id)

        if action.reason == DELETE_REQUESTED:
            try:
                self.store.delete_by_external_ref(user_id, action.external_id)
            except PersistenceError as e:
                self.logger.error(
                    f"❌ Drift risk: event {action.external_id} deleted but local slot kept: {e}"
                )
                return ActionResult('delete', ActionStatus.FAILED, KIND_PERSISTENCE, str(e),
                                    external_id=action.external_id)

        self.logger.debug(f"  🗑️  Deleted {action.external_id} ({action.reason})")
        return ActionResult('delete', ActionStatus.SUCCESS,
                            reason=action.reason if existed else f"{action.reason}, already gone",
                            external_id=action.external_id)

    def _replace(self, action: Replace) -> ActionResult:
        slot = action.slot

        # Own event first, its ref cleared right after
        ordered = sorted(action.stale_ids, key=lambda stale_id: stale_id != slot.external_ref)
        for stale_id in ordered:
            try:
                self.calendar.delete_event(stale_id)
            except CalendarAuthError:
                raise
            except CalendarError as e:
                self.logger.warning(f"⚠️  Failed to delete stale event {stale_id}: {e}")
                return ActionResult('replace', ActionStatus.FAILED, failure_kind(e), str(e),
                                    slot_id=slot.id, external_id=stale_id)

            if stale_id == slot.external_ref:
                drift = self._persist_ref('replace', slot.id, None)
                if drift:
                    return drift

        if slot.external_ref not in ordered:
            drift = self._persist_ref('replace', slot.id, None)
            if drift:
                return drift

        try:
            new_id = self.calendar.create_event(self._event_body(slot))
        except CalendarAuthError:
            raise
        except CalendarError as e:
            self.logger.warning(f"⚠️  Failed to recreate {slot.course_name}: {e}")
            return ActionResult('replace', ActionStatus.FAILED, failure_kind(e), str(e),
                                slot_id=slot.id)

        drift = self._persist_ref('replace', slot.id, new_id)
        if drift:
            return drift

        self.logger.info(f"  🔄 Replaced {list(action.stale_ids)} with {new_id} ({slot.course_name})")
        return ActionResult('replace', ActionStatus.SUCCESS, slot_id=slot.id, external_id=new_id)

    def _create(self, action: Create) -> ActionResult:
        slot = action.slot

        try:
            new_id = self.calendar.create_event(self._event_body(slot))
        except CalendarAuthError:
            raise
        except CalendarError as e:
            self.logger.warning(f"⚠️  Failed to create {slot.course_name}: {e}")
            return ActionResult('create', ActionStatus.FAILED, failure_kind(e), str(e),
                                slot_id=slot.id)

        drift = self._persist_ref('create', slot.id, new_id)
        if drift:
            return drift

        self.logger.info(f"  ➕ Created {new_id} ({slot.course_name}, "
                         f"day {slot.weekday} periods {slot.period_start}-{slot.period_end})")
        return ActionResult('create', ActionStatus.SUCCESS, slot_id=slot.id, external_id=new_id)

    def _link_and_update(self, action: LinkAndUpdate) -> ActionResult:
        slot = action.slot

        try:
            self.calendar.update_event(action.external_id, self._event_body(slot))
        except CalendarAuthError:
            raise
        except RemoteNotFoundError:
            self.logger.info(f"  Event {action.external_id} vanished before update, skipping")
            return ActionResult('update', ActionStatus.SKIPPED, KIND_REMOTE_GONE,
                                slot_id=slot.id, external_id=action.external_id)
        except CalendarError as e:
            self.logger.warning(f"⚠️  Failed to update {action.external_id}: {e}")
            return ActionResult('update', ActionStatus.FAILED, failure_kind(e), str(e),
                                slot_id=slot.id, external_id=action.external_id)

        if slot.external_ref != action.external_id:
            drift = self._persist_ref('update', slot.id, action.external_id)
            if drift:
                return drift

        self.logger.info(f"  🔗 Linked/updated {action.external_id} ({slot.course_name})")
        return ActionResult('update', ActionStatus.SUCCESS, slot_id=slot.id,
                            external_id=action.external_id)


def _action_name(action: SyncAction) -> str:
    return {Delete: 'delete', Replace: 'replace', Create: 'create',
            LinkAndUpdate: 'update'}[type(action)]


def _slot_id(action: SyncAction) -> Optional[int]:
    slot = getattr(action, 'slot', None)
    return slot.id if slot is not None else None


def _external_id(action: SyncAction) -> Optional[str]:
    return getattr(action, 'external_id', None)
