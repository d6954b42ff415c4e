"""
Sync plan actions.

A plan is rebuilt from scratch for every run and never persisted. Each
action is its own type so the executor can dispatch exhaustively.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple, Union

from classsync.core.models import ScheduleSlot

DELETE_REQUESTED = 'requested'
DELETE_DUPLICATE = 'duplicate'
DELETE_RESET = 'reset'


@dataclass(frozen=True)
class Delete:
    external_id: str
    reason: str = DELETE_REQUESTED
    # False when the id is not a ClassSync event of the week: only local refs are dropped
    remote: bool = True


@dataclass(frozen=True)
class Replace:
    slot: ScheduleSlot
    stale_ids: Tuple[str, ...]


@dataclass(frozen=True)
class Create:
    slot: ScheduleSlot


@dataclass(frozen=True)
class LinkAndUpdate:
    slot: ScheduleSlot
    external_id: str


SyncAction = Union[Delete, Replace, Create, LinkAndUpdate]


@dataclass
class InvalidSlot:
    slot: ScheduleSlot
    errors: List[str]


@dataclass
class SyncPlan:
    to_delete: List[Delete] = field(default_factory=list)
    to_replace: List[Replace] = field(default_factory=list)
    to_create: List[Create] = field(default_factory=list)
    to_link_and_update: List[LinkAndUpdate] = field(default_factory=list)
    invalid: List[InvalidSlot] = field(default_factory=list)
    orphaned: List[ScheduleSlot] = field(default_factory=list)

    def actions(self) -> Iterator[SyncAction]:
        """All actions in execution order."""
        yield from self.to_delete
        yield from self.to_replace
        yield from self.to_create
        yield from self.to_link_and_update

    @property
    def is_empty(self) -> bool:
        return not (self.to_delete or self.to_replace or self.to_create or self.to_link_and_update)

    def to_dict(self) -> Dict:
        def describe(slot: ScheduleSlot) -> Dict:
            return {
                'weekday': slot.weekday,
                'periodStart': slot.period_start,
                'periodEnd': slot.period_end,
                'courseName': slot.course_name,
                'courseId': slot.course_ref,
                'externalRef': slot.external_ref,
            }

        return {
            'delete': [{'externalId': a.external_id, 'reason': a.reason, 'remote': a.remote}
                       for a in self.to_delete],
            'replace': [dict(describe(a.slot), staleIds=list(a.stale_ids)) for a in self.to_replace],
            'create': [describe(a.slot) for a in self.to_create],
            'linkAndUpdate': [dict(describe(a.slot), externalId=a.external_id)
                              for a in self.to_link_and_update],
            'invalid': [dict(describe(i.slot), errors=i.errors) for i in self.invalid],
            'orphaned': [describe(slot) for slot in self.orphaned],
        }
