"""
Reconciliation planner tests: local slots + remote listing → action plan.
"""

import pytest

from classsync.core.models import ScheduleSlot
from classsync.gcal.event_mapper import slot_to_event
from classsync.sync.plan import DELETE_DUPLICATE, DELETE_REQUESTED
from classsync.sync.planner import ReconciliationPlanner

from conftest import USER, WEEK


def slot(weekday, start, end, name, ref=None, slot_id=None, **extra) -> ScheduleSlot:
    return ScheduleSlot(user_id=USER, week_start=WEEK, weekday=weekday, period_start=start,
                        period_end=end, course_name=name, external_ref=ref, id=slot_id, **extra)


def remote(local: ScheduleSlot, event_id: str, tz, created='2024-08-01T00:00:00.000Z'):
    return dict(slot_to_event(local, tz, 'class_sync'), id=event_id, created=created)


@pytest.fixture
def planner():
    return ReconciliationPlanner()


class TestReconciliationPlanner:
    """Per-week plans"""

    @pytest.mark.planner
    def test_new_slot_is_created(self, planner):
        plan = planner.build_plan([slot(1, 1, 2, 'Algebra', slot_id=1)], [])

        assert [a.slot.id for a in plan.to_create] == [1]
        assert not plan.to_delete and not plan.to_replace and not plan.to_link_and_update

    @pytest.mark.planner
    def test_synced_week_is_a_no_op(self, planner, tz):
        local = slot(1, 1, 2, 'Algebra', ref='e1', slot_id=1)

        plan = planner.build_plan([local], [remote(local, 'e1', tz)])

        assert plan.is_empty

    @pytest.mark.planner
    def test_unlinked_slot_links_to_existing_event(self, planner, tz):
        local = slot(1, 1, 2, 'Algebra', slot_id=1)

        plan = planner.build_plan([local], [remote(local, 'e1', tz)])

        assert [(a.slot.id, a.external_id) for a in plan.to_link_and_update] == [(1, 'e1')]
        assert not plan.to_create

    @pytest.mark.planner
    def test_course_change_replaces_event(self, planner, tz):
        old = slot(2, 3, 3, 'Algebra', ref='e1', slot_id=1)
        new = old.copy(course_name='Biology')

        plan = planner.build_plan([new], [remote(old, 'e1', tz)])

        assert len(plan.to_replace) == 1
        assert plan.to_replace[0].stale_ids == ('e1',)
        assert not plan.to_create and not plan.to_delete

    @pytest.mark.planner
    def test_location_change_updates_in_place(self, planner, tz):
        old = slot(1, 1, 1, 'Algebra', ref='e1', slot_id=1, base_name='Main', room_name='101')
        new = old.copy(room_name='202')

        plan = planner.build_plan([new], [remote(old, 'e1', tz)])

        assert [a.external_id for a in plan.to_link_and_update] == ['e1']
        assert not plan.to_replace

    @pytest.mark.planner
    def test_duplicates_keep_earliest_created(self, planner, tz):
        local = slot(1, 5, 6, 'Algebra', slot_id=1)
        events = [
            remote(local, 'late', tz, created='2024-08-03T00:00:00.000Z'),
            remote(local, 'early', tz, created='2024-08-01T00:00:00.000Z'),
        ]

        plan = planner.build_plan([local], events)

        assert [(d.external_id, d.reason) for d in plan.to_delete] == [('late', DELETE_DUPLICATE)]
        assert [a.external_id for a in plan.to_link_and_update] == ['early']

    @pytest.mark.planner
    def test_duplicates_of_linked_slot_are_deleted(self, planner, tz):
        local = slot(1, 5, 6, 'Algebra', ref='mine', slot_id=1)
        events = [
            remote(local, 'other', tz, created='2024-08-01T00:00:00.000Z'),
            remote(local, 'mine', tz, created='2024-08-02T00:00:00.000Z'),
        ]

        plan = planner.build_plan([local], events)

        assert [d.external_id for d in plan.to_delete] == ['other']
        assert not plan.to_link_and_update

    @pytest.mark.planner
    def test_requested_deletes_come_first_and_drop_local(self, planner, tz):
        gone = slot(3, 1, 1, 'Art', ref='e-art', slot_id=1)
        kept = slot(3, 2, 2, 'Music', slot_id=2)

        plan = planner.build_plan([gone, kept], [remote(gone, 'e-art', tz)], delete_ids=['e-art'])

        assert [(d.external_id, d.reason) for d in plan.to_delete] == [('e-art', DELETE_REQUESTED)]
        assert [a.slot.id for a in plan.to_create] == [2]
        actions = list(plan.actions())
        assert actions[0] is plan.to_delete[0]

    @pytest.mark.planner
    def test_requested_id_outside_listing_stays_local(self, planner, tz):
        local = slot(3, 1, 1, 'Art', ref='foreign', slot_id=1)

        plan = planner.build_plan([local], [], delete_ids=['foreign'])

        assert [(d.external_id, d.remote) for d in plan.to_delete] == [('foreign', False)]
        assert not plan.orphaned

    @pytest.mark.planner
    def test_changed_course_link_updates_in_place(self, planner, tz):
        old = slot(1, 1, 1, 'Algebra', ref='e1', slot_id=1, url='https://school.example/a')
        new = old.copy(url='https://school.example/b', series_id='ALG-2024')

        plan = planner.build_plan([new], [remote(old, 'e1', tz)])

        assert [a.external_id for a in plan.to_link_and_update] == ['e1']
        assert not plan.to_replace

    @pytest.mark.planner
    def test_vanished_event_is_reported_as_orphan(self, planner):
        local = slot(1, 1, 1, 'Algebra', ref='gone', slot_id=1)

        plan = planner.build_plan([local], [])

        assert plan.orphaned == [local]
        assert plan.is_empty

    @pytest.mark.planner
    def test_invalid_slot_is_skipped(self, planner):
        bad = slot(1, 5, 3, 'Algebra', slot_id=1)

        plan = planner.build_plan([bad], [])

        assert len(plan.invalid) == 1
        assert not plan.to_create

    @pytest.mark.planner
    def test_description_only_metadata_is_restored(self, planner, tz):
        local = slot(1, 1, 1, 'Algebra', ref='e1', slot_id=1)
        event = remote(local, 'e1', tz)
        del event['extendedProperties']

        plan = planner.build_plan([local], [event])

        assert [a.external_id for a in plan.to_link_and_update] == ['e1']

    @pytest.mark.planner
    def test_event_claimed_by_one_slot_not_offered_to_another(self, planner, tz):
        # Slot 1 still points at e1 but moved; slot 2 now sits where e1 is
        moved = slot(1, 1, 1, 'Algebra', ref='e1', slot_id=1)
        newcomer = slot(1, 2, 2, 'Algebra', slot_id=2)
        event = remote(newcomer, 'e1', tz)

        plan = planner.build_plan([moved, newcomer], [event])

        assert [a.stale_ids for a in plan.to_replace] == [('e1',)]
        assert [a.slot.id for a in plan.to_create] == [2]
        assert not plan.to_link_and_update
