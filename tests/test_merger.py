"""
Slot merging tests: grid cells → canonical, merged schedule slots.
"""

import pytest

from classsync.core.errors import ValidationError
from classsync.schedule.merger import (build_week_slots, merge_adjacent_periods, parse_grid,
                                       slots_to_grid)

from conftest import USER, WEEK, cell


def ranges(slots):
    return [(s.weekday, s.period_start, s.period_end, s.course_name) for s in slots]


class TestMergeAdjacentPeriods:
    """Contiguous periods of one course collapse into one slot"""

    @pytest.mark.merger
    def test_morning_run_merges_into_one_slot(self):
        grid = {1: {p: cell('Algebra') for p in (1, 2, 3, 4)}}

        slots = build_week_slots(grid, USER, WEEK)

        assert ranges(slots) == [(1, 1, 4, 'Algebra')]

    @pytest.mark.merger
    def test_lunch_break_splits_run(self):
        grid = {2: {p: cell('Physics') for p in (3, 4, 5, 6)}}

        slots = build_week_slots(grid, USER, WEEK)

        assert ranges(slots) == [(2, 3, 4, 'Physics'), (2, 5, 6, 'Physics')]

    @pytest.mark.merger
    def test_gap_and_other_course_are_not_merged(self):
        grid = {3: {
            1: cell('Algebra'),
            2: cell('Biology'),
            3: cell('Algebra'),
            6: cell('Algebra'),
            7: cell('Algebra'),
        }}

        slots = build_week_slots(grid, USER, WEEK)

        assert ranges(slots) == [
            (3, 1, 1, 'Algebra'),
            (3, 2, 2, 'Biology'),
            (3, 3, 3, 'Algebra'),
            (3, 6, 7, 'Algebra'),
        ]

    @pytest.mark.merger
    def test_course_id_separates_same_name(self):
        grid = {1: {1: cell('Seminar', 'S-1'), 2: cell('Seminar', 'S-2')}}

        slots = build_week_slots(grid, USER, WEEK)

        assert [(s.period_start, s.course_ref) for s in slots] == [(1, 'S-1'), (2, 'S-2')]

    @pytest.mark.merger
    def test_first_cell_provides_location(self):
        grid = {1: {1: cell('Algebra', location='Main - 101'), 2: cell('Algebra', location='Main - 102')}}

        slots = build_week_slots(grid, USER, WEEK)

        assert len(slots) == 1
        assert slots[0].base_name == 'Main'
        assert slots[0].room_name == '101'
        assert slots[0].location_label == 'Main - 101'

    @pytest.mark.merger
    def test_output_is_ordered_and_non_overlapping(self):
        grid = {
            5: {8: cell('Art')},
            1: {5: cell('Music'), 1: cell('Music')},
        }

        slots = build_week_slots(grid, USER, WEEK)

        assert [(s.weekday, s.period_start) for s in slots] == [(1, 1), (1, 5), (5, 8)]

    @pytest.mark.merger
    def test_empty_input(self):
        assert merge_adjacent_periods([]) == []


class TestParseGrid:
    """JSON grids from the HTTP surface"""

    def test_parses_string_keys_and_skips_empty_cells(self):
        grid = parse_grid({'1': {'1': {'courseName': 'Algebra', 'location': 'Main - 101'}, '2': None}})

        assert grid[1][1].course_name == 'Algebra'
        assert grid[1][2] is None

    def test_invalid_weekday_rejected(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_grid({'8': {'1': {'courseName': 'Algebra'}}})

        assert 'weekday' in str(excinfo.value)

    def test_invalid_period_rejected(self):
        with pytest.raises(ValidationError):
            parse_grid({'1': {'9': {'courseName': 'Algebra'}}})

    def test_slots_expand_back_to_grid(self):
        slots = build_week_slots({4: {p: cell('Chemistry') for p in (6, 7, 8)}}, USER, WEEK)

        grid = slots_to_grid(slots)

        assert [grid[4][p].course_name for p in (6, 7, 8)] == ['Chemistry'] * 3
        assert grid[4][5] is None
