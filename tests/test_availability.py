from datetime import time

import pytest

from factories import (AFTERNOON, MORNING, NIGHT, add_holiday, add_leave, assign, d, make_department,
                       make_shift, make_staff, set_priority, set_working_day)
from nurseshift.availability import (CONSECUTIVE_NIGHT_SHIFTS, CONSECUTIVE_SHIFTS,
                                     CONSECUTIVE_WORK_HOURS, NON_WORKING_DAY, ON_LEAVE, OVERLAP,
                                     SHIFT_UNAVAILABLE, STAFF_UNAVAILABLE, AvailabilityResolver,
                                     streak_through)
from nurseshift.models import STATUS_CANCELLED
from nurseshift.priorities import (MAX_CONSECUTIVE_NIGHT_SHIFTS, MAX_CONSECUTIVE_SHIFTS,
                                   MAX_CONSECUTIVE_WORK_HOURS)

DAY = d("2024-03-15")


@pytest.fixture
def ward(app_ctx):
    department = make_department()
    return {
        "department": department,
        "morning": make_shift(department, MORNING),
        "afternoon": make_shift(department, AFTERNOON),
        "night": make_shift(department, NIGHT),
        "nurse": make_staff(department, "สมศรี"),
        "assistant": make_staff(department, "ชูใจ", "ผู้ช่วยพยาบาล"),
    }


def check(ward, staff, shift, day=DAY):
    resolver = AvailabilityResolver.for_day(ward["department"].id, day)
    return resolver.is_eligible(staff, day, shift)


def test_free_staff_is_eligible(ward):
    verdict = check(ward, ward["nurse"], ward["morning"])
    assert verdict.eligible
    assert verdict.reason is None
    assert verdict.to_dict() == {"eligible": True}


def test_ids_are_accepted(ward):
    resolver = AvailabilityResolver.for_day(ward["department"].id, DAY)
    assert resolver.is_eligible(ward["nurse"].id, DAY, ward["morning"].id).eligible


def test_staff_on_leave(ward):
    add_leave(ward["nurse"], d("2024-03-14"), d("2024-03-16"))
    verdict = check(ward, ward["nurse"], ward["morning"])
    assert not verdict.eligible
    assert verdict.reason == ON_LEAVE
    assert verdict.to_dict()["message"] == "พนักงานลางานในวันนี้"


def test_pending_leave_does_not_block(ward):
    add_leave(ward["nurse"], DAY, status="pending")
    assert check(ward, ward["nurse"], ward["morning"]).eligible


def test_holiday_is_non_working(ward):
    add_holiday(ward["department"], d("2024-03-15"))
    assert check(ward, ward["nurse"], ward["morning"]).reason == NON_WORKING_DAY


def test_disabled_weekday_is_non_working(ward):
    set_working_day(ward["department"], 5, False)  # Friday
    assert check(ward, ward["nurse"], ward["morning"]).reason == NON_WORKING_DAY
    assert check(ward, ward["nurse"], ward["morning"], d("2024-03-16")).eligible


def test_non_working_day_is_checked_before_leave(ward):
    add_holiday(ward["department"], DAY)
    add_leave(ward["nurse"], DAY)
    assert check(ward, ward["nurse"], ward["morning"]).reason == NON_WORKING_DAY


def test_staff_from_another_department(ward):
    other = make_department("หอผู้ป่วยอื่น")
    outsider = make_staff(other, "คนนอก")
    assert check(ward, outsider, ward["morning"]).reason == STAFF_UNAVAILABLE


def test_inactive_staff_and_shift(ward):
    retired = make_staff(ward["department"], "เกษียณ", is_active=False)
    closed = make_shift(ward["department"], ("ปิด", time(9, 0), time(17, 0)), is_active=False)
    assert check(ward, retired, ward["morning"]).reason == STAFF_UNAVAILABLE
    assert check(ward, ward["nurse"], closed).reason == SHIFT_UNAVAILABLE


def test_overlapping_assignment_same_day(ward):
    assign(ward["nurse"], ward["morning"], DAY)
    long_day = make_shift(ward["department"], ("ยาว", time(11, 0), time(19, 0)))
    assert check(ward, ward["nurse"], long_day).reason == OVERLAP
    assert check(ward, ward["nurse"], ward["morning"]).reason == OVERLAP
    assert check(ward, ward["nurse"], ward["afternoon"]).eligible


def test_night_then_morning_next_day_is_allowed(ward):
    assign(ward["nurse"], ward["night"], d("2024-03-14"))
    assert check(ward, ward["nurse"], ward["morning"]).eligible


def test_previous_night_blocks_early_shift(ward):
    assign(ward["nurse"], ward["night"], d("2024-03-14"))
    early = make_shift(ward["department"], ("เช้ามืด", time(6, 0), time(14, 0)))
    assert check(ward, ward["nurse"], early).reason == OVERLAP


def test_cancelled_assignment_is_ignored(ward):
    assign(ward["nurse"], ward["morning"], DAY, status=STATUS_CANCELLED)
    assert check(ward, ward["nurse"], ward["morning"]).eligible


def test_consecutive_shift_limit_counts_backward(ward):
    set_priority(ward["department"], MAX_CONSECUTIVE_SHIFTS, 2)
    assign(ward["nurse"], ward["morning"], d("2024-03-13"))
    assign(ward["nurse"], ward["morning"], d("2024-03-14"))
    assert check(ward, ward["nurse"], ward["morning"]).reason == CONSECUTIVE_SHIFTS


def test_consecutive_shift_limit_counts_forward(ward):
    set_priority(ward["department"], MAX_CONSECUTIVE_SHIFTS, 2)
    assign(ward["nurse"], ward["morning"], d("2024-03-16"))
    assign(ward["nurse"], ward["morning"], d("2024-03-17"))
    assert check(ward, ward["nurse"], ward["morning"]).reason == CONSECUTIVE_SHIFTS


def test_streak_breaks_on_a_free_day(ward):
    set_priority(ward["department"], MAX_CONSECUTIVE_SHIFTS, 2)
    assign(ward["nurse"], ward["morning"], d("2024-03-12"))
    assign(ward["nurse"], ward["morning"], d("2024-03-13"))
    assert check(ward, ward["nurse"], ward["morning"]).eligible


def test_inactive_consecutive_priority_is_not_applied(ward):
    set_priority(ward["department"], MAX_CONSECUTIVE_SHIFTS, 1, is_active=False)
    assign(ward["nurse"], ward["morning"], d("2024-03-14"))
    assert check(ward, ward["nurse"], ward["morning"]).eligible


def test_consecutive_night_limit_only_applies_to_nights(ward):
    set_priority(ward["department"], MAX_CONSECUTIVE_NIGHT_SHIFTS, 1)
    assign(ward["nurse"], ward["night"], d("2024-03-14"))
    assert check(ward, ward["nurse"], ward["night"]).reason == CONSECUTIVE_NIGHT_SHIFTS
    assert check(ward, ward["nurse"], ward["morning"]).eligible


def test_continuous_work_hours_limit(ward):
    set_priority(ward["department"], MAX_CONSECUTIVE_WORK_HOURS, 12)
    assign(ward["nurse"], ward["morning"], DAY)
    assert check(ward, ward["nurse"], ward["afternoon"]).reason == CONSECUTIVE_WORK_HOURS

    set_priority(ward["department"], MAX_CONSECUTIVE_WORK_HOURS, 16)
    assert check(ward, ward["nurse"], ward["afternoon"]).eligible


def test_check_overlap_ignores_other_rules(ward):
    add_leave(ward["nurse"], DAY)
    resolver = AvailabilityResolver.for_day(ward["department"].id, DAY)
    assert resolver.check_overlap(ward["nurse"], DAY, ward["morning"]).eligible
    assign(ward["nurse"], ward["morning"], DAY)
    resolver = AvailabilityResolver.for_day(ward["department"].id, DAY)
    assert resolver.check_overlap(ward["nurse"], DAY, ward["morning"]).reason == OVERLAP


def test_available_staff_filters_by_role_and_eligibility(ward):
    second = make_staff(ward["department"], "วิไล")
    add_leave(ward["nurse"], DAY)
    resolver = AvailabilityResolver.for_day(ward["department"].id, DAY)

    everyone = resolver.available_staff(DAY, ward["morning"])
    assert [s.id for s in everyone] == [ward["assistant"].id, second.id]
    nurses = resolver.available_staff(DAY, ward["morning"], role="nurse")
    assert [s.to_dict() for s in nurses] == [{"id": second.id, "name": "วิไล", "position": "nurse"}]


def test_record_updates_state_in_place(ward):
    resolver = AvailabilityResolver.for_day(ward["department"].id, DAY)
    assignment = assign(ward["nurse"], ward["morning"], DAY)
    assert resolver.is_eligible(ward["nurse"], DAY, ward["morning"]).eligible
    resolver.record(assignment)
    assert resolver.is_eligible(ward["nurse"], DAY, ward["morning"]).reason == OVERLAP
    resolver.forget(assignment)
    assert resolver.is_eligible(ward["nurse"], DAY, ward["morning"]).eligible


def test_streak_through_counts_both_directions():
    days = {d("2024-03-13"), d("2024-03-14"), d("2024-03-16"), d("2024-03-20")}
    assert streak_through(days, DAY) == 4
    assert streak_through(set(), DAY) == 1
