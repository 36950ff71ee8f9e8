import threading
from datetime import time
from time import sleep

import pytest

from factories import (AFTERNOON, MORNING, NIGHT, active_assignments, add_leave, assign, d,
                       make_department, make_shift, make_staff)
from nurseshift.availability import ON_LEAVE, OVERLAP, ROLE_MISMATCH, AvailabilityResolver
from nurseshift.errors import ConcurrencyError, EligibilityError, NotFoundError, ValidationError
from nurseshift.locks import ROSTER_BUSY_MESSAGE, generation_locks, roster_locks
from nurseshift.models import STATUS_ACTIVE, STATUS_CANCELLED, ScheduleAssignment, db
from nurseshift.overrides import GENERATION_BUSY_MESSAGE, RosterEditor
from nurseshift.priorities import PriorityRegistry

DAY = d("2024-03-20")


@pytest.fixture
def editor():
    return RosterEditor()


@pytest.fixture
def ward(app_ctx):
    department = make_department()
    return {
        "department": department,
        "morning": make_shift(department, MORNING),
        "afternoon": make_shift(department, AFTERNOON),
        "night": make_shift(department, NIGHT),
        "a": make_staff(department, "อรุณี"),
        "b": make_staff(department, "บุษบา"),
        "c": make_staff(department, "จันทร์เพ็ญ"),
        "assistant": make_staff(department, "ชูใจ", "ผู้ช่วยพยาบาล"),
    }


def test_reduce_staff_cancels_the_busiest_first(editor, ward):
    a, b, morning = ward["a"], ward["b"], ward["morning"]
    for day in range(1, 10):
        assign(a, ward["afternoon"], d(f"2024-03-{day:02d}"))
    for day in range(1, 5):
        assign(b, ward["afternoon"], d(f"2024-03-{day:02d}"))
    target_a = assign(a, morning, DAY)
    target_b = assign(b, morning, DAY)

    result = editor.reduce_staff(DAY.isoformat(), morning.id, nurses_to_reduce=1, actor="head-nurse")

    assert [r["id"] for r in result["removed"]] == [target_a.id]
    assert db.session.get(ScheduleAssignment, target_a.id).status == STATUS_CANCELLED
    assert db.session.get(ScheduleAssignment, target_b.id).status == STATUS_ACTIVE


def test_reduce_staff_ties_go_to_the_lowest_id(editor, ward):
    first = assign(ward["a"], ward["morning"], DAY)
    assign(ward["b"], ward["morning"], DAY)
    result = editor.reduce_staff(DAY, ward["morning"].id, nurses_to_reduce=1)
    assert [r["id"] for r in result["removed"]] == [first.id]


def test_reduce_more_than_assigned_removes_everyone(editor, ward):
    assign(ward["a"], ward["morning"], DAY)
    assign(ward["assistant"], ward["morning"], DAY)
    result = editor.reduce_staff(DAY, ward["morning"].id, nurses_to_reduce=5, assistants_to_reduce=5)
    assert len(result["removed"]) == 2
    assert active_assignments(ward["department"]) == []


def test_reduce_staff_rejects_negative_counts(editor, ward):
    assign(ward["a"], ward["morning"], DAY)
    with pytest.raises(ValidationError):
        editor.reduce_staff(DAY, ward["morning"].id, nurses_to_reduce=-1)
    assert len(active_assignments(ward["department"])) == 1


def test_edit_shift_adds_removes_and_skips(editor, ward):
    morning = ward["morning"]
    removed = assign(ward["a"], morning, DAY)
    add_leave(ward["c"], DAY)

    result = editor.edit_shift(
        ward["department"].id, DAY.isoformat(), morning.id,
        add_nurses=[ward["b"].id, ward["c"].id, ward["assistant"].id],
        add_assistants=[ward["assistant"].id],
        remove_nurses=[ward["a"].id],
        actor="head-nurse",
    )

    assert [r["id"] for r in result["removed"]] == [removed.id]
    assert sorted((r["staffId"], r["departmentRole"]) for r in result["added"]) == sorted([
        (ward["b"].id, "nurse"), (ward["assistant"].id, "assistant"),
    ])
    assert [(s["staffId"], s["reason"]) for s in result["skipped"]] == [
        (ward["c"].id, ON_LEAVE), (ward["assistant"].id, ROLE_MISMATCH),
    ]
    assert result["skipped"][0]["message"] == "พนักงานลางานในวันนี้"
    active = {(a.staff_id, a.created_by) for a in active_assignments(ward["department"])}
    assert active == {(ward["b"].id, "head-nurse"), (ward["assistant"].id, "head-nurse")}


def test_edit_shift_does_not_double_book_within_one_batch(editor, ward):
    result = editor.edit_shift(ward["department"].id, DAY, ward["morning"].id,
                               add_nurses=[ward["a"].id, ward["a"].id])
    assert len(result["added"]) == 1
    assert [s["reason"] for s in result["skipped"]] == [OVERLAP]


def test_edit_shift_can_swap_a_person_back_in(editor, ward):
    assign(ward["a"], ward["morning"], DAY)
    result = editor.edit_shift(ward["department"].id, DAY, ward["morning"].id,
                               add_nurses=[ward["a"].id], remove_nurses=[ward["a"].id])
    assert len(result["removed"]) == 1
    assert len(result["added"]) == 1
    assert result["skipped"] == []


def test_edit_shift_of_another_department(editor, ward):
    other = make_department("หอผู้ป่วยอื่น")
    with pytest.raises(NotFoundError):
        editor.edit_shift(other.id, DAY, ward["morning"].id, add_nurses=[ward["a"].id])


def test_edits_wait_for_the_roster_lock(ward):
    editor = RosterEditor(lock_timeout=0.1)
    moved = assign(ward["b"], ward["morning"], d("2024-03-21"))
    with roster_locks.hold(ward["department"].id):
        with pytest.raises(ConcurrencyError) as excinfo:
            editor.edit_shift(ward["department"].id, DAY, ward["morning"].id, add_nurses=[ward["a"].id])
        # Moving between shifts waits on the same lock.
        with pytest.raises(ConcurrencyError):
            editor.update_assignment(moved.id, shift_id=ward["afternoon"].id)
    assert excinfo.value.message == ROSTER_BUSY_MESSAGE
    assert [(a.staff_id, a.shift_id) for a in active_assignments(ward["department"])] == [
        (ward["b"].id, ward["morning"].id),
    ]
    assert len(roster_locks) == 0


def test_overlapping_shifts_edited_at_once_book_a_nurse_once(app, ward, monkeypatch):
    department_id = ward["department"].id
    nurse_id = ward["a"].id
    long_day = make_shift(ward["department"], ("ยาว", time(9, 0), time(17, 0)))
    shift_ids = [ward["morning"].id, long_day.id]
    PriorityRegistry().list(department_id)

    load = AvailabilityResolver.for_day

    def slow_for_day(*args, **kwargs):
        resolver = load(*args, **kwargs)
        sleep(0.2)
        return resolver

    monkeypatch.setattr(AvailabilityResolver, "for_day", slow_for_day)

    results, errors = [], []

    def edit(shift_id):
        with app.app_context():
            try:
                results.append(RosterEditor().edit_shift(department_id, DAY, shift_id, add_nurses=[nurse_id]))
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=edit, args=(shift_id,)) for shift_id in shift_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert sum(len(result["added"]) for result in results) == 1
    assert [s["reason"] for result in results for s in result["skipped"]] == [OVERLAP]
    db.session.expire_all()
    assert len(active_assignments(ward["department"])) == 1


def test_edits_give_way_to_a_running_generation(editor, ward):
    department_id = ward["department"].id
    with generation_locks.hold((department_id, "2024-03"), blocking=False):
        with pytest.raises(ConcurrencyError) as excinfo:
            editor.edit_shift(department_id, DAY, ward["morning"].id, add_nurses=[ward["a"].id])
    assert excinfo.value.message == GENERATION_BUSY_MESSAGE

    # A night on the last day of March runs into April.
    with generation_locks.hold((department_id, "2024-04"), blocking=False):
        with pytest.raises(ConcurrencyError):
            editor.create_assignment(department_id, "2024-03-31", ward["night"].id, ward["a"].id)
    assert active_assignments(ward["department"]) == []

    editor.create_assignment(department_id, "2024-03-31", ward["night"].id, ward["a"].id)
    assert len(active_assignments(ward["department"])) == 1


def test_check_shift_overlap(editor, ward):
    add_leave(ward["a"], DAY)
    free = editor.check_shift_overlap(ward["department"].id, DAY, ward["morning"].id, ward["a"].id)
    assert free == {"canAssign": True}

    assign(ward["b"], ward["night"], d("2024-03-19"))
    early = make_shift(ward["department"], ("เช้ามืด", time(6, 0), time(14, 0)))
    busy = editor.check_shift_overlap(ward["department"].id, DAY, early.id, ward["b"].id)
    assert busy["canAssign"] is False
    assert busy["reason"] == OVERLAP
    assert busy["message"]


def test_create_assignment(editor, ward):
    assignment = editor.create_assignment(ward["department"].id, "2024-03-20", ward["morning"].id,
                                          ward["a"].id, notes="แทนเวร", actor="head-nurse")
    assert assignment.to_dict()["departmentRole"] == "nurse"
    assert assignment.source == "manual"
    assert assignment.notes == "แทนเวร"


def test_create_overlapping_assignment_is_rejected(editor, ward):
    assign(ward["a"], ward["morning"], DAY)
    with pytest.raises(EligibilityError) as excinfo:
        editor.create_assignment(ward["department"].id, DAY, ward["morning"].id, ward["a"].id)
    assert excinfo.value.reason == OVERLAP
    assert excinfo.value.data == {"reason": OVERLAP}
    assert len(active_assignments(ward["department"])) == 1


def test_create_assignment_with_wrong_role(editor, ward):
    with pytest.raises(EligibilityError) as excinfo:
        editor.create_assignment(ward["department"].id, DAY, ward["morning"].id, ward["a"].id,
                                 department_role="assistant")
    assert excinfo.value.reason == ROLE_MISMATCH


def test_update_assignment_moves_to_a_free_shift(editor, ward):
    assignment = assign(ward["a"], ward["morning"], DAY)
    updated = editor.update_assignment(assignment.id, shift_id=ward["afternoon"].id, notes="ย้ายเวร")
    assert updated.shift_id == ward["afternoon"].id
    assert updated.notes == "ย้ายเวร"


def test_update_assignment_into_an_overlap_is_rejected(editor, ward):
    morning = assign(ward["a"], ward["morning"], DAY)
    assign(ward["a"], ward["afternoon"], DAY)
    long_day = make_shift(ward["department"], ("ยาว", time(11, 0), time(19, 0)))

    with pytest.raises(EligibilityError):
        editor.update_assignment(morning.id, shift_id=long_day.id)
    db.session.expire_all()
    assert db.session.get(ScheduleAssignment, morning.id).shift_id == ward["morning"].id


def test_update_assignment_rejects_unknown_status(editor, ward):
    assignment = assign(ward["a"], ward["morning"], DAY)
    with pytest.raises(ValidationError):
        editor.update_assignment(assignment.id, status="deleted")


def test_remove_assignment_only_cancels(editor, ward):
    assignment = assign(ward["a"], ward["morning"], DAY)
    editor.remove_assignment(assignment.id)
    kept = db.session.get(ScheduleAssignment, assignment.id)
    assert kept.status == STATUS_CANCELLED
    assert kept.cancelled_at is not None


def test_toggle_back_into_an_overlap_is_rejected(editor, ward):
    original = assign(ward["a"], ward["morning"], DAY)
    assert editor.toggle_assignment(original.id).status == STATUS_CANCELLED

    replacement = editor.create_assignment(ward["department"].id, DAY, ward["morning"].id, ward["a"].id)
    assert replacement.is_active

    with pytest.raises(EligibilityError):
        editor.toggle_assignment(original.id)

    editor.toggle_assignment(replacement.id)
    assert editor.toggle_assignment(original.id).status == STATUS_ACTIVE


def test_unknown_assignment(editor, app_ctx):
    with pytest.raises(NotFoundError):
        editor.toggle_assignment(12345)


def test_list_assignments(editor, ward):
    night = assign(ward["a"], ward["night"], DAY)
    morning = assign(ward["b"], ward["morning"], DAY)
    earlier = assign(ward["c"], ward["afternoon"], d("2024-03-02"))
    cancelled = assign(ward["c"], ward["morning"], d("2024-03-03"), status=STATUS_CANCELLED)
    assign(ward["c"], ward["morning"], d("2024-04-01"))

    listed = editor.list_assignments(ward["department"].id, "2024-03")
    assert [a.id for a in listed] == [earlier.id, morning.id, night.id]

    everything = editor.list_assignments(ward["department"].id, "2024-03", include_cancelled=True)
    assert cancelled.id in [a.id for a in everything]


def test_shift_counts(editor, ward):
    assign(ward["a"], ward["morning"], DAY)
    assign(ward["a"], ward["night"], DAY)
    assign(ward["b"], ward["afternoon"], DAY, status=STATUS_CANCELLED)

    counts = {row["staffId"]: row for row in editor.shift_counts(ward["department"].id, "2024-03")}
    assert counts[ward["a"].id] == {
        "staffId": ward["a"].id, "name": "อรุณี", "position": "nurse",
        "total": 2, "night": 1, "hours": 16.0,
    }
    assert counts[ward["b"].id]["total"] == 0
    assert counts[ward["assistant"].id]["position"] == "assistant"
