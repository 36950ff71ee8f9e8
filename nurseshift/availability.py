"""Staff availability: who may work a given shift on a given date.

``RosterState`` holds the active assignments, approved leave and work
calendar of one department for a window of dates.  It is loaded once and
kept current with ``record``/``forget`` while a generation run or a roster
edit persists changes, so every check sees the assignments made earlier in
the same run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, NamedTuple, Optional, Set

from .models import (LEAVE_APPROVED, STATUS_ACTIVE, LeaveRecord, ScheduleAssignment, Shift, Staff,
                     db)
from .priorities import (MAX_CONSECUTIVE_NIGHT_SHIFTS, MAX_CONSECUTIVE_SHIFTS,
                         MAX_CONSECUTIVE_WORK_HOURS, PriorityRegistry, PriorityRules)
from .timewindows import Window, contiguous_block, is_night_shift, window_for, windows_overlap
from .workdays import WorkCalendar

logger = logging.getLogger(__name__)

STAFF_UNAVAILABLE = 'staff-unavailable'
SHIFT_UNAVAILABLE = 'shift-unavailable'
NON_WORKING_DAY = 'non-working-day'
ON_LEAVE = 'on-leave'
OVERLAP = 'overlap'
CONSECUTIVE_SHIFTS = 'max-consecutive-shifts'
CONSECUTIVE_NIGHT_SHIFTS = 'max-consecutive-night-shifts'
CONSECUTIVE_WORK_HOURS = 'max-consecutive-work-hours'
ROLE_MISMATCH = 'role-mismatch'

REASON_MESSAGES = {
    STAFF_UNAVAILABLE: 'ไม่พบพนักงาน หรือพนักงานไม่ได้อยู่ในแผนกนี้',
    SHIFT_UNAVAILABLE: 'ไม่พบเวร หรือเวรนี้ถูกปิดใช้งาน',
    NON_WORKING_DAY: 'วันนี้ไม่ใช่วันทำการของแผนก',
    ON_LEAVE: 'พนักงานลางานในวันนี้',
    OVERLAP: 'พนักงานมีเวรที่เวลาทับซ้อนกันอยู่แล้ว',
    CONSECUTIVE_SHIFTS: 'เกินจำนวนวันทำงานติดต่อกันสูงสุด',
    CONSECUTIVE_NIGHT_SHIFTS: 'เกินจำนวนเวรดึกติดต่อกันสูงสุด',
    CONSECUTIVE_WORK_HOURS: 'เกินจำนวนชั่วโมงทำงานต่อเนื่องสูงสุด',
    ROLE_MISMATCH: 'ตำแหน่งของพนักงานไม่ตรงกับตำแหน่งที่ต้องการ',
}

# Longest look-around any streak or continuous-hours rule needs, in days.
STATE_PADDING_DAYS = 11


class Eligibility(NamedTuple):
    eligible: bool
    reason: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return REASON_MESSAGES.get(self.reason) if self.reason else None

    def to_dict(self):
        data = {'eligible': self.eligible}
        if self.reason:
            data['reason'] = self.reason
            data['message'] = self.message
        return data


ELIGIBLE = Eligibility(True)


class Booking(NamedTuple):
    assignment_id: Optional[int]
    day: date
    shift_id: int
    window: Window
    is_night: bool
    minutes: int


class RosterState:
    """Active bookings and approved leave of a department's staff."""

    def __init__(self, department_id: int, start: date, end: date, calendar: WorkCalendar):
        self.department_id = department_id
        self.start = start
        self.end = end
        self.calendar = calendar
        self._bookings: Dict[int, List[Booking]] = defaultdict(list)
        self._leaves: Dict[int, List[tuple]] = defaultdict(list)

    @classmethod
    def load(cls, department_id: int, start: date, end: date,
             padding: int = STATE_PADDING_DAYS) -> 'RosterState':
        lo = start - timedelta(days=padding)
        hi = end + timedelta(days=padding)
        state = cls(department_id, lo, hi, WorkCalendar.for_department(department_id))

        staff_ids = db.session.query(Staff.id).filter(Staff.department_id == department_id)
        assignments = (ScheduleAssignment.query
                       .filter(ScheduleAssignment.staff_id.in_(staff_ids),
                               ScheduleAssignment.status == STATUS_ACTIVE,
                               ScheduleAssignment.schedule_date >= lo,
                               ScheduleAssignment.schedule_date <= hi)
                       .all())
        for assignment in assignments:
            state.record(assignment)

        leaves = (LeaveRecord.query
                  .filter(LeaveRecord.staff_id.in_(staff_ids),
                          LeaveRecord.status == LEAVE_APPROVED,
                          LeaveRecord.start_date <= hi,
                          LeaveRecord.end_date >= lo)
                  .all())
        for leave in leaves:
            state._leaves[leave.staff_id].append((leave.start_date, leave.end_date))

        logger.debug(f"Loaded roster state for department {department_id} {lo}..{hi}: "
                     f"{len(assignments)} assignments, {len(leaves)} approved leaves")
        return state

    def record(self, assignment: ScheduleAssignment, shift: Optional[Shift] = None) -> None:
        shift = shift or assignment.shift
        day = assignment.schedule_date
        window = window_for(shift, day)
        self._bookings[assignment.staff_id].append(
            Booking(assignment.id, day, shift.id, window, is_night_shift(shift), window.minutes)
        )

    def forget(self, assignment: ScheduleAssignment) -> None:
        bookings = self._bookings.get(assignment.staff_id, [])
        self._bookings[assignment.staff_id] = [b for b in bookings if b.assignment_id != assignment.id]

    def bookings(self, staff_id: int, ignore_assignment_id: Optional[int] = None) -> List[Booking]:
        bookings = self._bookings.get(staff_id, [])
        if ignore_assignment_id is None:
            return bookings
        return [b for b in bookings if b.assignment_id != ignore_assignment_id]

    def on_leave(self, staff_id: int, day: date) -> bool:
        return any(start <= day <= end for start, end in self._leaves.get(staff_id, []))

    def worked_days(self, staff_id: int, night_only: bool = False,
                    ignore_assignment_id: Optional[int] = None) -> Set[date]:
        return {b.day for b in self.bookings(staff_id, ignore_assignment_id) if b.is_night or not night_only}

    def shift_count(self, staff_id: int, start: date, end: date, night_only: bool = False,
                    shift_id: Optional[int] = None) -> int:
        return sum(1 for b in self.bookings(staff_id)
                   if start <= b.day <= end and (b.is_night or not night_only)
                   and (shift_id is None or b.shift_id == shift_id))

    def work_minutes(self, staff_id: int, start: date, end: date) -> int:
        return sum(b.minutes for b in self.bookings(staff_id) if start <= b.day <= end)


def streak_through(days: Set[date], day: date) -> int:
    """Consecutive days in ``days`` running through ``day`` (which counts as worked)."""
    length = 1
    current = day - timedelta(days=1)
    while current in days:
        length += 1
        current -= timedelta(days=1)
    current = day + timedelta(days=1)
    while current in days:
        length += 1
        current += timedelta(days=1)
    return length


class AvailabilityResolver:
    """Answers eligibility questions against a ``RosterState``.

    Parameters
    ----------
    rules : PriorityRules
        Active priorities of the department; only these limits apply.
    state : RosterState
        Current bookings.  Must cover the dates being asked about plus
        ``STATE_PADDING_DAYS`` on either side.
    """

    def __init__(self, rules: PriorityRules, state: RosterState):
        self.rules = rules
        self.state = state

    @classmethod
    def for_window(cls, department_id: int, start: date, end: date,
                   registry: Optional[PriorityRegistry] = None) -> 'AvailabilityResolver':
        registry = registry or PriorityRegistry()
        return cls(registry.rules(department_id), RosterState.load(department_id, start, end))

    @classmethod
    def for_day(cls, department_id: int, day: date) -> 'AvailabilityResolver':
        return cls.for_window(department_id, day, day)

    @property
    def department_id(self) -> int:
        return self.state.department_id

    def record(self, assignment: ScheduleAssignment, shift: Optional[Shift] = None) -> None:
        self.state.record(assignment, shift)

    def forget(self, assignment: ScheduleAssignment) -> None:
        self.state.forget(assignment)

    def is_eligible(self, staff, day: date, shift, ignore_assignment_id: Optional[int] = None) -> Eligibility:
        staff = _resolve(Staff, staff)
        shift = _resolve(Shift, shift)

        if staff is None or not staff.is_active or staff.department_id != self.department_id:
            return Eligibility(False, STAFF_UNAVAILABLE)
        if shift is None or not shift.is_active or shift.department_id != self.department_id:
            return Eligibility(False, SHIFT_UNAVAILABLE)
        if not self.state.calendar.is_working_day(day):
            return Eligibility(False, NON_WORKING_DAY)
        if self.state.on_leave(staff.id, day):
            return Eligibility(False, ON_LEAVE)

        overlap = self._overlap(staff.id, day, shift, ignore_assignment_id)
        if not overlap.eligible:
            return overlap

        limit = self.rules.setting(MAX_CONSECUTIVE_SHIFTS)
        if limit is not None:
            worked = self.state.worked_days(staff.id, ignore_assignment_id=ignore_assignment_id)
            if streak_through(worked, day) > limit:
                return Eligibility(False, CONSECUTIVE_SHIFTS)

        limit = self.rules.setting(MAX_CONSECUTIVE_NIGHT_SHIFTS)
        if limit is not None and is_night_shift(shift):
            nights = self.state.worked_days(staff.id, night_only=True, ignore_assignment_id=ignore_assignment_id)
            if streak_through(nights, day) > limit:
                return Eligibility(False, CONSECUTIVE_NIGHT_SHIFTS)

        limit = self.rules.setting(MAX_CONSECUTIVE_WORK_HOURS)
        if limit is not None:
            windows = [b.window for b in self.state.bookings(staff.id, ignore_assignment_id)]
            block = contiguous_block(windows, window_for(shift, day))
            if block.minutes > limit * 60:
                return Eligibility(False, CONSECUTIVE_WORK_HOURS)

        return ELIGIBLE

    def check_overlap(self, staff, day: date, shift, ignore_assignment_id: Optional[int] = None) -> Eligibility:
        """Only the time-overlap check, for pre-validating a pick in the UI."""
        staff = _resolve(Staff, staff)
        shift = _resolve(Shift, shift)
        if shift is None:
            return Eligibility(False, SHIFT_UNAVAILABLE)
        if staff is None:
            return Eligibility(False, STAFF_UNAVAILABLE)
        return self._overlap(staff.id, day, shift, ignore_assignment_id)

    def available_staff(self, day: date, shift, role: Optional[str] = None) -> List[Staff]:
        shift = _resolve(Shift, shift)
        query = Staff.query.filter_by(department_id=self.department_id, is_active=True)
        candidates = [s for s in query.order_by(Staff.id).all() if role is None or s.role == role]
        return [s for s in candidates if self.is_eligible(s, day, shift).eligible]

    def _overlap(self, staff_id: int, day: date, shift: Shift,
                 ignore_assignment_id: Optional[int]) -> Eligibility:
        candidate = window_for(shift, day)
        for booking in self.state.bookings(staff_id, ignore_assignment_id):
            if abs((booking.day - day).days) > 1:
                continue
            if windows_overlap(booking.window, candidate):
                return Eligibility(False, OVERLAP)
        return ELIGIBLE


def _resolve(model, value):
    if value is None or isinstance(value, model):
        return value
    return db.session.get(model, int(value))
