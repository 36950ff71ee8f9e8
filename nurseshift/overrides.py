"""Manual changes to a roster: edit a shift, reduce staff, single-assignment CRUD.

Every write holds the department roster lock, the same lock a generation
run holds, so two writers never validate against a roster the other is
about to change.  Edits give up at once while a generation run owns the
month.

Nothing is ever deleted; removing someone from a shift cancels the
assignment.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .availability import REASON_MESSAGES, ROLE_MISMATCH, AvailabilityResolver, RosterState
from .errors import ConcurrencyError, EligibilityError, NotFoundError, PersistenceError, ValidationError
from .locks import generation_locks, roster_lock
from .models import (ROLE_ASSISTANT, ROLE_NURSE, ROLES, STATUS_ACTIVE, STATUS_CANCELLED,
                     ScheduleAssignment, Shift, Staff, db)
from .timewindows import parse_date
from .workdays import month_key, parse_month

logger = logging.getLogger(__name__)

GENERATION_BUSY_MESSAGE = 'ระบบกำลังสร้างตารางเวรของเดือนนี้อยู่ กรุณาลองใหม่อีกครั้ง'


class RosterEditor:

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = lock_timeout

    def edit_shift(self, department_id: int, day, shift_id: int, add_nurses: Iterable[int] = (),
                   add_assistants: Iterable[int] = (), remove_nurses: Iterable[int] = (),
                   remove_assistants: Iterable[int] = (), actor: Optional[str] = None) -> Dict[str, Any]:
        """Apply removals, then additions, to one shift on one date.

        Additions that fail the availability checks are skipped and listed
        in ``skipped`` with their reason; they never abort the batch.
        """
        day = parse_date(day)
        shift = self._shift(shift_id, department_id)

        with self._roster_lock(department_id, day):
            resolver = AvailabilityResolver.for_day(department_id, day)
            current = self._active_on(day, shift.id)

            removed = []
            for role, staff_ids in ((ROLE_NURSE, remove_nurses), (ROLE_ASSISTANT, remove_assistants)):
                wanted = {int(staff_id) for staff_id in staff_ids}
                for assignment in current:
                    if assignment.staff_id in wanted and assignment.department_role == role and assignment.is_active:
                        assignment.cancel()
                        resolver.forget(assignment)
                        removed.append(assignment)

            added = []
            skipped = []
            for role, staff_ids in ((ROLE_NURSE, add_nurses), (ROLE_ASSISTANT, add_assistants)):
                for staff_id in staff_ids:
                    staff = db.session.get(Staff, int(staff_id))
                    if staff is not None and staff.role != role:
                        verdict_reason = ROLE_MISMATCH
                    else:
                        verdict_reason = resolver.is_eligible(staff, day, shift).reason
                    if verdict_reason:
                        logger.info(f"Skipping staff {staff_id} for shift {shift.id} on {day}: {verdict_reason}")
                        skipped.append({
                            'staffId': int(staff_id),
                            'role': role,
                            'reason': verdict_reason,
                            'message': REASON_MESSAGES[verdict_reason],
                        })
                        continue
                    assignment = self._new_assignment(department_id, staff.id, shift.id, day, role, actor)
                    db.session.add(assignment)
                    self._commit(f"adding staff {staff.id} to shift {shift.id} on {day}", flush_only=True)
                    resolver.record(assignment, shift)
                    added.append(assignment)

            self._commit(f"editing shift {shift.id} on {day}")

        logger.info(f"Edited shift {shift.id} on {day} by {actor}: +{len(added)} -{len(removed)} "
                    f"skipped={len(skipped)}")
        return {
            'added': [a.to_dict() for a in added],
            'removed': [a.to_dict() for a in removed],
            'skipped': skipped,
        }

    def check_shift_overlap(self, department_id: int, day, shift_id: int, staff_id: int) -> Dict[str, Any]:
        day = parse_date(day)
        shift = self._shift(shift_id, department_id)
        verdict = AvailabilityResolver.for_day(department_id, day).check_overlap(staff_id, day, shift)
        data = {'canAssign': verdict.eligible}
        if verdict.reason:
            data['reason'] = verdict.reason
            data['message'] = verdict.message
        return data

    def reduce_staff(self, day, shift_id: int, nurses_to_reduce: int = 0, assistants_to_reduce: int = 0,
                     actor: Optional[str] = None) -> Dict[str, Any]:
        """Cancel the busiest people on a shift: highest monthly count first, then lowest id."""
        day = parse_date(day)
        reductions = {}
        for role, value in ((ROLE_NURSE, nurses_to_reduce), (ROLE_ASSISTANT, assistants_to_reduce)):
            try:
                count = int(value or 0)
            except (TypeError, ValueError):
                raise ValidationError(detail=f'invalid reduction {value!r}') from None
            if count < 0:
                raise ValidationError('จำนวนที่ต้องการลดต้องไม่ติดลบ', detail=f'negative reduction {count}')
            reductions[role] = count

        shift = self._shift(shift_id)
        with self._roster_lock(shift.department_id, day):
            current = self._active_on(day, shift.id)
            counts = self._month_counts(day, [a.staff_id for a in current])

            removed = []
            for role in ROLES:
                members = [a for a in current if a.department_role == role]
                members.sort(key=lambda a: (-counts.get(a.staff_id, 0), a.staff_id))
                for assignment in members[:reductions[role]]:
                    assignment.cancel()
                    removed.append(assignment)

            self._commit(f"reducing staff on shift {shift.id} {day}")

        logger.info(f"Reduced shift {shift.id} on {day} by {actor}: cancelled {len(removed)} assignments")
        return {'removed': [a.to_dict() for a in removed]}

    # Single assignments

    def list_assignments(self, department_id: int, month: str, include_cancelled: bool = False
                         ) -> List[ScheduleAssignment]:
        first, last = parse_month(month)
        query = (ScheduleAssignment.query
                 .join(Shift, ScheduleAssignment.shift_id == Shift.id)
                 .filter(ScheduleAssignment.department_id == department_id,
                         ScheduleAssignment.schedule_date >= first,
                         ScheduleAssignment.schedule_date <= last))
        if not include_cancelled:
            query = query.filter(ScheduleAssignment.status == STATUS_ACTIVE)
        return query.order_by(ScheduleAssignment.schedule_date, Shift.start_time,
                              ScheduleAssignment.staff_id).all()

    def get_assignment(self, assignment_id: int) -> ScheduleAssignment:
        assignment = db.session.get(ScheduleAssignment, assignment_id)
        if assignment is None:
            raise NotFoundError('ไม่พบรายการเวรที่ระบุ', detail=f'assignment {assignment_id} not found')
        return assignment

    def create_assignment(self, department_id: int, day, shift_id: int, staff_id: int,
                          department_role: Optional[str] = None, notes: Optional[str] = None,
                          actor: Optional[str] = None) -> ScheduleAssignment:
        day = parse_date(day)
        shift = self._shift(shift_id, department_id)
        staff = db.session.get(Staff, staff_id)
        role = department_role or (staff.role if staff is not None else ROLE_NURSE)
        if role not in ROLES:
            raise ValidationError(detail=f'unknown role {role!r}')

        with self._roster_lock(department_id, day):
            if staff is not None and staff.role != role:
                raise EligibilityError(ROLE_MISMATCH, REASON_MESSAGES[ROLE_MISMATCH])
            verdict = AvailabilityResolver.for_day(department_id, day).is_eligible(staff, day, shift)
            if not verdict.eligible:
                raise EligibilityError(verdict.reason, verdict.message)

            assignment = self._new_assignment(department_id, staff.id, shift.id, day, role, actor)
            assignment.notes = notes
            db.session.add(assignment)
            self._commit(f"creating assignment for staff {staff_id}")

        logger.info(f"Created assignment {assignment.id}: staff {staff_id} shift {shift.id} on {day} by {actor}")
        return assignment

    def update_assignment(self, assignment_id: int, status: Optional[str] = None, notes: Optional[str] = None,
                          shift_id: Optional[int] = None, actor: Optional[str] = None) -> ScheduleAssignment:
        assignment = self.get_assignment(assignment_id)
        if status is not None and status not in (STATUS_ACTIVE, STATUS_CANCELLED):
            raise ValidationError(detail=f'unknown status {status!r}')

        target_shift = assignment.shift
        if shift_id is not None and int(shift_id) != assignment.shift_id:
            target_shift = self._shift(shift_id, assignment.department_id)
        becomes_active = status == STATUS_ACTIVE if status is not None else assignment.is_active

        with self._roster_lock(assignment.department_id, assignment.schedule_date):
            needs_check = becomes_active and (target_shift.id != assignment.shift_id or not assignment.is_active)
            if needs_check:
                resolver = AvailabilityResolver.for_day(assignment.department_id, assignment.schedule_date)
                verdict = resolver.is_eligible(assignment.staff_id, assignment.schedule_date, target_shift,
                                               ignore_assignment_id=assignment.id)
                if not verdict.eligible:
                    raise EligibilityError(verdict.reason, verdict.message)

            assignment.shift_id = target_shift.id
            if notes is not None:
                assignment.notes = notes
            if status == STATUS_CANCELLED and assignment.is_active:
                assignment.cancel()
            elif status == STATUS_ACTIVE and not assignment.is_active:
                assignment.status = STATUS_ACTIVE
                assignment.cancelled_at = None
            self._commit(f"updating assignment {assignment_id}")

        logger.info(f"Updated assignment {assignment_id} by {actor}: status={assignment.status} "
                    f"shift={assignment.shift_id}")
        return assignment

    def remove_assignment(self, assignment_id: int, actor: Optional[str] = None) -> ScheduleAssignment:
        return self.update_assignment(assignment_id, status=STATUS_CANCELLED, actor=actor)

    def toggle_assignment(self, assignment_id: int, actor: Optional[str] = None) -> ScheduleAssignment:
        assignment = self.get_assignment(assignment_id)
        status = STATUS_CANCELLED if assignment.is_active else STATUS_ACTIVE
        return self.update_assignment(assignment_id, status=status, actor=actor)

    def shift_counts(self, department_id: int, month: str) -> List[Dict[str, Any]]:
        first, last = parse_month(month)
        state = RosterState.load(department_id, first, last, padding=0)
        staff = Staff.query.filter_by(department_id=department_id, is_active=True).order_by(Staff.id).all()
        return [
            {
                'staffId': s.id,
                'name': s.name,
                'position': s.role,
                'total': state.shift_count(s.id, first, last),
                'night': state.shift_count(s.id, first, last, night_only=True),
                'hours': round(state.work_minutes(s.id, first, last) / 60, 2),
            }
            for s in staff
        ]

    # Helpers

    def _shift(self, shift_id, department_id: Optional[int] = None) -> Shift:
        shift = db.session.get(Shift, int(shift_id)) if shift_id is not None else None
        if shift is None or (department_id is not None and shift.department_id != int(department_id)):
            raise NotFoundError('ไม่พบเวรที่ระบุ', detail=f'shift {shift_id} not found')
        return shift

    def _roster_lock(self, department_id: int, day: date):
        department_id = int(department_id)
        # Overnight shifts and streaks reach into the neighbouring days, and so into their months.
        months = sorted({month_key(day + timedelta(days=offset)) for offset in (-1, 0, 1)})
        for month in months:
            if generation_locks.is_held((department_id, month)):
                raise ConcurrencyError(GENERATION_BUSY_MESSAGE,
                                       detail=f'generation in progress for department {department_id} {month}')
        return roster_lock(department_id, timeout=self.lock_timeout)

    def _active_on(self, day: date, shift_id: int) -> List[ScheduleAssignment]:
        return (ScheduleAssignment.query
                .filter_by(schedule_date=day, shift_id=shift_id, status=STATUS_ACTIVE)
                .order_by(ScheduleAssignment.staff_id)
                .all())

    def _month_counts(self, day: date, staff_ids: List[int]) -> Dict[int, int]:
        if not staff_ids:
            return {}
        first, last = parse_month(day.strftime('%Y-%m'))
        rows = (db.session.query(ScheduleAssignment.staff_id, func.count(ScheduleAssignment.id))
                .filter(ScheduleAssignment.staff_id.in_(staff_ids),
                        ScheduleAssignment.status == STATUS_ACTIVE,
                        ScheduleAssignment.schedule_date >= first,
                        ScheduleAssignment.schedule_date <= last)
                .group_by(ScheduleAssignment.staff_id)
                .all())
        return {staff_id: count for staff_id, count in rows}

    def _new_assignment(self, department_id, staff_id, shift_id, day, role, actor) -> ScheduleAssignment:
        return ScheduleAssignment(
            department_id=department_id,
            staff_id=staff_id,
            shift_id=shift_id,
            schedule_date=day,
            department_role=role,
            status=STATUS_ACTIVE,
            source='manual',
            created_by=actor,
        )

    def _commit(self, action: str, flush_only: bool = False) -> None:
        try:
            if flush_only:
                db.session.flush()
            else:
                db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error {action}: {str(e)}")
            raise PersistenceError(detail=str(e)) from e
