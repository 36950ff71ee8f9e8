"""Small builders for test data.  All of them commit."""

from datetime import date, time

from nurseshift.models import (LEAVE_APPROVED, STATUS_ACTIVE, Department, Holiday, LeaveRecord,
                               ScheduleAssignment, Shift, Staff, WorkingDay, db)
from nurseshift.priorities import PriorityRegistry

MORNING = ("เวรเช้า", time(7, 0), time(15, 0))
AFTERNOON = ("เวรบ่าย", time(15, 0), time(23, 0))
NIGHT = ("เวรดึก", time(23, 0), time(7, 0))


def make_department(name="หอผู้ป่วยทดสอบ"):
    department = Department(name=name, max_nurses=10, max_assistants=5)
    db.session.add(department)
    db.session.commit()
    return department


def make_shift(department, times=MORNING, nurses=2, assistants=1, **kwargs):
    name, start, end = times
    shift = Shift(
        department_id=department.id,
        name=name,
        start_time=start,
        end_time=end,
        required_nurses=nurses,
        required_assistants=assistants,
        **kwargs,
    )
    db.session.add(shift)
    db.session.commit()
    return shift


def make_staff(department, name, position="nurse", is_active=True):
    staff = Staff(department_id=department.id, name=name, position=position, is_active=is_active)
    db.session.add(staff)
    db.session.commit()
    return staff


def add_leave(staff, start, end=None, status=LEAVE_APPROVED):
    leave = LeaveRecord(staff_id=staff.id, start_date=start, end_date=end or start, status=status)
    db.session.add(leave)
    db.session.commit()
    return leave


def add_holiday(department, start, end=None, name="วันหยุดนักขัตฤกษ์"):
    holiday = Holiday(department_id=department.id, name=name, start_date=start, end_date=end or start)
    db.session.add(holiday)
    db.session.commit()
    return holiday


def set_working_day(department, day_of_week, is_working):
    db.session.add(WorkingDay(department_id=department.id, day_of_week=day_of_week,
                              is_working_day=is_working))
    db.session.commit()


def assign(staff, shift, day, status=STATUS_ACTIVE, role=None):
    assignment = ScheduleAssignment(
        department_id=shift.department_id,
        staff_id=staff.id,
        shift_id=shift.id,
        schedule_date=day,
        department_role=role or staff.role,
        status=status,
        source="manual",
    )
    db.session.add(assignment)
    db.session.commit()
    return assignment


def set_priority(department, setting_type, value=None, is_active=None):
    registry = PriorityRegistry()
    priority = next(p for p in registry.list(department.id) if p.setting_type == setting_type)
    return registry.update(priority.id, is_active=is_active, setting_value=value)


def active_assignments(department=None):
    query = ScheduleAssignment.query.filter_by(status=STATUS_ACTIVE)
    if department is not None:
        query = query.filter_by(department_id=department.id)
    return query.all()


def d(text):
    return date.fromisoformat(text)
