"""Database models for the nurse shift scheduling service.

Departments own their shift definitions, working days, holidays, staff and
scheduling priorities.  These are configured ahead of time and read by the
scheduling core.  ``ScheduleAssignment`` rows are the only records the core
writes: the generators and the manual override layer create them, and they
are cancelled (never deleted) when removed from a roster.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ROLE_NURSE = 'nurse'
ROLE_ASSISTANT = 'assistant'
ROLES = (ROLE_NURSE, ROLE_ASSISTANT)

STATUS_ACTIVE = 'active'
STATUS_CANCELLED = 'cancelled'

LEAVE_APPROVED = 'approved'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_position(position: str | None) -> str:
    """Map a free-form staff position onto ``nurse`` or ``assistant``.

    Positions are entered by department admins, often in Thai
    ("ผู้ช่วยพยาบาล").  Anything that is not an assistant is a nurse.
    """
    value = (position or '').strip()
    if value.lower() == ROLE_ASSISTANT or 'ผู้ช่วย' in value:
        return ROLE_ASSISTANT
    return ROLE_NURSE


def _clock(value) -> str | None:
    return value.strftime('%H:%M') if value is not None else None


class Department(db.Model):
    __tablename__ = 'departments'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    max_nurses = db.Column(db.Integer, default=0, nullable=False)
    max_assistants = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    shifts = db.relationship('Shift', backref='department', lazy=True)
    working_days = db.relationship('WorkingDay', backref='department', lazy=True)
    holidays = db.relationship('Holiday', backref='department', lazy=True)
    staff = db.relationship('Staff', backref='department', lazy=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'maxNurses': self.max_nurses,
            'maxAssistants': self.max_assistants,
            'isActive': self.is_active,
        }


class Shift(db.Model):
    """A recurring daily shift of a department.

    Attributes
    ----------
    start_time, end_time : datetime.time
        Wall clock bounds.  When ``end_time <= start_time`` the shift runs
        past midnight and ends on the following calendar day.
    required_nurses, required_assistants : int
        Headcount the generators try to fill for every working day.
    shift_type : str
        Optional label (``morning``, ``afternoon``, ``night``) used when
        classifying night shifts.
    is_night : bool or None
        Explicit night flag; when unset the classification falls back to
        the type, the name and finally the clock times.
    """
    __tablename__ = 'shifts'

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    shift_type = db.Column(db.String(16), nullable=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    required_nurses = db.Column(db.Integer, default=0, nullable=False)
    required_assistants = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_night = db.Column(db.Boolean, nullable=True)
    color = db.Column(db.String(16), default='#3B82F6')
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def required_for(self, role: str) -> int:
        return self.required_assistants if role == ROLE_ASSISTANT else self.required_nurses

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'departmentId': self.department_id,
            'name': self.name,
            'type': self.shift_type,
            'startTime': _clock(self.start_time),
            'endTime': _clock(self.end_time),
            'requiredNurse': self.required_nurses,
            'requiredAsst': self.required_assistants,
            'isActive': self.is_active,
            'color': self.color,
        }


class WorkingDay(db.Model):
    __tablename__ = 'working_days'

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=False, index=True)
    day_of_week = db.Column(db.Integer, nullable=False)  # 0 = Sunday .. 6 = Saturday
    is_working_day = db.Column(db.Boolean, default=True, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('department_id', 'day_of_week', name='uq_working_day'),
    )


class Holiday(db.Model):
    __tablename__ = 'holidays'

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)

    def covers(self, day) -> bool:
        return self.start_date <= day <= self.end_date


class Staff(db.Model):
    __tablename__ = 'staff'

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    position = db.Column(db.String(32), default=ROLE_NURSE, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    leaves = db.relationship('LeaveRecord', backref='staff', lazy=True)

    @property
    def role(self) -> str:
        return normalize_position(self.position)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'position': self.role}


class LeaveRecord(db.Model):
    __tablename__ = 'leave_records'

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey('staff.id'), nullable=False, index=True)
    leave_type = db.Column(db.String(16), default='personal', nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(16), default='pending', nullable=False)  # pending, approved, rejected, cancelled
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)


class Priority(db.Model):
    """A scheduling rule a department can toggle and rank.

    ``order`` is 1-based and dense within a department; lower numbers take
    precedence.  Rules with a ``setting_type`` carry a bounded integer
    ``setting_value`` (for example the maximum number of consecutive night
    shifts).
    """
    __tablename__ = 'scheduling_priorities'

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    order = db.Column('priority_order', db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    setting_type = db.Column(db.String(48), nullable=True)
    setting_value = db.Column(db.Integer, nullable=True)
    setting_unit = db.Column(db.String(16), nullable=True)
    setting_label = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint('department_id', 'priority_order', name='uq_priority_order'),
    )

    @property
    def has_settings(self) -> bool:
        return self.setting_type is not None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'departmentId': self.department_id,
            'name': self.name,
            'description': self.description or '',
            'order': self.order,
            'isActive': self.is_active,
            'hasSettings': self.has_settings,
        }
        if self.has_settings:
            data.update({
                'settingType': self.setting_type,
                'settingValue': self.setting_value,
                'settingUnit': self.setting_unit,
                'settingLabel': self.setting_label,
            })
        return data


class ScheduleAssignment(db.Model):
    """One staff member working one shift on one date.

    ``department_role`` freezes the role the person was scheduled in, so a
    later change of position does not rewrite history.  Removing someone
    from a roster sets ``status`` to ``cancelled``; cancelled rows are
    ignored by overlap checks and fairness counts.
    """
    __tablename__ = 'schedule_assignments'

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey('departments.id'), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey('staff.id'), nullable=False, index=True)
    shift_id = db.Column(db.Integer, db.ForeignKey('shifts.id'), nullable=False, index=True)
    schedule_date = db.Column(db.Date, nullable=False, index=True)
    department_role = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), default=STATUS_ACTIVE, nullable=False, index=True)
    notes = db.Column(db.Text, nullable=True)
    source = db.Column(db.String(16), default='manual', nullable=False)  # auto, optimizer, manual
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    staff = db.relationship('Staff', backref=db.backref('assignments', lazy=True))
    shift = db.relationship('Shift', backref=db.backref('assignments', lazy=True))

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def cancel(self) -> None:
        self.status = STATUS_CANCELLED
        self.cancelled_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'departmentId': self.department_id,
            'staffId': self.staff_id,
            'staffName': self.staff.name if self.staff else None,
            'shiftId': self.shift_id,
            'shiftName': self.shift.name if self.shift else None,
            'date': self.schedule_date.isoformat(),
            'departmentRole': self.department_role,
            'status': self.status,
            'notes': self.notes,
            'source': self.source,
        }
