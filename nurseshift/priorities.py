"""Priority registry: the ordered, toggleable rule list of a department.

Priorities are ranked 1..N inside a department (lower number wins when two
rules pull in different directions).  Only active priorities are visible to
the availability resolver and the generators, through ``PriorityRules``.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import NotFoundError, PersistenceError, ValidationError
from .models import Priority, db

logger = logging.getLogger(__name__)

MAX_SHIFT_TYPE_DIFFERENCE = 'max_shift_type_difference'
MAX_CONSECUTIVE_NIGHT_SHIFTS = 'max_consecutive_night_shifts'
MAX_CONSECUTIVE_SHIFTS = 'max_consecutive_shifts'
MAX_CONSECUTIVE_WORK_HOURS = 'max_consecutive_work_hours'
MAX_TOTAL_WORK_HOURS_DIFFERENCE = 'max_total_work_hours_difference'

# Inclusive bounds accepted for each setting type.
SETTING_RANGES: Dict[str, Tuple[int, int]] = {
    MAX_SHIFT_TYPE_DIFFERENCE: (0, 5),
    MAX_CONSECUTIVE_NIGHT_SHIFTS: (1, 5),
    MAX_CONSECUTIVE_SHIFTS: (1, 10),
    MAX_CONSECUTIVE_WORK_HOURS: (12, 72),
    MAX_TOTAL_WORK_HOURS_DIFFERENCE: (8, 80),
}

# name, description, setting type, default value, unit, label
DEFAULT_PRIORITIES = [
    ('วันที่ขอหยุด',
     'ระบบจะหลีกเลี่ยงการจัดเวรในวันที่พนักงานขอหยุด',
     None, None, None, None),
    ('จำนวนเวรเท่ากันในแต่ละประเภท',
     'กระจายจำนวนเวรแต่ละประเภท (เช้า/บ่าย/ดึก) ให้แต่ละคนได้เท่าๆ กัน',
     MAX_SHIFT_TYPE_DIFFERENCE, 2, 'เวร', 'ความแตกต่างจำนวนเวรแต่ละประเภทสูงสุด'),
    ('จำนวนเวรดึกติดต่อกัน',
     'จำกัดจำนวนเวรดึกที่พนักงานคนหนึ่งทำติดกันไม่เกิน X วัน',
     MAX_CONSECUTIVE_NIGHT_SHIFTS, 2, 'วัน', 'จำนวนเวรดึกติดกันสูงสุด'),
    ('จำนวนเวรติดต่อกัน',
     'จำกัดจำนวนเวรทุกประเภทที่พนักงานคนหนึ่งทำติดกันไม่เกิน X วัน',
     MAX_CONSECUTIVE_SHIFTS, 4, 'วัน', 'จำนวนเวรติดต่อกันสูงสุด'),
    ('จำนวนชั่วโมงทำงานสูงสุดติดต่อกันโดยไม่พัก',
     'จำกัดจำนวนชั่วโมงการทำงานต่อเนื่องโดยไม่พักไม่เกิน X ชั่วโมง',
     MAX_CONSECUTIVE_WORK_HOURS, 48, 'ชั่วโมง', 'จำนวนชั่วโมงทำงานติดต่อกันสูงสุด'),
    ('จำนวนชั่วโมงการทำงานทั้งหมด',
     'จำกัดความแตกต่างของชั่วโมงทำงานรวมระหว่างบุคคลไม่เกิน X ชั่วโมง',
     MAX_TOTAL_WORK_HOURS_DIFFERENCE, 16, 'ชั่วโมง', 'ความแตกต่างชั่วโมงการทำงานรวมสูงสุดระหว่างบุคคล'),
]


class PriorityRules:
    """Read-only view over the active priorities of a department."""

    def __init__(self, priorities: List[Priority]):
        self.priorities = sorted((p for p in priorities if p.is_active), key=lambda p: p.order)
        self._by_type = {p.setting_type: p for p in self.priorities if p.setting_type}

    def is_active(self, setting_type: str) -> bool:
        return setting_type in self._by_type

    def setting(self, setting_type: str) -> Optional[int]:
        priority = self._by_type.get(setting_type)
        return priority.setting_value if priority is not None else None

    def rank(self, setting_type: str) -> Optional[int]:
        priority = self._by_type.get(setting_type)
        return priority.order if priority is not None else None

    def outranks(self, first: str, second: str) -> bool:
        """True when ``first`` is active and takes precedence over ``second``."""
        first_rank = self.rank(first)
        if first_rank is None:
            return False
        second_rank = self.rank(second)
        return second_rank is None or first_rank < second_rank


def validate_setting_value(priority: Priority, value) -> int:
    if priority.setting_type is None:
        raise ValidationError('ลำดับความสำคัญนี้ไม่มีค่าที่ตั้งได้',
                              detail=f'priority {priority.id} has no setting')
    if isinstance(value, bool):
        raise ValidationError(detail=f'invalid setting value {value!r}')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(detail=f'invalid setting value {value!r}') from None
    if number != value and str(number) != str(value).strip():
        raise ValidationError(detail=f'setting value must be an integer, got {value!r}')
    low, high = SETTING_RANGES[priority.setting_type]
    if not low <= number <= high:
        raise ValidationError(
            f'ค่าที่ตั้งต้องอยู่ระหว่าง {low} ถึง {high}',
            detail=f'{priority.setting_type}={number} outside [{low}, {high}]',
        )
    return number


class PriorityRegistry:
    """List, update and reorder the priorities of a department."""

    def list(self, department_id: int) -> List[Priority]:
        items = self._ordered(department_id)
        if items:
            return items
        self._seed_defaults(department_id)
        return self._ordered(department_id)

    def rules(self, department_id: int) -> PriorityRules:
        return PriorityRules(self.list(department_id))

    def get(self, priority_id: int) -> Priority:
        priority = db.session.get(Priority, priority_id)
        if priority is None:
            raise NotFoundError('ไม่พบลำดับความสำคัญที่ระบุ', detail=f'priority {priority_id} not found')
        return priority

    def update(self, priority_id: int, is_active: Optional[bool] = None, order: Optional[int] = None,
               setting_value=None) -> Priority:
        priority = self.get(priority_id)

        # Validate everything before touching the row so a rejected update changes nothing.
        new_value = None
        if setting_value is not None:
            new_value = validate_setting_value(priority, setting_value)
        new_order = None
        if order is not None:
            try:
                new_order = int(order)
            except (TypeError, ValueError):
                raise ValidationError(detail=f'invalid order {order!r}') from None
        if is_active is not None and not isinstance(is_active, bool):
            raise ValidationError(detail=f'isActive must be a boolean, got {is_active!r}')

        try:
            if is_active is not None:
                priority.is_active = is_active
            if new_value is not None:
                priority.setting_value = new_value
            if new_order is not None and new_order != priority.order:
                self._move(priority, new_order)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error updating priority {priority_id}: {str(e)}")
            raise PersistenceError(detail=str(e)) from e

        logger.info(f"Updated priority {priority.id} ({priority.name}): order={priority.order} "
                    f"active={priority.is_active} value={priority.setting_value}")
        return priority

    def swap(self, first_id: int, second_id: int) -> Tuple[Priority, Priority]:
        first = self.get(first_id)
        second = self.get(second_id)
        if first.department_id != second.department_id:
            raise ValidationError('ลำดับความสำคัญอยู่คนละแผนก',
                                  detail='priorities belong to different departments')
        if first.id == second.id:
            return first, second

        first_order, second_order = first.order, second.order
        try:
            # Park the first row on a free value so the unique (department, order) index holds throughout.
            first.order = self._parking_order(first.department_id)
            db.session.flush()
            second.order = first_order
            db.session.flush()
            first.order = second_order
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error swapping priorities {first_id} and {second_id}: {str(e)}")
            raise PersistenceError(detail=str(e)) from e

        logger.info(f"Swapped priority order {first.id}<->{second.id} ({first_order}<->{second_order})")
        return first, second

    def _ordered(self, department_id: int) -> List[Priority]:
        return (Priority.query
                .filter_by(department_id=department_id)
                .order_by(Priority.order.asc(), Priority.id.asc())
                .all())

    def _parking_order(self, department_id: int) -> int:
        lowest = db.session.query(db.func.min(Priority.order)).filter_by(department_id=department_id).scalar()
        return min(lowest or 0, 0) - 1

    def _move(self, priority: Priority, new_order: int) -> None:
        items = [p for p in self._ordered(priority.department_id) if p.id != priority.id]
        position = min(max(new_order, 1), len(items) + 1)
        items.insert(position - 1, priority)
        for index, item in enumerate(items, start=1):
            item.order = -index
        db.session.flush()
        for index, item in enumerate(items, start=1):
            item.order = index
        db.session.flush()

    def _seed_defaults(self, department_id: int) -> None:
        for order, (name, description, setting_type, value, unit, label) in enumerate(DEFAULT_PRIORITIES, start=1):
            db.session.add(Priority(
                department_id=department_id,
                name=name,
                description=description,
                order=order,
                is_active=True,
                setting_type=setting_type,
                setting_value=value,
                setting_unit=unit,
                setting_label=label,
            ))
        try:
            db.session.commit()
        except IntegrityError:
            # Another request seeded the same department first; its rows win.
            db.session.rollback()
            logger.info(f"Default priorities for department {department_id} were seeded concurrently")
            return
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Error seeding default priorities for department {department_id}: {str(e)}")
            raise PersistenceError(detail=str(e)) from e
        logger.info(f"Seeded {len(DEFAULT_PRIORITIES)} default priorities for department {department_id}")
