"""Working day and holiday rules of a department."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ValidationError
from .models import Holiday, WorkingDay


def parse_month(month: str) -> Tuple[date, date]:
    """Return the first and last day of a ``YYYY-MM`` month."""
    try:
        first = datetime.strptime(str(month).strip(), '%Y-%m').date()
    except ValueError:
        raise ValidationError('รูปแบบเดือนไม่ถูกต้อง (YYYY-MM)', detail=f'invalid month {month!r}') from None
    last = first.replace(day=calendar.monthrange(first.year, first.month)[1])
    return first, last


def month_key(day: date) -> str:
    return day.strftime('%Y-%m')


def iter_dates(start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def sunday_based_weekday(day: date) -> int:
    # Python counts Monday as 0; departments store 0 = Sunday.
    return (day.weekday() + 1) % 7


class WorkCalendar:
    """Decides which dates a department schedules shifts on."""

    def __init__(self, working_days: Optional[Dict[int, bool]] = None,
                 holidays: Optional[List[Tuple[date, date]]] = None):
        self.working_days = dict(working_days or {})
        self.holidays = list(holidays or [])

    @classmethod
    def for_department(cls, department_id: int) -> 'WorkCalendar':
        rows = WorkingDay.query.filter_by(department_id=department_id).all()
        holidays = Holiday.query.filter_by(department_id=department_id).all()
        return cls(
            {row.day_of_week: row.is_working_day for row in rows},
            [(h.start_date, h.end_date) for h in holidays],
        )

    def is_holiday(self, day: date) -> bool:
        return any(start <= day <= end for start, end in self.holidays)

    def is_working_weekday(self, day: date) -> bool:
        # Weekdays without a row are treated as working days.
        return self.working_days.get(sunday_based_weekday(day), True)

    def is_working_day(self, day: date) -> bool:
        return self.is_working_weekday(day) and not self.is_holiday(day)

    def working_dates(self, start: date, end: date) -> List[date]:
        return [day for day in iter_dates(start, end) if self.is_working_day(day)]


def calendar_meta(department_id: int, month: str) -> List[Dict[str, object]]:
    first, last = parse_month(month)
    work_calendar = WorkCalendar.for_department(department_id)
    return [
        {
            'date': day.isoformat(),
            'isWorking': work_calendar.is_working_weekday(day),
            'isHoliday': work_calendar.is_holiday(day),
        }
        for day in iter_dates(first, last)
    ]
