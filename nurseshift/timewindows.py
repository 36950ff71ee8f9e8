"""Clock arithmetic for shifts that may run past midnight.

A shift on a given date is turned into a half-open interval of absolute
minutes ``[start, end)`` counted from ``date.min``.  Overnight shifts
(``end <= start``) extend into the next calendar day, so windows anchored
on different dates can be compared directly.
"""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Iterable, List, NamedTuple

from .errors import ValidationError

MINUTES_PER_DAY = 24 * 60

NIGHT_KEYWORDS = ('ดึก', 'night')
NIGHT_START_MINUTE = 20 * 60
EARLY_NIGHT_END_MINUTE = 6 * 60


class Window(NamedTuple):
    start: int
    end: int

    @property
    def minutes(self) -> int:
        return self.end - self.start


def parse_clock(value) -> time:
    """Parse ``HH:MM`` (24 hour) into a ``time``; ``time`` values pass through."""
    if isinstance(value, time):
        return value
    try:
        return datetime.strptime(str(value).strip(), '%H:%M').time()
    except ValueError:
        raise ValidationError('รูปแบบเวลาไม่ถูกต้อง (HH:MM)', detail=f'invalid time {value!r}') from None


def parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError('รูปแบบวันที่ไม่ถูกต้อง (YYYY-MM-DD)', detail=f'invalid date {value!r}') from None


def minute_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


def shift_minutes(start: time, end: time) -> int:
    """Length of a shift; equal start and end means a full 24 hours."""
    length = (minute_of_day(end) - minute_of_day(start)) % MINUTES_PER_DAY
    return length or MINUTES_PER_DAY


def wraps_midnight(start: time, end: time) -> bool:
    return minute_of_day(end) <= minute_of_day(start)


def shift_window(start: time, end: time, anchor: date) -> Window:
    """Absolute ``[start, end)`` minutes of a shift starting on ``anchor``."""
    origin = anchor.toordinal() * MINUTES_PER_DAY + minute_of_day(start)
    return Window(origin, origin + shift_minutes(start, end))


def window_for(shift, anchor: date) -> Window:
    return shift_window(shift.start_time, shift.end_time, anchor)


def windows_overlap(a: Window, b: Window) -> bool:
    # Touching windows (a.end == b.start) share no minute.
    return a.start < b.end and b.start < a.end


def is_night_shift(shift) -> bool:
    if shift.is_night is not None:
        return bool(shift.is_night)
    if (shift.shift_type or '').lower() == 'night':
        return True
    name = (shift.name or '').lower()
    if any(keyword in name for keyword in NIGHT_KEYWORDS):
        return True
    start = minute_of_day(shift.start_time)
    return (
        wraps_midnight(shift.start_time, shift.end_time)
        or start < EARLY_NIGHT_END_MINUTE
        or start >= NIGHT_START_MINUTE
    )


def contiguous_block(windows: Iterable[Window], seed: Window) -> Window:
    """The merged stretch of work containing ``seed``.

    Touching or overlapping windows merge, so back-to-back shifts without a
    break form a single block.
    """
    blocks: List[Window] = []
    for start, end in sorted([*windows, seed]):
        if blocks and start <= blocks[-1].end:
            last = blocks[-1]
            blocks[-1] = Window(last.start, max(last.end, end))
        else:
            blocks.append(Window(start, end))
    for block in blocks:
        if block.start <= seed.start and seed.end <= block.end:
            return block
    return seed
