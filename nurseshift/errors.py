"""Error types raised by the scheduling services.

Every error carries a machine readable ``code``, the HTTP status the API
layer should answer with, and a Thai message that is safe to show to the
end user.  Errors raised in the middle of a generation run also carry the
number of assignments that were already committed.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base class for all service errors."""

    code = 'scheduling_error'
    status_code = 500
    default_message = 'เกิดข้อผิดพลาดในการจัดตารางเวร'

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None,
                 data: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.detail = detail
        self.data = data or {}
        super().__init__(detail or self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            'success': False,
            'error': self.message,
            'code': self.code,
        }
        if self.detail:
            body['detail'] = self.detail
        if self.data:
            body['data'] = self.data
        return body


class ValidationError(SchedulingError):
    code = 'validation_error'
    status_code = 400
    default_message = 'ข้อมูลที่ส่งมาไม่ถูกต้อง'


class AlreadyScheduledError(ValidationError):
    """The generation window already holds active assignments."""

    code = 'already_scheduled'
    status_code = 409
    default_message = 'มีตารางเวรในช่วงเวลานี้อยู่แล้ว กรุณาล้างตารางเวรเดิมก่อนสร้างใหม่'


class NotFoundError(SchedulingError):
    code = 'not_found'
    status_code = 404
    default_message = 'ไม่พบข้อมูลที่ระบุ'


class EligibilityError(SchedulingError):
    code = 'ineligible'
    status_code = 409
    default_message = 'ไม่สามารถจัดพนักงานลงเวรนี้ได้'

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs):
        self.reason = reason
        kwargs.setdefault('data', {'reason': reason})
        super().__init__(message, detail=reason, **kwargs)


class ConcurrencyError(SchedulingError):
    code = 'concurrency_error'
    status_code = 409
    default_message = 'กำลังสร้างตารางเวรของแผนกนี้อยู่ กรุณาลองใหม่ภายหลัง'


class PersistenceError(SchedulingError):
    code = 'persistence_error'
    status_code = 500
    default_message = 'บันทึกข้อมูลไม่สำเร็จ'

    def __init__(self, message: Optional[str] = None, *, inserted: int = 0, **kwargs):
        self.inserted = inserted
        kwargs.setdefault('data', {'inserted': inserted})
        super().__init__(message, **kwargs)


class GenerationTimeoutError(PersistenceError):
    code = 'generation_timeout'
    status_code = 504
    default_message = 'การสร้างตารางเวรใช้เวลานานเกินกำหนด บันทึกได้เพียงบางส่วน'
