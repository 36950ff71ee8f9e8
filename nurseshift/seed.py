from __future__ import annotations

from datetime import time

import click
from flask import Flask

from .models import Department, Shift, Staff, WorkingDay, db
from .priorities import PriorityRegistry

DEMO_SHIFTS = [
    # name, type, start, end, nurses, assistants, color
    ('เวรเช้า', 'morning', time(7, 0), time(15, 0), 3, 2, '#F59E0B'),
    ('เวรบ่าย', 'afternoon', time(15, 0), time(23, 0), 2, 1, '#3B82F6'),
    ('เวรดึก', 'night', time(23, 0), time(7, 0), 2, 1, '#6366F1'),
]

DEMO_STAFF = [
    ('สมศรี ใจดี', 'nurse'),
    ('วิไล สายทอง', 'nurse'),
    ('มานี มีสุข', 'nurse'),
    ('ปรีดา แก้วงาม', 'nurse'),
    ('กมล ศรีสุข', 'nurse'),
    ('อรุณ ทองดี', 'nurse'),
    ('สุดา พรหมมา', 'nurse'),
    ('ชูใจ รักงาน', 'ผู้ช่วยพยาบาล'),
    ('บุญมี ขยัน', 'ผู้ช่วยพยาบาล'),
    ('ลำดวน ใจงาม', 'ผู้ช่วยพยาบาล'),
    ('สมชาย บุญส่ง', 'assistant'),
]


def register_seed_command(app: Flask):
    @app.cli.command('seed-demo')
    @click.option('--name', default='หอผู้ป่วยอายุรกรรม', show_default=True, help='Department name.')
    def seed_demo(name):
        """Create a demo department with shifts, staff and default priorities."""
        db.create_all()

        department = Department.query.filter_by(name=name).first()
        if department is not None:
            click.echo(f"Department '{name}' already exists (id={department.id}), nothing to do.")
            return

        department = Department(name=name, max_nurses=len(DEMO_STAFF), max_assistants=4)
        db.session.add(department)
        db.session.flush()

        for shift_name, shift_type, start, end, nurses, assistants, color in DEMO_SHIFTS:
            db.session.add(Shift(
                department_id=department.id,
                name=shift_name,
                shift_type=shift_type,
                start_time=start,
                end_time=end,
                required_nurses=nurses,
                required_assistants=assistants,
                color=color,
            ))

        # Monday to Friday only
        for day_of_week in range(7):
            db.session.add(WorkingDay(
                department_id=department.id,
                day_of_week=day_of_week,
                is_working_day=day_of_week not in (0, 6),
            ))

        for staff_name, position in DEMO_STAFF:
            db.session.add(Staff(department_id=department.id, name=staff_name, position=position))

        db.session.commit()
        priorities = PriorityRegistry().list(department.id)
        click.echo(f"Seeded department '{name}' (id={department.id}) with {len(DEMO_SHIFTS)} shifts, "
                   f"{len(DEMO_STAFF)} staff and {len(priorities)} priorities.")
