from datetime import time, timedelta
from decimal import Decimal
from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from academy.core.time_provider import default_time_provider
from academy.db import Base, SessionLocal, engine
from academy.models import ClassGroup, Role, User
from academy.services.bootstrap_service import run_bootstrap
from academy.services.class_session_service import expand_weekly_sessions
from academy.services.subscription_service import create_plan, subscribe_student
from academy.services.teacher_availability_service import replace_weekly_availability


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    run_bootstrap(db)
    if not db.query(ClassGroup).first():
        teacher = User(name='Maya Lopez', email='maya@example.com', role=Role.TEACHER.value, timezone='UTC')
        students = [
            User(name='Aarav', email='aarav@example.com', role=Role.STUDENT.value),
            User(name='Diya', email='diya@example.com', role=Role.STUDENT.value),
        ]
        group = ClassGroup(title='Algebra I', subject='Math', timezone='UTC')
        db.add_all([teacher, group, *students])
        db.commit()

        replace_weekly_availability(
            db,
            teacher_id=teacher.id,
            slots=[(weekday, time(9, 0), time(18, 0)) for weekday in range(5)],
        )
        today = default_time_provider.today()
        expand_weekly_sessions(
            db,
            class_id=group.id,
            weekdays=[0, 2],
            start_time_value=time(10, 0),
            end_time_value=time(11, 0),
            start_date=today,
            end_date=today + timedelta(days=27),
            teacher_ids=[teacher.id],
            student_ids=[row.id for row in students],
        )
        plan = create_plan(db, name='Standard', hourly_rate=Decimal('25.00'), max_free_absences=2)
        for student in students:
            subscribe_student(db, student_id=student.id, plan_id=plan.id, start_date=today)
finally:
    db.close()

print('DB initialized with sample data.')
