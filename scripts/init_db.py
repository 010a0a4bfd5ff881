from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendance_engine.db import Base, SessionLocal, engine
from attendance_engine.models import Term
from attendance_engine.services.period_config_service import create_period, create_rule, create_term
from attendance_engine.services.session_registry import create_session, enroll_student


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if not db.query(Term).first():
        term = create_term(
            db,
            {'code': '2025-Fall', 'label': 'Fall 2025', 'start_date': '2025-09-01', 'is_active': True},
        ).unwrap()
        for period_no, start, end in ((1, '08:00', '08:45'), (2, '08:55', '09:40'), (3, '08:00', '09:40')):
            period = create_period(db, term['id'], {'period_no': period_no, 'start_time': start, 'end_time': end}).unwrap()
            if period_no == 3:
                create_rule(
                    db,
                    period['id'],
                    {
                        'name': 'MATH101 late start',
                        'priority': 1,
                        'start_time': '08:10',
                        'end_time': '09:50',
                        'conditions': [{'field': 'course_code', 'operator': '=', 'value': 'MATH101'}],
                    },
                ).unwrap()

        create_session(
            db,
            {
                'external_id': 'MATH101-2025F-W3-D1',
                'course_code': 'MATH101',
                'course_name': 'Calculus I',
                'term_id': term['id'],
                'teaching_week': 3,
                'weekday': 1,
                'periods': [3],
                'location': 'Building A 101',
                'teachers': [{'teacher_id': 'T001', 'teacher_name': 'Teacher One'}],
            },
        ).unwrap()
        for student_id, name in (('S001', 'Student One'), ('S002', 'Student Two'), ('S003', 'Student Three')):
            enroll_student(
                db,
                'MATH101',
                term['id'],
                {'student_id': student_id, 'student_name': name, 'class_name': 'CS-2025-1'},
            ).unwrap()
finally:
    db.close()

print('DB initialized with sample data.')
