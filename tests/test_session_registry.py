import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from attendance_engine.core.errors import ErrorKind
from attendance_engine.core.identity import StudentIdentity, TeacherIdentity
from attendance_engine.core.time_provider import FixedTimeProvider
from attendance_engine.db import Base
from attendance_engine.models import AttendanceRecord, CoursePeriod, Term
from attendance_engine.services import session_registry


class SessionRegistryTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_session_registry.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        db = self._session_factory()
        try:
            for table in reversed(Base.metadata.sorted_tables):
                db.execute(table.delete())
            term = Term(code='2026-Spring', start_date=date(2026, 3, 2), is_active=True)
            db.add(term)
            db.commit()
            db.refresh(term)
            db.add_all(
                [
                    CoursePeriod(term_id=term.id, period_no=1, start_time='08:00', end_time='08:45'),
                    CoursePeriod(term_id=term.id, period_no=2, start_time='08:55', end_time='09:40'),
                ]
            )
            db.commit()
            self.term_id = term.id
        finally:
            db.close()
        self.time_provider = FixedTimeProvider(datetime(2026, 3, 16, 7, 0))
        self.teacher = TeacherIdentity(id='T1', name='Teacher One')

    def _payload(self, **overrides):
        payload = {
            'external_id': 'MATH101-W3-D1',
            'course_code': 'MATH101',
            'course_name': 'Calculus I',
            'term_id': self.term_id,
            'teaching_week': 3,
            'weekday': 1,
            'periods': [1, 2],
            'teachers': [{'teacher_id': 'T1', 'teacher_name': 'Teacher One'}, {'teacher_id': 'T2'}],
        }
        payload.update(overrides)
        return payload

    def test_create_resolves_times_from_periods(self):
        db = self._session_factory()
        try:
            result = session_registry.create_session(db, self._payload(), time_provider=self.time_provider)

            self.assertTrue(result.ok, result.error)
            self.assertEqual(result.value['start_time'], '2026-03-16T08:00:00')
            self.assertEqual(result.value['end_time'], '2026-03-16T09:40:00')
            self.assertEqual(result.value['phase'], session_registry.PHASE_NOT_STARTED)
            self.assertEqual([row['teacher_id'] for row in result.value['teachers']], ['T1', 'T2'])
        finally:
            db.close()

    def test_duplicate_slot_and_external_id_are_rejected(self):
        db = self._session_factory()
        try:
            session_registry.create_session(db, self._payload(), time_provider=self.time_provider).unwrap()

            same_slot = session_registry.create_session(db, self._payload(external_id='other'), time_provider=self.time_provider)
            same_id = session_registry.create_session(db, self._payload(teaching_week=4), time_provider=self.time_provider)
            missing_period = session_registry.create_session(
                db,
                self._payload(external_id='x', teaching_week=5, periods=[7]),
                time_provider=self.time_provider,
            )

            self.assertEqual(same_slot.error.reason, 'slot_conflict')
            self.assertEqual(same_id.error.reason, 'duplicate_session')
            self.assertEqual(missing_period.error.kind, ErrorKind.NOT_FOUND)
        finally:
            db.close()

    def test_invalid_payload_is_a_validation_error(self):
        db = self._session_factory()
        try:
            result = session_registry.create_session(db, self._payload(weekday=8), time_provider=self.time_provider)

            self.assertEqual(result.error.kind, ErrorKind.VALIDATION)
            self.assertEqual(result.error.reason, 'invalid_payload')
            self.assertEqual(result.error.details['errors'][0]['field'], 'weekday')
        finally:
            db.close()

    def test_phase_follows_resolved_range(self):
        db = self._session_factory()
        try:
            created = session_registry.create_session(db, self._payload(), time_provider=self.time_provider).unwrap()
            session = session_registry.get_session_row(db, created['id'])

            self.assertEqual(session_registry.session_phase(session, datetime(2026, 3, 16, 7, 59)), 'not_started')
            self.assertEqual(session_registry.session_phase(session, datetime(2026, 3, 16, 8, 0)), 'in_progress')
            self.assertEqual(session_registry.session_phase(session, datetime(2026, 3, 16, 9, 40)), 'in_progress')
            self.assertEqual(session_registry.session_phase(session, datetime(2026, 3, 16, 9, 41)), 'finished')
        finally:
            db.close()

    def test_attendance_toggle_only_before_start_and_by_session_teacher(self):
        db = self._session_factory()
        try:
            created = session_registry.create_session(db, self._payload(), time_provider=self.time_provider).unwrap()

            disabled = session_registry.set_attendance_enabled(
                db, self.teacher, created['id'], False, time_provider=self.time_provider
            )
            outsider = session_registry.set_attendance_enabled(
                db, TeacherIdentity(id='T9'), created['id'], True, time_provider=self.time_provider
            )
            student = session_registry.set_attendance_enabled(
                db, StudentIdentity(id='S1'), created['id'], True, time_provider=self.time_provider
            )
            started = session_registry.set_attendance_enabled(
                db,
                self.teacher,
                created['id'],
                True,
                time_provider=FixedTimeProvider(datetime(2026, 3, 16, 8, 5)),
            )

            self.assertFalse(disabled.value['attendance_enabled'])
            self.assertEqual(outsider.error.reason, 'not_session_teacher')
            self.assertEqual(student.error.kind, ErrorKind.UNAUTHORIZED)
            self.assertEqual(started.error.reason, 'session_started')
        finally:
            db.close()

    def test_list_filters_and_validates_paging(self):
        db = self._session_factory()
        try:
            session_registry.create_session(db, self._payload(), time_provider=self.time_provider).unwrap()
            session_registry.create_session(
                db,
                self._payload(external_id='PHYS201-W3-D2', course_code='PHYS201', weekday=2, teachers=[{'teacher_id': 'T3'}]),
                time_provider=self.time_provider,
            ).unwrap()

            by_teacher = session_registry.list_sessions(db, teacher_id='T3', time_provider=self.time_provider)
            bad_page = session_registry.list_sessions(db, page=0)

            self.assertEqual(by_teacher.value['total'], 1)
            self.assertEqual(by_teacher.value['items'][0]['course_code'], 'PHYS201')
            self.assertEqual(bad_page.error.reason, 'invalid_page')
        finally:
            db.close()

    def test_upsert_moves_existing_session_and_delete_refuses_history(self):
        db = self._session_factory()
        try:
            created = session_registry.create_session(db, self._payload(), time_provider=self.time_provider).unwrap()
            db.add(AttendanceRecord(session_id=created['id'], student_id='S1', status='not_started'))
            db.commit()

            moved = session_registry.upsert_session_by_external_id(
                db, self._payload(teaching_week=4, weekday=2), time_provider=self.time_provider
            )
            blocked = session_registry.delete_session(db, created['id'])

            self.assertEqual(moved.value['id'], created['id'])
            self.assertEqual(moved.value['start_time'], '2026-03-24T08:00:00')
            self.assertEqual(blocked.error.reason, 'session_has_records')
        finally:
            db.close()

    def test_enrollment_scopes_students_by_course_and_term(self):
        db = self._session_factory()
        try:
            created = session_registry.create_session(db, self._payload(), time_provider=self.time_provider).unwrap()
            session_registry.enroll_student(db, 'MATH101', self.term_id, {'student_id': 'S1', 'student_name': 'One'}).unwrap()
            session_registry.enroll_student(db, 'MATH101', self.term_id, {'student_id': 'S2'}).unwrap()
            session_registry.drop_enrollment(db, 'MATH101', self.term_id, 'S2').unwrap()

            students = session_registry.list_enrolled_students(db, created['id'])
            dropped_again = session_registry.drop_enrollment(db, 'MATH101', self.term_id, 'S2')

            self.assertEqual([row['student_id'] for row in students.value], ['S1'])
            self.assertEqual(dropped_again.error.reason, 'enrollment_not_found')
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
