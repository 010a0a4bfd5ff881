import tempfile
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from attendance_engine.core.errors import InvalidOperationError
from attendance_engine.core.identity import TeacherIdentity
from attendance_engine.core.time_provider import FixedTimeProvider
from attendance_engine.db import Base
from attendance_engine.models import (
    AttendanceRecord,
    CourseEnrollment,
    CoursePeriod,
    LeaveApplication,
    Term,
    VerificationWindow,
)
from attendance_engine.services import attendance_state
from attendance_engine.services.session_registry import create_session


START = datetime(2026, 3, 16, 8, 0)
END = datetime(2026, 3, 16, 9, 40)


class AttendanceStateTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_attendance_state.db'
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
            db.add(CoursePeriod(term_id=term.id, period_no=3, start_time='08:00', end_time='09:40'))
            db.commit()
            self.session_id = create_session(
                db,
                {
                    'external_id': 'MATH101-W3-D1',
                    'course_code': 'MATH101',
                    'term_id': term.id,
                    'teaching_week': 3,
                    'weekday': 1,
                    'periods': [3],
                    'teachers': [{'teacher_id': 'T1'}],
                },
            ).unwrap()['id']
            db.add_all(
                [
                    CourseEnrollment(course_code='MATH101', term_id=term.id, student_id=f'S{n}', student_name=f'Student {n}')
                    for n in range(1, 5)
                ]
            )
            db.commit()
        finally:
            db.close()

    def _add_record(self, db, student_id, status):
        record = AttendanceRecord(session_id=self.session_id, student_id=student_id, status=status)
        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    def test_transition_table(self):
        allowed = [
            ('not_started', 'present'),
            ('not_started', 'leave_pending'),
            ('not_started', 'absent'),
            ('leave_pending', 'leave'),
            ('leave_pending', 'leave_rejected'),
            ('leave_pending', 'not_started'),
            ('absent', 'present'),
            ('absent', 'truant'),
        ]
        for current, target in allowed:
            self.assertTrue(attendance_state.can_transition(current, target), (current, target))
        for terminal in ('present', 'leave', 'leave_rejected', 'truant'):
            for target in ('not_started', 'present', 'absent', 'leave', 'truant'):
                self.assertFalse(attendance_state.can_transition(terminal, target), (terminal, target))
        self.assertFalse(attendance_state.can_transition('not_started', 'truant'))
        self.assertFalse(attendance_state.can_transition('not_started', 'leave'))

    def test_conditional_update_detects_lost_race(self):
        db = self._session_factory()
        try:
            record = self._add_record(db, 'S1', 'present')

            with self.assertRaises(InvalidOperationError) as stale:
                attendance_state.transition_record(db, record.id, 'not_started', 'absent')
            with self.assertRaises(InvalidOperationError) as illegal:
                attendance_state.transition_record(db, record.id, 'present', 'absent')

            self.assertEqual(stale.exception.reason, 'stale_status')
            self.assertEqual(illegal.exception.reason, 'illegal_transition')
        finally:
            db.close()

    def test_record_upsert_returns_existing_row(self):
        db = self._session_factory()
        try:
            session = db.get(attendance_state.CourseSession, self.session_id)
            first, created = attendance_state.get_or_create_record(db, session, 'S1', student_name='Student 1')
            second, created_again = attendance_state.get_or_create_record(db, session, 'S1')

            self.assertTrue(created)
            self.assertFalse(created_again)
            self.assertEqual(first.id, second.id)
            self.assertEqual(first.session_start_snapshot, START)
        finally:
            db.close()

    def test_sweep_waits_for_session_end_and_open_windows(self):
        db = self._session_factory()
        try:
            during = attendance_state.sweep_absences(db, self.session_id, time_provider=FixedTimeProvider(START + timedelta(minutes=30)))
            db.add(
                VerificationWindow(
                    window_key='vw_late_round',
                    session_id=self.session_id,
                    round=1,
                    opened_at=END - timedelta(minutes=1),
                    valid_until=END + timedelta(minutes=1),
                    duration_minutes=2,
                    opened_by='T1',
                )
            )
            db.commit()
            window_open = attendance_state.sweep_absences(
                db, self.session_id, time_provider=FixedTimeProvider(END + timedelta(seconds=30))
            )

            self.assertEqual(during.error.reason, 'session_not_ended')
            self.assertEqual(window_open.error.reason, 'window_open')
        finally:
            db.close()

    def test_sweep_marks_missing_and_unanswered_students_absent(self):
        db = self._session_factory()
        try:
            self._add_record(db, 'S1', 'present')
            self._add_record(db, 'S2', 'not_started')
            pending = self._add_record(db, 'S3', 'leave_pending')
            db.add(
                LeaveApplication(
                    record_id=pending.id,
                    session_id=self.session_id,
                    student_id='S3',
                    leave_type='sick',
                    reason='fever',
                    status='leave_pending',
                    submitted_at=START - timedelta(hours=1),
                )
            )
            db.commit()

            result = attendance_state.sweep_absences(db, self.session_id, time_provider=FixedTimeProvider(END + timedelta(minutes=5)))

            self.assertEqual(result.value, {'session_id': self.session_id, 'created_absent': 1, 'marked_absent': 1})
            db.expire_all()
            statuses = {row.student_id: row.status for row in db.query(AttendanceRecord).all()}
            self.assertEqual(statuses, {'S1': 'present', 'S2': 'absent', 'S3': 'leave_pending', 'S4': 'absent'})

            again = attendance_state.sweep_absences(db, self.session_id, time_provider=FixedTimeProvider(END + timedelta(minutes=6)))
            self.assertEqual((again.value['created_absent'], again.value['marked_absent']), (0, 0))
        finally:
            db.close()

    def test_scheduled_sweep_only_touches_recently_ended_sessions(self):
        db = self._session_factory()
        try:
            before = attendance_state.sweep_ended_sessions(db, time_provider=FixedTimeProvider(START))
            after = attendance_state.sweep_ended_sessions(db, time_provider=FixedTimeProvider(END + timedelta(minutes=1)))
            much_later = attendance_state.sweep_ended_sessions(db, time_provider=FixedTimeProvider(END + timedelta(days=3)))

            self.assertEqual(before, {'swept': 0, 'skipped': 0})
            self.assertEqual(after, {'swept': 1, 'skipped': 0})
            self.assertEqual(much_later, {'swept': 0, 'skipped': 0})
            self.assertEqual(db.query(AttendanceRecord).filter(AttendanceRecord.status == 'absent').count(), 4)
        finally:
            db.close()

    def test_truant_only_from_absent(self):
        db = self._session_factory()
        try:
            absent = self._add_record(db, 'S1', 'absent')
            present = self._add_record(db, 'S2', 'present')
            teacher = TeacherIdentity(id='T1')
            clock = FixedTimeProvider(END + timedelta(hours=1))

            marked = attendance_state.mark_truant(db, teacher, absent.id, 'left after roll call', time_provider=clock)
            refused = attendance_state.mark_truant(db, teacher, present.id, time_provider=clock)
            outsider = attendance_state.mark_truant(db, TeacherIdentity(id='T9'), absent.id, time_provider=clock)

            self.assertEqual(marked.value['status'], 'truant')
            self.assertEqual(marked.value['manual_override_by'], 'T1')
            self.assertEqual(marked.value['manual_override_reason'], 'left after roll call')
            self.assertEqual(refused.error.reason, 'illegal_transition')
            self.assertEqual(outsider.error.reason, 'not_session_teacher')
        finally:
            db.close()

    def test_roster_derives_status_for_students_without_records(self):
        db = self._session_factory()
        try:
            self._add_record(db, 'S1', 'present')

            during = attendance_state.list_session_records(db, self.session_id, time_provider=FixedTimeProvider(START))
            after = attendance_state.list_session_records(db, self.session_id, time_provider=FixedTimeProvider(END + timedelta(minutes=1)))
            student = attendance_state.get_student_record(db, self.session_id, 'S2')
            stranger = attendance_state.get_student_record(db, self.session_id, 'S9')

            self.assertEqual(during.value['counts'], {'present': 1, 'not_started': 3})
            self.assertEqual(after.value['counts'], {'present': 1, 'absent': 3})
            self.assertTrue(after.value['items'][1]['derived'])
            self.assertEqual(student.value['status'], 'not_started')
            self.assertEqual(stranger.error.reason, 'not_enrolled')
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
