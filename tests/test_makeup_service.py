import tempfile
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from attendance_engine.core.identity import StudentIdentity, TeacherIdentity
from attendance_engine.core.time_provider import FixedTimeProvider
from attendance_engine.db import Base
from attendance_engine.models import AttendanceRecord, CourseEnrollment, CoursePeriod, CourseSession, Term
from attendance_engine.services import makeup_service
from attendance_engine.services.session_registry import create_session


START = datetime(2026, 3, 16, 8, 0)


class MakeupServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_makeup_service.db'
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
            self.term_id = term.id
            db.add(CoursePeriod(term_id=term.id, period_no=3, start_time='08:00', end_time='09:40'))
            db.commit()
            self.monday_id = self._create(db, 'MATH101-W3-D1', 1, 'T1')
            self.wednesday_id = self._create(db, 'MATH101-W3-D3', 3, 'T2')
            db.add_all(
                [
                    CourseEnrollment(course_code='MATH101', term_id=term.id, student_id=f'S{n}', student_name=f'Student {n}')
                    for n in range(1, 5)
                ]
            )
            db.commit()
        finally:
            db.close()
        self.teacher = TeacherIdentity(id='T1')
        self.clock = FixedTimeProvider(START + timedelta(hours=3))

    def _create(self, db, external_id, weekday, teacher_id):
        return create_session(
            db,
            {
                'external_id': external_id,
                'course_code': 'MATH101',
                'term_id': self.term_id,
                'teaching_week': 3,
                'weekday': weekday,
                'periods': [3],
                'teachers': [{'teacher_id': teacher_id}],
            },
        ).unwrap()['id']

    def _add_record(self, db, session_id, student_id, status):
        record = AttendanceRecord(
            session_id=session_id,
            student_id=student_id,
            status=status,
            session_start_snapshot=db.get(CourseSession, session_id).start_time,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def _by_student(batch):
        return {item.key.get('student_id'): item for item in batch.items}

    def test_makeup_reports_each_student_separately(self):
        db = self._session_factory()
        try:
            self._add_record(db, self.monday_id, 'S2', 'absent')
            self._add_record(db, self.monday_id, 'S3', 'present')
            self._add_record(db, self.monday_id, 'S4', 'leave')

            result = makeup_service.makeup_sign_in(
                db,
                self.teacher,
                [self.monday_id],
                ['S1', 'S2', 'S3', 'S4', 'S9'],
                'network outage in room 101',
                time_provider=self.clock,
            )

            self.assertTrue(result.ok, result.error)
            items = self._by_student(result.value)
            self.assertEqual(items['S1'].value['previous_status'], 'not_started')
            self.assertEqual(items['S2'].value['previous_status'], 'absent')
            self.assertTrue(items['S2'].value['changed'])
            self.assertEqual(items['S3'].value, {'record_id': items['S3'].value['record_id'], 'status': 'present', 'changed': False})
            self.assertEqual(items['S4'].error.reason, 'illegal_transition')
            self.assertEqual(items['S9'].error.reason, 'not_enrolled')
            self.assertEqual(items['S1'].key, {'session_id': self.monday_id, 'student_id': 'S1'})

            db.expire_all()
            record = (
                db.query(AttendanceRecord)
                .filter(AttendanceRecord.session_id == self.monday_id, AttendanceRecord.student_id == 'S2')
                .one()
            )
            self.assertEqual(record.status, 'present')
            self.assertEqual(record.checkin_source, 'makeup')
            self.assertEqual(record.manual_override_by, 'T1')
            self.assertEqual(record.manual_override_reason, 'network outage in room 101')
            self.assertEqual(record.checkin_time, self.clock.local_now())
        finally:
            db.close()

    def test_makeup_without_student_list_targets_unmarked_students(self):
        db = self._session_factory()
        try:
            self._add_record(db, self.monday_id, 'S1', 'present')
            self._add_record(db, self.monday_id, 'S2', 'leave_pending')

            result = makeup_service.makeup_sign_in(db, self.teacher, [self.monday_id], time_provider=self.clock)

            self.assertEqual(sorted(self._by_student(result.value)), ['S3', 'S4'])
            self.assertEqual(len(result.value.failed), 0)
        finally:
            db.close()

    def test_makeup_refuses_sessions_of_other_teachers(self):
        db = self._session_factory()
        try:
            result = makeup_service.makeup_sign_in(
                db, self.teacher, [self.monday_id, self.wednesday_id, 999], ['S1'], time_provider=self.clock
            )
            student = makeup_service.makeup_sign_in(db, StudentIdentity(id='S1'), [self.monday_id], time_provider=self.clock)
            empty = makeup_service.makeup_sign_in(db, self.teacher, [], time_provider=self.clock)

            by_session = {item.key['session_id']: item for item in result.value.items}
            self.assertTrue(by_session[self.monday_id].ok)
            self.assertEqual(by_session[self.wednesday_id].error.reason, 'not_session_teacher')
            self.assertEqual(by_session[999].error.reason, 'session_not_found')
            self.assertEqual(student.error.reason, 'teacher_required')
            self.assertEqual(empty.error.reason, 'invalid_sessions')
        finally:
            db.close()

    def test_reschedule_moves_session_and_refreshes_pending_records(self):
        db = self._session_factory()
        try:
            pending = self._add_record(db, self.monday_id, 'S1', 'not_started')
            absent = self._add_record(db, self.monday_id, 'S2', 'absent')
            before = FixedTimeProvider(START - timedelta(days=1))

            result = makeup_service.reschedule_sessions(
                db, self.teacher, [self.monday_id], 4, 2, self.term_id, time_provider=before
            )

            self.assertTrue(result.ok, result.error)
            moved = result.value.items[0].value
            self.assertEqual(moved['start_time'], '2026-03-24T08:00:00')
            self.assertEqual(moved['previous_start'], START.isoformat())
            self.assertEqual(moved['refreshed_records'], 1)
            db.expire_all()
            self.assertEqual(db.get(AttendanceRecord, pending.id).session_start_snapshot, datetime(2026, 3, 24, 8, 0))
            self.assertEqual(db.get(AttendanceRecord, absent.id).session_start_snapshot, START)
            session = db.get(CourseSession, self.monday_id)
            self.assertEqual((session.teaching_week, session.weekday), (4, 2))
        finally:
            db.close()

    def test_reschedule_item_failures(self):
        db = self._session_factory()
        try:
            before = FixedTimeProvider(START - timedelta(days=1))
            conflict = makeup_service.reschedule_sessions(db, self.teacher, [self.monday_id], 3, 3, self.term_id, time_provider=before)
            same = makeup_service.reschedule_sessions(db, self.teacher, [self.monday_id], 3, 1, self.term_id, time_provider=before)
            finished = makeup_service.reschedule_sessions(
                db, self.teacher, [self.monday_id], 6, 1, self.term_id, time_provider=FixedTimeProvider(START + timedelta(days=1))
            )
            bad_week = makeup_service.reschedule_sessions(db, self.teacher, [self.monday_id], 0, 1, self.term_id, time_provider=before)
            no_term = makeup_service.reschedule_sessions(db, self.teacher, [self.monday_id], 5, 1, 999, time_provider=before)

            self.assertEqual(conflict.value.items[0].error.reason, 'slot_conflict')
            self.assertEqual(same.value.items[0].value, {'session_id': self.monday_id, 'unchanged': True})
            self.assertEqual(finished.value.items[0].error.reason, 'session_finished')
            self.assertEqual(bad_week.error.reason, 'invalid_week')
            self.assertEqual(no_term.error.reason, 'term_not_found')
        finally:
            db.close()

    def test_course_reschedule_keeps_weekdays_by_default(self):
        db = self._session_factory()
        try:
            before = FixedTimeProvider(START - timedelta(days=1))
            db.get(CourseSession, self.wednesday_id).teachers[0].teacher_id = 'T1'
            db.commit()

            result = makeup_service.reschedule_course(
                db, self.teacher, 'MATH101', self.term_id, 3, 5, time_provider=before
            )
            missing = makeup_service.reschedule_course(db, self.teacher, 'PHYS201', self.term_id, 3, 5, time_provider=before)

            self.assertEqual(len(result.value.succeeded), 2)
            starts = {item.key['session_id']: item.value['start_time'] for item in result.value.items}
            self.assertEqual(starts[self.monday_id], '2026-03-30T08:00:00')
            self.assertEqual(starts[self.wednesday_id], '2026-04-01T08:00:00')
            self.assertEqual(missing.error.reason, 'session_not_found')
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
