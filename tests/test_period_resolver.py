import json
import tempfile
import unittest
from datetime import date, datetime, time
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from attendance_engine.core.errors import ErrorKind
from attendance_engine.core.time_provider import FixedTimeProvider
from attendance_engine.db import Base
from attendance_engine.models import AttendanceRecord, CoursePeriod, CoursePeriodRule, CoursePeriodRuleCondition, CourseSession, Term
from attendance_engine.services import period_config_service, period_resolver
from attendance_engine.services.session_registry import create_session


class PeriodResolverTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_period_resolver.db'
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
            db.commit()
        finally:
            db.close()
        self.time_provider = FixedTimeProvider(datetime(2026, 3, 10, 9, 0))

    def _seed_term(self, db):
        term = Term(code='2026-Spring', label='Spring 2026', start_date=date(2026, 3, 2), is_active=True)
        db.add(term)
        db.commit()
        db.refresh(term)
        periods = {}
        for period_no, start, end in ((1, '08:00', '08:45'), (2, '08:55', '09:40'), (3, '08:00', '09:40')):
            row = CoursePeriod(term_id=term.id, period_no=period_no, start_time=start, end_time=end)
            db.add(row)
            periods[period_no] = row
        db.commit()
        return term, periods

    def _add_rule(self, db, period, *, priority, start, end, conditions=(), enabled=True, effective=(None, None)):
        rule = CoursePeriodRule(
            period_id=period.id,
            name=f'rule {priority}',
            priority=priority,
            start_time=start,
            end_time=end,
            enabled=enabled,
            effective_start_date=effective[0],
            effective_end_date=effective[1],
        )
        rule.conditions = [
            CoursePeriodRuleCondition(field=field, operator=operator, value_json=json.dumps(value))
            for field, operator, value in conditions
        ]
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule

    def test_matching_rule_overrides_default_period_time(self):
        db = self._session_factory()
        try:
            term, periods = self._seed_term(db)
            rule = self._add_rule(db, periods[3], priority=1, start='08:10', end='09:50', conditions=[('course_code', '=', 'MATH101')])

            math = period_resolver.resolve(db, term.id, 3, {'course_code': 'MATH101'}, time_provider=self.time_provider)
            physics = period_resolver.resolve(db, term.id, 3, {'course_code': 'PHYS201'}, time_provider=self.time_provider)

            self.assertTrue(math.ok)
            self.assertEqual((math.value.start, math.value.end), (time(8, 10), time(9, 50)))
            self.assertEqual(math.value.matched_rule_id, rule.id)
            self.assertEqual((physics.value.start, physics.value.end), (time(8, 0), time(9, 40)))
            self.assertIsNone(physics.value.matched_rule_id)
        finally:
            db.close()

    def test_lowest_priority_rank_wins_regardless_of_insertion_order(self):
        db = self._session_factory()
        try:
            term, periods = self._seed_term(db)
            self._add_rule(db, periods[3], priority=5, start='08:30', end='10:10', conditions=[('course_code', '=', 'MATH101')])
            preferred = self._add_rule(db, periods[3], priority=2, start='08:20', end='10:00', conditions=[('weekday', '=', 1)])

            result = period_resolver.resolve(
                db,
                term.id,
                3,
                {'course_code': 'MATH101', 'weekday': 1},
                time_provider=self.time_provider,
            )

            self.assertEqual(result.value.matched_rule_id, preferred.id)
            self.assertEqual(result.value.start, time(8, 20))
        finally:
            db.close()

    def test_disabled_and_out_of_range_rules_are_skipped(self):
        db = self._session_factory()
        try:
            term, periods = self._seed_term(db)
            self._add_rule(db, periods[3], priority=1, start='07:00', end='08:40', enabled=False)
            self._add_rule(
                db,
                periods[3],
                priority=2,
                start='09:00',
                end='10:40',
                effective=(date(2026, 4, 1), date(2026, 4, 30)),
            )

            march = period_resolver.resolve(db, term.id, 3, {}, teaching_week=2, weekday=1, time_provider=self.time_provider)
            april = period_resolver.resolve(db, term.id, 3, {}, teaching_week=6, weekday=3, time_provider=self.time_provider)

            self.assertIsNone(march.value.matched_rule_id)
            self.assertEqual(march.value.start_at, datetime(2026, 3, 9, 8, 0))
            self.assertEqual(april.value.start, time(9, 0))
            self.assertEqual(april.value.start_at, datetime(2026, 4, 8, 9, 0))
        finally:
            db.close()

    def test_unknown_period_and_invalid_week_are_typed_failures(self):
        db = self._session_factory()
        try:
            term, _ = self._seed_term(db)

            missing = period_resolver.resolve(db, term.id, 9, {}, time_provider=self.time_provider)
            bad_week = period_resolver.resolve(db, term.id, 3, {}, teaching_week=31, weekday=1, time_provider=self.time_provider)
            no_term = period_resolver.resolve(db, 999, 3, {}, time_provider=self.time_provider)

            self.assertEqual(missing.error.kind, ErrorKind.NOT_FOUND)
            self.assertEqual(missing.error.reason, 'period_not_found')
            self.assertEqual(bad_week.error.kind, ErrorKind.VALIDATION)
            self.assertEqual(bad_week.error.reason, 'invalid_week')
            self.assertEqual(no_term.error.reason, 'term_not_found')
        finally:
            db.close()

    def test_batch_keeps_request_order_and_isolates_failures(self):
        db = self._session_factory()
        try:
            term, periods = self._seed_term(db)
            self._add_rule(db, periods[3], priority=1, start='08:10', end='09:50', conditions=[('course_code', '=', 'MATH101')])

            result = period_resolver.resolve_batch(
                db,
                term.code,
                [
                    {'period_no': 3, 'context': {'course_code': 'MATH101'}},
                    {'period_no': 99, 'context': {}},
                    {'period_no': 1, 'context': {'room': 'A1'}},
                    (3, {'course_code': 'PHYS201'}),
                ],
                time_provider=self.time_provider,
            )

            self.assertTrue(result.ok)
            batch = result.value
            self.assertEqual([item.key for item in batch.items], [0, 1, 2, 3])
            self.assertEqual([item.key for item in batch.succeeded], [0, 3])
            self.assertEqual(batch.items[0].value.start, time(8, 10))
            self.assertEqual(batch.items[1].error.reason, 'period_not_found')
            self.assertEqual(batch.items[2].error.reason, 'invalid_context')
            self.assertEqual(batch.items[3].value.start, time(8, 0))
        finally:
            db.close()

    def test_session_range_spans_earliest_start_to_latest_end(self):
        db = self._session_factory()
        try:
            term, _ = self._seed_term(db)

            result = period_resolver.resolve_session_range(db, term.id, [2, 1], {'course_code': 'CHEM110'}, 2, 3)

            self.assertTrue(result.ok)
            self.assertEqual(result.value.session_date, date(2026, 3, 11))
            self.assertEqual(result.value.start_at, datetime(2026, 3, 11, 8, 0))
            self.assertEqual(result.value.end_at, datetime(2026, 3, 11, 9, 40))
            self.assertEqual([item.period_no for item in result.value.ranges], [2, 1])
        finally:
            db.close()

    def test_rule_change_recomputes_sessions_and_pending_snapshots(self):
        db = self._session_factory()
        try:
            term, periods = self._seed_term(db)
            created = create_session(
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
                time_provider=self.time_provider,
            ).unwrap()
            self.assertEqual(created['start_time'], '2026-03-16T08:00:00')
            db.add(
                AttendanceRecord(
                    session_id=created['id'],
                    student_id='S1',
                    status='not_started',
                    session_start_snapshot=datetime(2026, 3, 16, 8, 0),
                )
            )
            db.commit()

            rule = period_config_service.create_rule(
                db,
                periods[3].id,
                {
                    'priority': 1,
                    'start_time': '08:10',
                    'end_time': '09:50',
                    'conditions': [{'field': 'course_code', 'operator': '=', 'value': 'MATH101'}],
                },
            )

            self.assertTrue(rule.ok)
            self.assertEqual(rule.value['recomputed']['succeeded_count'], 1)
            db.expire_all()
            session = db.get(CourseSession, created['id'])
            record = db.query(AttendanceRecord).filter(AttendanceRecord.student_id == 'S1').one()
            self.assertEqual(session.start_time, datetime(2026, 3, 16, 8, 10))
            self.assertEqual(session.matched_rule_ids, str(rule.value['id']))
            self.assertEqual(record.session_start_snapshot, datetime(2026, 3, 16, 8, 10))
        finally:
            db.close()

    def test_recompute_reports_database_faults_per_session(self):
        db = self._session_factory()
        try:
            term, _ = self._seed_term(db)
            session_ids = [
                create_session(
                    db,
                    {
                        'external_id': f'MATH101-W3-D{weekday}',
                        'course_code': 'MATH101',
                        'term_id': term.id,
                        'teaching_week': 3,
                        'weekday': weekday,
                        'periods': [1],
                        'teachers': [{'teacher_id': 'T1'}],
                    },
                    time_provider=self.time_provider,
                ).unwrap()['id']
                for weekday in (1, 2, 3)
            ]
            real_apply = period_config_service.apply_schedule

            def flaky_apply(db_session, session, term_row):
                if session.id == session_ids[1]:
                    raise OperationalError('UPDATE course_sessions', {}, Exception('database is locked'))
                return real_apply(db_session, session, term_row)

            with mock.patch.object(period_config_service, 'apply_schedule', flaky_apply):
                with self.assertLogs('attendance_engine.services.period_config_service', level='ERROR'):
                    result = period_config_service.recompute_term_sessions(db, term.id)

            self.assertTrue(result.ok, result.error)
            outcome = result.value.to_dict()
            self.assertEqual(outcome['succeeded_count'], 2)
            self.assertEqual([item['key'] for item in outcome['succeeded']], [session_ids[0], session_ids[2]])
            self.assertEqual(outcome['failed'][0]['key'], session_ids[1])
            self.assertEqual(outcome['failed'][0]['error']['kind'], ErrorKind.STORAGE.value)
            self.assertEqual(outcome['failed'][0]['error']['reason'], 'storage_unavailable')
        finally:
            db.close()


if __name__ == '__main__':
    unittest.main()
