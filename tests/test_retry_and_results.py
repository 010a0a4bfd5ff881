import unittest
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from attendance_engine.core.errors import ErrorKind, NotFoundError
from attendance_engine.core.results import BatchResult, Result, service_call
from attendance_engine.core.retry import RetryEngine
from attendance_engine.core.time_provider import FixedTimeProvider


class RetryEngineTests(unittest.TestCase):
    def test_backoff_doubles_from_base(self):
        engine = RetryEngine(base_seconds=2, max_retries=3, time_provider=FixedTimeProvider(datetime(2026, 3, 16, 8, 0)))

        self.assertEqual([engine.delay_seconds(n) for n in range(3)], [2, 4, 8])
        self.assertEqual(engine.next_attempt(1), datetime(2026, 3, 16, 8, 0) + timedelta(seconds=4))

    def test_retry_budget(self):
        engine = RetryEngine(max_retries=3)

        self.assertTrue(engine.should_retry(2))
        self.assertFalse(engine.should_retry(3))


@service_call
def _lookup(db, key):
    if key == 'missing':
        raise NotFoundError('nothing here', reason='thing_not_found', key=key)
    if key == 'db-down':
        raise OperationalError('SELECT 1', {}, Exception('disk I/O error'))
    if key == 'boom':
        raise ZeroDivisionError('division by zero')
    return {'key': key}


class ServiceCallTests(unittest.TestCase):
    def test_success_wraps_value(self):
        result = _lookup(None, 'a')

        self.assertTrue(result.ok)
        self.assertEqual(result.unwrap(), {'key': 'a'})
        self.assertEqual(_lookup.raw(None, 'a'), {'key': 'a'})

    def test_engine_errors_keep_kind_and_reason(self):
        result = _lookup(None, 'missing')

        self.assertFalse(result.ok)
        self.assertEqual(result.error.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(result.error.reason, 'thing_not_found')
        self.assertEqual(result.error.details, {'key': 'missing'})
        with self.assertRaises(RuntimeError):
            result.unwrap()

    def test_database_faults_become_storage_errors(self):
        with self.assertLogs('attendance_engine.core.results', level='ERROR'):
            result = _lookup(None, 'db-down')

        self.assertEqual(result.error.kind, ErrorKind.STORAGE)
        self.assertEqual(result.error.reason, 'storage_unavailable')

    def test_unexpected_exceptions_become_unknown_errors(self):
        with self.assertLogs('attendance_engine.core.results', level='ERROR'):
            result = _lookup(None, 'boom')

        self.assertEqual(result.error.kind, ErrorKind.UNKNOWN)
        self.assertEqual(result.error.to_dict()['reason'], 'unknown_error')


class BatchResultTests(unittest.TestCase):
    def test_items_keep_input_order_and_split_by_outcome(self):
        batch = BatchResult()
        batch.add_success(0, 'first')
        batch.add_failure(1, NotFoundError('gone', reason='period_not_found'))
        batch.add_success(2, 'third')

        self.assertEqual([item.key for item in batch.items], [0, 1, 2])
        payload = batch.to_dict()
        self.assertEqual((payload['succeeded_count'], payload['failed_count']), (2, 1))
        self.assertEqual(payload['failed'][0], {
            'key': 1,
            'ok': False,
            'error': {'kind': 'not_found', 'reason': 'period_not_found', 'message': 'gone', 'details': {}},
        })

    def test_result_failure_defaults_reason_to_kind(self):
        result = Result.failure(ErrorKind.VALIDATION, 'bad input')

        self.assertEqual(result.error.reason, 'validation_error')


if __name__ == '__main__':
    unittest.main()
