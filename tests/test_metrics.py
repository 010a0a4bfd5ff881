import unittest

from attendance_engine import metrics


class _CollectingExporter(metrics.MetricsExporter):
    def __init__(self):
        self.minutes = []

    def export_checkin_minute(self, minute):
        self.minutes.append(minute)


class _Clock:
    def __init__(self, ts):
        self.ts = ts

    def __call__(self):
        return self.ts


class CheckinOutcomeCounterTests(unittest.TestCase):
    def setUp(self):
        self.exporter = _CollectingExporter()
        metrics.set_metrics_exporter(self.exporter)
        self.clock = _Clock(1_773_619_200.0)
        self.counter = metrics.CheckinOutcomeCounter(clock=self.clock)

    def tearDown(self):
        metrics.set_metrics_exporter(metrics.LogMetricsExporter())

    def test_flush_exports_outcomes_with_rejection_reasons(self):
        self.counter.record('submitted')
        self.counter.record('submitted')
        self.counter.record('rejected', 'too_late')
        self.counter.record('rejected', 'no_open_window')
        self.counter.record('rejected', 'too_late')

        snapshot = self.counter.snapshot()
        self.assertEqual(snapshot.outcomes, {'submitted': 2, 'rejected': 3})
        self.counter.flush()

        self.assertEqual(len(self.exporter.minutes), 1)
        minute = self.exporter.minutes[0]
        self.assertEqual(minute.reasons, {'too_late': 2, 'no_open_window': 1})
        self.assertEqual(minute.minute_start.second, 0)
        self.assertIsNone(self.counter.snapshot())

    def test_new_minute_exports_previous_bucket(self):
        self.counter.record('succeeded')
        self.clock.ts += 61
        self.counter.record('failed', 'storage_unavailable')

        self.assertEqual([m.outcomes for m in self.exporter.minutes], [{'succeeded': 1}])
        self.assertEqual(self.counter.snapshot().outcomes, {'failed': 1})

    def test_empty_flush_exports_nothing(self):
        self.counter.flush()

        self.assertEqual(self.exporter.minutes, [])

    def test_exporter_failure_is_logged(self):
        class BrokenExporter(metrics.MetricsExporter):
            def export_checkin_minute(self, minute):
                raise RuntimeError('sink offline')

        metrics.set_metrics_exporter(BrokenExporter())
        self.counter.record('failed', 'unknown_error')

        with self.assertLogs('attendance_engine.metrics', level='ERROR'):
            self.counter.flush()
        self.assertIsNone(self.counter.snapshot())

    def test_log_exporter_lists_top_reasons(self):
        metrics.set_metrics_exporter(metrics.LogMetricsExporter())
        self.counter.record('rejected', 'not_enrolled')

        with self.assertLogs('attendance_engine.metrics', level='INFO') as captured:
            self.counter.flush()
        self.assertIn('rejected=1', captured.output[0])
        self.assertIn('reasons=not_enrolled:1', captured.output[0])


class TimedServiceTests(unittest.TestCase):
    def test_slow_calls_are_logged(self):
        @metrics.timed_service('tests.slow', threshold_ms=0)
        def work(value):
            return value * 2

        with self.assertLogs('attendance_engine.metrics', level='INFO') as captured:
            self.assertEqual(work(21), 42)
        self.assertIn('label=tests.slow', captured.output[0])

    def test_timed_job_reraises_failures(self):
        def broken():
            raise ValueError('bad')

        with self.assertLogs('attendance_engine.metrics', level='INFO') as captured:
            with self.assertRaises(ValueError):
                metrics.run_timed_job('tests.broken', broken)
        self.assertTrue(any('status=failed' in line for line in captured.output))


if __name__ == '__main__':
    unittest.main()
