import re
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
SCANNED = (ROOT / 'attendance_engine', ROOT / 'scripts')
CLOCK_MODULE = ROOT / 'attendance_engine' / 'core' / 'time_provider.py'

WALL_CLOCK_CALL = re.compile(r'\b(?:datetime\.(?:now|utcnow|today)|date\.today)\(')


class ClockDisciplineTests(unittest.TestCase):
    """Business time must come from a TimeProvider so tests can pin it."""

    def test_wall_clock_is_read_only_through_time_provider(self):
        violations = []
        for base in SCANNED:
            for file_path in sorted(base.rglob('*.py')):
                if file_path == CLOCK_MODULE:
                    continue
                for line_no, line in enumerate(file_path.read_text(encoding='utf-8').splitlines(), start=1):
                    if WALL_CLOCK_CALL.search(line):
                        violations.append(f'{file_path.relative_to(ROOT)}:{line_no}: {line.strip()}')

        self.assertEqual(violations, [], 'direct wall-clock reads:\n' + '\n'.join(violations))

    def test_time_dependent_services_accept_a_time_provider(self):
        services = ROOT / 'attendance_engine' / 'services'
        for name in ('window_manager.py', 'checkin_pipeline.py', 'attendance_state.py', 'leave_service.py', 'makeup_service.py'):
            with self.subTest(module=name):
                self.assertIn('time_provider: TimeProvider = default_time_provider', (services / name).read_text(encoding='utf-8'))


if __name__ == '__main__':
    unittest.main()
