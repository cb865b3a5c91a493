import unittest

from academy.metrics import run_timed_job, timed_service


class TimedServiceTests(unittest.TestCase):
    def test_slow_call_is_logged_and_result_returned(self):
        @timed_service('sample_call', threshold_ms=0)
        def sample_call(value):
            """Double a value."""
            return value * 2

        with self.assertLogs('academy.metrics', 'INFO') as captured:
            self.assertEqual(sample_call(21), 42)
        self.assertIn('service_timer label=sample_call', captured.output[0])
        self.assertEqual(sample_call.__name__, 'sample_call')
        self.assertEqual(sample_call.__doc__, 'Double a value.')

    def test_failures_propagate_through_the_timer(self):
        @timed_service('failing_call', threshold_ms=0)
        def failing_call():
            raise ValueError('bad input')

        with self.assertLogs('academy.metrics', 'INFO'):
            with self.assertRaises(ValueError):
                failing_call()


class RunTimedJobTests(unittest.TestCase):
    def test_job_result_and_status_are_logged(self):
        with self.assertLogs('academy.metrics', 'INFO') as captured:
            self.assertEqual(run_timed_job('nightly', lambda: 'done'), 'done')
        self.assertIn('job_start name=nightly', captured.output[0])
        self.assertIn('job_end name=nightly status=ok', captured.output[-1])

    def test_failed_job_is_logged_and_reraised(self):
        def boom():
            raise RuntimeError('db down')

        with self.assertLogs('academy.metrics', 'INFO') as captured:
            with self.assertRaises(RuntimeError):
                run_timed_job('nightly', boom)
        self.assertTrue(any('job_failed name=nightly' in line for line in captured.output))
        self.assertIn('status=failed', captured.output[-1])


if __name__ == '__main__':
    unittest.main()
