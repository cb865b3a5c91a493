import unittest
from unittest.mock import patch

from academy.config import settings
from academy.services.notification_service import NotificationSink, log_notification


class NotificationSinkTests(unittest.TestCase):
    def setUp(self):
        self.sink = NotificationSink()
        self.received = []

    def _record(self, event_name, data):
        self.received.append((event_name, data))

    def test_named_and_wildcard_handlers_receive_events(self):
        self.sink.subscribe('invoice_issued', self._record)
        self.sink.subscribe('*', self._record)
        delivered = self.sink.emit('invoice_issued', {'invoice_number': 'INV-001'})
        self.assertEqual(delivered, 2)
        self.assertEqual(len(self.received), 2)
        self.assertEqual(self.sink.emit('class_cancelled', {'session_id': 1}), 1)

    def test_handlers_get_their_own_copy_of_the_payload(self):
        def mutate(event_name, data):
            data['tampered'] = True

        self.sink.subscribe('absence_marked', mutate)
        self.sink.subscribe('absence_marked', self._record)
        payload = {'session_id': 5}
        self.sink.emit('absence_marked', payload)
        self.assertEqual(payload, {'session_id': 5})
        self.assertNotIn('tampered', self.received[0][1])

    def test_failing_handler_is_logged_and_isolated(self):
        def broken(event_name, data):
            raise RuntimeError('smtp down')

        self.sink.subscribe('class_cancelled', broken)
        self.sink.subscribe('class_cancelled', self._record)
        with self.assertLogs('academy.services.notification_service', level='ERROR') as logs:
            delivered = self.sink.emit('class_cancelled', {'session_id': 7})
        self.assertEqual(delivered, 1)
        self.assertEqual(len(self.received), 1)
        self.assertIn('notification_handler_failed', logs.output[0])

    def test_unsubscribe_and_disabled_sink(self):
        self.sink.subscribe('class_cancelled', self._record)
        self.sink.unsubscribe('class_cancelled', self._record)
        self.sink.unsubscribe('class_cancelled', self._record)
        self.assertEqual(self.sink.emit('class_cancelled', {}), 0)

        self.sink.subscribe('class_cancelled', self._record)
        with patch.object(settings, 'enable_notifications', False):
            self.assertEqual(self.sink.emit('class_cancelled', {}), 0)
        self.assertEqual(self.received, [])

    def test_log_notification_writes_event_name(self):
        with self.assertLogs('academy.services.notification_service', level='INFO') as logs:
            log_notification('session_rescheduled', {'session_id': 3})
        self.assertIn('event=session_rescheduled', logs.output[0])


if __name__ == '__main__':
    unittest.main()
