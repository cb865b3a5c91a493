import unittest

from academy.core.errors import InvalidTransition
from academy.core.session_states import (
    TERMINAL_STATUSES,
    SessionAction,
    SessionStatus,
    allowed_actions,
    is_terminal,
    next_status,
)


class SessionStateMachineTests(unittest.TestCase):
    def test_happy_path(self):
        status = SessionStatus.SCHEDULED
        for action, expected in (
            ('initiate', SessionStatus.PENDING),
            ('start', SessionStatus.RUNNING),
            ('end', SessionStatus.COMPLETE),
        ):
            status = next_status(status, action)
            self.assertEqual(status, expected)

    def test_side_branches(self):
        self.assertEqual(next_status('scheduled', 'leave'), SessionStatus.CANCELLED)
        self.assertEqual(next_status('running', 'mark_absence'), SessionStatus.ABSENCE)
        self.assertEqual(next_status('scheduled', 'reschedule'), SessionStatus.SCHEDULED)
        self.assertEqual(next_status('rescheduled', 'reschedule'), SessionStatus.SCHEDULED)

    def test_every_unlisted_pair_is_rejected(self):
        legal = {
            ('scheduled', 'initiate'),
            ('pending', 'start'),
            ('running', 'end'),
            ('running', 'mark_absence'),
            ('scheduled', 'leave'),
            ('scheduled', 'reschedule'),
            ('rescheduled', 'reschedule'),
        }
        for status in SessionStatus:
            for action in SessionAction:
                if (status.value, action.value) in legal:
                    continue
                with self.assertRaises(InvalidTransition) as ctx:
                    next_status(status, action)
                self.assertEqual(ctx.exception.current, status.value)
                self.assertEqual(ctx.exception.action, action.value)

    def test_repeating_an_applied_action_is_rejected(self):
        status = next_status('pending', 'start')
        with self.assertRaises(InvalidTransition):
            next_status(status, 'start')

    def test_end_and_absence_are_mutually_exclusive(self):
        with self.assertRaises(InvalidTransition):
            next_status(next_status('running', 'end'), 'mark_absence')
        with self.assertRaises(InvalidTransition):
            next_status(next_status('running', 'mark_absence'), 'end')

    def test_terminal_states(self):
        self.assertEqual(
            {status.value for status in TERMINAL_STATUSES},
            {'complete', 'cancelled', 'absence'},
        )
        for status in TERMINAL_STATUSES:
            self.assertTrue(is_terminal(status))
            self.assertEqual(allowed_actions(status), [])
        self.assertFalse(is_terminal('running'))

    def test_allowed_actions(self):
        self.assertCountEqual(allowed_actions('scheduled'), ['initiate', 'leave', 'reschedule'])
        self.assertCountEqual(allowed_actions('running'), ['end', 'mark_absence'])

    def test_unknown_action_is_a_value_error(self):
        with self.assertRaises(ValueError):
            next_status('scheduled', 'teleport')

    def test_error_payload(self):
        with self.assertRaises(InvalidTransition) as ctx:
            next_status('complete', 'start')
        payload = ctx.exception.to_dict()
        self.assertEqual(payload['code'], 'invalid_transition')
        self.assertEqual(payload['current'], 'complete')
        self.assertEqual(payload['action'], 'start')


if __name__ == '__main__':
    unittest.main()
