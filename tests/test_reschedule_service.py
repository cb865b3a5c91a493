import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from academy.core.errors import InvalidTransition, NotFound, ScheduleConflict
from academy.db import Base
from academy.models import ClassGroup, Role, User
from academy.services.class_session_service import create_session, get_session, initiate_session, list_session_history
from academy.services.notification_service import RESCHEDULE_APPROVED, RESCHEDULE_REQUESTED, SESSION_RESCHEDULED, notification_sink
from academy.services.reschedule_service import (
    approve_reschedule_request,
    create_reschedule_request,
    get_request,
    list_reschedule_requests,
    reject_reschedule_request,
    request_to_dict,
)


class RescheduleServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_reschedule_service.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for table in reversed(Base.metadata.sorted_tables):
            self.db.execute(table.delete())
        admin = User(name='Admin', role=Role.ADMIN.value)
        teacher = User(name='Teacher', role=Role.TEACHER.value)
        outsider = User(name='Other Teacher', role=Role.TEACHER.value)
        student = User(name='Student', role=Role.STUDENT.value)
        group = ClassGroup(title='Chemistry', subject='Science')
        self.db.add_all([admin, teacher, outsider, student, group])
        self.db.commit()
        self.admin_id = admin.id
        self.teacher_id = teacher.id
        self.outsider_id = outsider.id
        self.student_id = student.id
        self.session = create_session(
            self.db,
            class_id=group.id,
            start_at=datetime(2026, 10, 19, 10, 0),
            end_at=datetime(2026, 10, 19, 11, 0),
            teacher_ids=[self.teacher_id],
            student_ids=[self.student_id],
        )
        self.class_id = group.id

        self.events = []
        notification_sink.subscribe('*', self._collect)

    def tearDown(self):
        notification_sink.unsubscribe('*', self._collect)
        self.db.close()

    def _collect(self, event_name, data):
        self.events.append(event_name)

    def _request(self, proposed_start=datetime(2026, 10, 21, 14, 0), requested_by=None):
        return create_reschedule_request(
            self.db,
            session_id=self.session.id,
            requested_by=requested_by or self.teacher_id,
            proposed_start=proposed_start,
            reason='Parent-teacher meeting',
        )

    def test_assigned_teacher_can_request(self):
        row = self._request()
        self.assertEqual(row.status, 'pending')
        self.assertEqual(request_to_dict(row)['proposed_start'], '2026-10-21T14:00:00+00:00')
        self.assertIn(RESCHEDULE_REQUESTED, self.events)

    def test_request_validation(self):
        with self.assertRaises(ValueError):
            create_reschedule_request(
                self.db,
                session_id=self.session.id,
                requested_by=self.teacher_id,
                proposed_start=datetime(2026, 10, 21, 14, 0),
                reason='   ',
            )
        with self.assertRaises(PermissionError):
            self._request(requested_by=self.outsider_id)
        with self.assertRaises(NotFound):
            self._request(requested_by=9999)

        initiate_session(self.db, self.session.id)
        with self.assertRaises(InvalidTransition):
            self._request()

    def test_approval_moves_session_and_closes_request(self):
        row = self._request()
        approved = approve_reschedule_request(self.db, row.id, admin_id=self.admin_id, note='ok')
        self.assertEqual(approved.status, 'approved')
        self.assertEqual(approved.processed_by, self.admin_id)
        self.assertEqual(approved.resolution_note, 'ok')

        session = get_session(self.db, self.session.id)
        self.assertEqual(session.status, 'scheduled')
        self.assertEqual(session.start_at, datetime(2026, 10, 21, 14, 0))
        self.assertEqual(session.end_at, datetime(2026, 10, 21, 15, 0))
        self.assertEqual(list_session_history(self.db, session.id)[-1].action, 'reschedule')
        self.assertEqual(self.events[-2:], [SESSION_RESCHEDULED, RESCHEDULE_APPROVED])

    def test_only_admins_resolve_requests(self):
        row = self._request()
        with self.assertRaises(PermissionError):
            approve_reschedule_request(self.db, row.id, admin_id=self.teacher_id)
        with self.assertRaises(PermissionError):
            reject_reschedule_request(self.db, row.id, admin_id=self.teacher_id)
        self.assertEqual(get_request(self.db, row.id).status, 'pending')

    def test_conflicting_approval_changes_nothing(self):
        create_session(
            self.db,
            class_id=self.class_id,
            start_at=datetime(2026, 10, 21, 14, 30),
            end_at=datetime(2026, 10, 21, 15, 30),
            teacher_ids=[self.teacher_id],
        )
        row = self._request()
        with self.assertRaises(ScheduleConflict):
            approve_reschedule_request(self.db, row.id, admin_id=self.admin_id)
        self.assertEqual(get_request(self.db, row.id).status, 'pending')
        self.assertEqual(get_session(self.db, self.session.id).start_at, datetime(2026, 10, 19, 10, 0))

    def test_resolved_request_cannot_be_resolved_again(self):
        row = self._request()
        rejected = reject_reschedule_request(self.db, row.id, admin_id=self.admin_id, note=' busy ')
        self.assertEqual(rejected.status, 'rejected')
        self.assertEqual(rejected.resolution_note, 'busy')
        with self.assertRaises(InvalidTransition):
            approve_reschedule_request(self.db, row.id, admin_id=self.admin_id)
        with self.assertRaises(InvalidTransition):
            reject_reschedule_request(self.db, row.id, admin_id=self.admin_id)
        self.assertEqual(get_session(self.db, self.session.id).start_at, datetime(2026, 10, 19, 10, 0))

    def test_list_requests_filters(self):
        first = self._request()
        self._request(proposed_start=datetime(2026, 10, 22, 9, 0), requested_by=self.admin_id)
        reject_reschedule_request(self.db, first.id, admin_id=self.admin_id)
        self.assertEqual(len(list_reschedule_requests(self.db)), 2)
        self.assertEqual(len(list_reschedule_requests(self.db, status='pending')), 1)
        self.assertEqual(len(list_reschedule_requests(self.db, requested_by=self.teacher_id)), 1)


if __name__ == '__main__':
    unittest.main()
