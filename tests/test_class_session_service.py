import tempfile
import threading
import unittest
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from unittest import mock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from academy.core.errors import InvalidRange, InvalidTransition, NotFound, ScheduleConflict, SessionTerminal
from academy.core.session_states import SessionAction
from academy.core.time_provider import TimeProvider
from academy.db import Base
from academy.models import ClassGroup, ClassSession, Role, SessionHistory, TeacherUnavailability, User
from academy.services import class_session_service
from academy.services.class_session_service import (
    bulk_mark_attendance,
    create_session,
    end_session,
    expand_weekly_sessions,
    get_session,
    initiate_session,
    leave_session,
    list_session_history,
    list_sessions,
    mark_attendance,
    mark_session_absence,
    reschedule_session,
    run_locked,
    session_to_dict,
    start_session,
    transition_session,
)
from academy.services.notification_service import CLASS_CANCELLED, notification_sink


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


class ClassSessionServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_class_session_service.db'
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
            teachers = [User(name=f'Teacher {idx}', role=Role.TEACHER.value, timezone='UTC') for idx in range(2)]
            students = [User(name=f'Student {idx}', role=Role.STUDENT.value, timezone='UTC') for idx in range(3)]
            group = ClassGroup(title='Algebra', subject='Math', timezone='UTC')
            db.add_all([*teachers, *students, group])
            db.commit()
            self.teacher_ids = [row.id for row in teachers]
            self.student_ids = [row.id for row in students]
            self.class_id = group.id
        finally:
            db.close()
        self.db = self._session_factory()

    def tearDown(self):
        self.db.close()

    def _create(self, start=datetime(2026, 10, 19, 10, 0), end=datetime(2026, 10, 19, 11, 0), **kwargs):
        params = {
            'class_id': self.class_id,
            'start_at': start,
            'end_at': end,
            'teacher_ids': [self.teacher_ids[0]],
            'student_ids': list(self.student_ids),
        }
        params.update(kwargs)
        return create_session(self.db, **params)

    def _run_to_running(self, session_id):
        initiate_session(self.db, session_id)
        return start_session(self.db, session_id)

    def test_create_session_builds_attendance_for_every_participant(self):
        session = self._create(teacher_ids=list(self.teacher_ids))
        self.assertEqual(session.status, 'scheduled')
        self.assertEqual(session.version, 1)
        self.assertEqual(session.teacher_ids, self.teacher_ids)
        self.assertEqual(sorted(session.student_ids), sorted(self.student_ids))
        self.assertEqual({row.attendance_status for row in session.attendance}, {'scheduled'})
        history = list_session_history(self.db, session.id)
        self.assertEqual([(row.action, row.to_status) for row in history], [('create', 'scheduled')])

    def test_create_session_accepts_aware_instants(self):
        start = datetime(2026, 10, 19, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        session = self._create(start=start, end=start + timedelta(hours=1))
        self.assertEqual(session.start_at, datetime(2026, 10, 19, 10, 0))
        self.assertEqual(session.end_at, datetime(2026, 10, 19, 11, 0))

    def test_create_session_rejects_inverted_range(self):
        with self.assertRaises(InvalidRange):
            self._create(start=datetime(2026, 10, 19, 11, 0), end=datetime(2026, 10, 19, 11, 0))
        self.assertEqual(self.db.query(ClassSession).count(), 0)

    def test_create_session_validates_participants(self):
        with self.assertRaises(ValueError):
            self._create(teacher_ids=[])
        with self.assertRaises(ValueError):
            self._create(student_ids=[self.student_ids[0], self.student_ids[0]])
        with self.assertRaises(NotFound):
            self._create(teacher_ids=[self.student_ids[0]], student_ids=[])
        with self.assertRaises(NotFound):
            self._create(class_id=9999)

    def test_schedule_conflict_blocks_creation(self):
        self._create()
        with self.assertRaises(ScheduleConflict) as ctx:
            self._create(start=datetime(2026, 10, 19, 10, 30), end=datetime(2026, 10, 19, 11, 30), student_ids=[])
        conflict = ctx.exception.conflicts[0]
        self.assertEqual(conflict['type'], 'schedule')
        self.assertEqual(conflict['teacher_id'], self.teacher_ids[0])
        self.assertEqual(self.db.query(ClassSession).count(), 1)

    def test_adjacent_sessions_do_not_conflict(self):
        self._create()
        session = self._create(start=datetime(2026, 10, 19, 11, 0), end=datetime(2026, 10, 19, 12, 0), student_ids=[])
        self.assertEqual(session.status, 'scheduled')

    def test_availability_conflict_follows_override_policy(self):
        self.db.add(
            TeacherUnavailability(
                teacher_id=self.teacher_ids[0],
                weekday=0,
                start_time=time(9, 0),
                end_time=time(12, 0),
                reason='Training',
            )
        )
        self.db.commit()
        with self.assertRaises(ScheduleConflict) as ctx:
            self._create(allow_availability_override=False)
        self.assertEqual(ctx.exception.conflicts[0]['type'], 'availability')

        session = self._create(allow_availability_override=True)
        self.assertEqual(session.status, 'scheduled')

    def test_full_lifecycle_records_history(self):
        clock = FixedTimeProvider(datetime(2026, 10, 19, 10, 2, tzinfo=timezone.utc))
        session = self._create()
        initiate_session(self.db, session.id, actor_id=self.teacher_ids[0])
        session = get_session(self.db, session.id)
        self.assertEqual(session.status, 'pending')
        self.assertEqual({row.attendance_status for row in session.attendance}, {'expected'})

        session = start_session(self.db, session.id, time_provider=clock)
        self.assertEqual(session.status, 'running')
        self.assertEqual(session.actual_start, datetime(2026, 10, 19, 10, 2))

        session = end_session(self.db, session.id, time_provider=clock)
        self.assertEqual(session.status, 'complete')
        self.assertEqual(session.version, 4)

        actions = [row.action for row in list_session_history(self.db, session.id)]
        self.assertEqual(actions, ['create', 'initiate', 'start', 'end'])

    def test_reapplying_an_action_is_rejected_without_mutation(self):
        session = self._create()
        initiate_session(self.db, session.id)
        with self.assertRaises(InvalidTransition) as ctx:
            initiate_session(self.db, session.id)
        self.assertEqual(ctx.exception.current, 'pending')
        session = get_session(self.db, session.id)
        self.assertEqual(session.version, 2)
        self.assertEqual(len(list_session_history(self.db, session.id)), 2)

    def test_leave_cancels_and_notifies(self):
        received = []

        def handler(event_name, data):
            received.append((event_name, data))

        notification_sink.subscribe(CLASS_CANCELLED, handler)
        try:
            session = self._create()
            session = leave_session(self.db, session.id, actor_id=self.teacher_ids[0], reason='  Teacher sick ')
        finally:
            notification_sink.unsubscribe(CLASS_CANCELLED, handler)
        self.assertEqual(session.status, 'cancelled')
        self.assertEqual(session.cancellation_reason, 'Teacher sick')
        self.assertEqual(session.cancelled_by, self.teacher_ids[0])
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0][1]['session_id'], session.id)
        with self.assertRaises(InvalidTransition):
            initiate_session(self.db, session.id)

    def test_mark_absence_marks_every_student_absent(self):
        session = self._create()
        self._run_to_running(session.id)
        session = mark_session_absence(self.db, session.id, actor_id=self.teacher_ids[0])
        self.assertEqual(session.status, 'absence')
        student_rows = [row for row in session.attendance if row.participant_role == 'student']
        self.assertEqual(len(student_rows), 3)
        self.assertTrue(all(row.attendance_status == 'absent' for row in student_rows))
        teacher_rows = [row for row in session.attendance if row.participant_role == 'teacher']
        self.assertEqual(teacher_rows[0].attendance_status, 'expected')

    def test_failed_transition_leaves_no_partial_write(self):
        session = self._create()
        initiate_session(self.db, session.id)

        with mock.patch.object(class_session_service, '_record_history', side_effect=RuntimeError('history store down')):
            with self.assertRaises(RuntimeError):
                start_session(self.db, session.id)

        check = self._session_factory()
        try:
            row = check.get(ClassSession, session.id)
            self.assertEqual(row.status, 'pending')
            self.assertIsNone(row.actual_start)
            self.assertEqual(row.version, 2)
            self.assertEqual(check.query(SessionHistory).filter(SessionHistory.session_id == session.id).count(), 2)
        finally:
            check.close()

    def test_failed_mark_absence_leaves_every_student_untouched(self):
        session = self._create()
        self._run_to_running(session.id)

        def flush_then_fail(db, *args, **kwargs):
            db.flush()
            raise RuntimeError('history store down')

        with mock.patch.object(class_session_service, '_record_history', side_effect=flush_then_fail):
            with self.assertRaises(RuntimeError):
                mark_session_absence(self.db, session.id, actor_id=self.teacher_ids[0])

        check = self._session_factory()
        try:
            row = check.get(ClassSession, session.id)
            self.assertEqual(row.status, 'running')
            self.assertIsNone(row.actual_end)
            statuses = [record.attendance_status for record in row.attendance if record.participant_role == 'student']
            self.assertEqual(len(statuses), 3)
            self.assertNotIn('absent', statuses)
        finally:
            check.close()

    def test_attendance_only_changes_while_running(self):
        session = self._create()
        student_id = self.student_ids[0]
        with self.assertRaises(InvalidTransition):
            mark_attendance(self.db, session.id, student_id, 'present')

        self._run_to_running(session.id)
        record = mark_attendance(self.db, session.id, student_id, True, actor_id=self.teacher_ids[0])
        self.assertEqual(record.attendance_status, 'present')
        self.assertEqual(record.marked_by, self.teacher_ids[0])

        records = bulk_mark_attendance(self.db, session.id, {self.student_ids[1]: False, self.student_ids[2]: 'absent'})
        self.assertEqual([row.attendance_status for row in records], ['absent', 'absent'])

        with self.assertRaises(NotFound):
            mark_attendance(self.db, session.id, 9999, 'present')
        with self.assertRaises(ValueError):
            mark_attendance(self.db, session.id, student_id, 'late')

        end_session(self.db, session.id)
        with self.assertRaises(SessionTerminal):
            mark_attendance(self.db, session.id, student_id, 'absent')
        record = [row for row in get_session(self.db, session.id).attendance if row.participant_id == student_id][0]
        self.assertEqual(record.attendance_status, 'present')

    def test_reschedule_moves_session_and_keeps_duration(self):
        session = self._create()
        moved = reschedule_session(self.db, session.id, datetime(2026, 10, 20, 15, 0), reason='Exam week')
        self.assertEqual(moved.status, 'scheduled')
        self.assertEqual(moved.start_at, datetime(2026, 10, 20, 15, 0))
        self.assertEqual(moved.end_at, datetime(2026, 10, 20, 16, 0))
        history = list_session_history(self.db, session.id)
        self.assertEqual(history[-1].action, 'reschedule')
        self.assertIn('Exam week', history[-1].notes)

    def test_reschedule_onto_own_slot_is_not_a_conflict(self):
        session = self._create()
        moved = reschedule_session(self.db, session.id, datetime(2026, 10, 19, 10, 30))
        self.assertEqual(moved.start_at, datetime(2026, 10, 19, 10, 30))

    def test_reschedule_requires_scheduled_status(self):
        session = self._create()
        initiate_session(self.db, session.id)
        with self.assertRaises(InvalidTransition):
            reschedule_session(self.db, session.id, datetime(2026, 10, 20, 15, 0))

    def test_conflicting_reschedule_keeps_original_times(self):
        session = self._create()
        self._create(start=datetime(2026, 10, 20, 15, 0), end=datetime(2026, 10, 20, 16, 0), student_ids=[])
        with self.assertRaises(ScheduleConflict):
            reschedule_session(self.db, session.id, datetime(2026, 10, 20, 15, 30))
        row = get_session(self.db, session.id)
        self.assertEqual(row.start_at, datetime(2026, 10, 19, 10, 0))
        self.assertEqual(row.end_at, datetime(2026, 10, 19, 11, 0))
        self.assertEqual(row.status, 'scheduled')

    def test_rescheduled_status_can_be_bound_to_a_new_slot(self):
        session = self._create()
        session.status = 'rescheduled'
        self.db.commit()
        moved = reschedule_session(self.db, session.id, datetime(2026, 10, 21, 9, 0))
        self.assertEqual(moved.status, 'scheduled')

    def test_concurrent_writer_wins_and_loser_revalidates(self):
        session = self._create()
        initiate_session(self.db, session.id)
        calls = {'count': 0}

        def racing_start(row):
            calls['count'] += 1
            if calls['count'] == 1:
                other = self._session_factory()
                try:
                    start_session(other, session.id)
                finally:
                    other.close()
            return transition_session(self.db, row, SessionAction.START)

        with self.assertRaises(InvalidTransition) as ctx:
            run_locked(self.db, session.id, 'start', racing_start)
        self.assertEqual(ctx.exception.current, 'running')
        self.assertEqual(calls['count'], 2)

        row = get_session(self.db, session.id)
        self.assertEqual(row.status, 'running')
        starts = [entry for entry in list_session_history(self.db, session.id) if entry.action == 'start']
        self.assertEqual(len(starts), 1)

    def test_simultaneous_starts_let_exactly_one_win(self):
        session = self._create()
        initiate_session(self.db, session.id)
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def worker():
            db = self._session_factory()
            try:
                barrier.wait(timeout=5)
                start_session(db, session.id)
                result = 'ok'
            except InvalidTransition as exc:
                result = f'rejected:{exc.current}'
            except Exception as exc:  # pragma: no cover - test diagnostic path
                result = f'error:{exc!r}'
            finally:
                db.close()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(sorted(outcomes), ['ok', 'rejected:running'])
        starts = [entry for entry in list_session_history(self.db, session.id) if entry.action == 'start']
        self.assertEqual(len(starts), 1)

    def test_expand_weekly_sessions_creates_every_occurrence(self):
        sessions = expand_weekly_sessions(
            self.db,
            class_id=self.class_id,
            weekdays=[0, 2],
            start_time_value=time(17, 0),
            end_time_value=time(18, 0),
            start_date=date(2026, 10, 19),
            end_date=date(2026, 11, 1),
            teacher_ids=[self.teacher_ids[0]],
            student_ids=[self.student_ids[0]],
        )
        self.assertEqual(len(sessions), 4)
        self.assertEqual([row.start_at.weekday() for row in sessions], [0, 2, 0, 2])

    def test_expand_weekly_sessions_is_all_or_nothing(self):
        self._create(start=datetime(2026, 10, 28, 17, 30), end=datetime(2026, 10, 28, 18, 30), student_ids=[])
        with self.assertRaises(ScheduleConflict) as ctx:
            expand_weekly_sessions(
                self.db,
                class_id=self.class_id,
                weekdays=[0, 2],
                start_time_value=time(17, 0),
                end_time_value=time(18, 0),
                start_date=date(2026, 10, 19),
                end_date=date(2026, 11, 1),
                teacher_ids=[self.teacher_ids[0]],
            )
        self.assertEqual(ctx.exception.conflicts[0]['occurrence_start'], '2026-10-28T17:00:00+00:00')
        self.assertEqual(self.db.query(ClassSession).count(), 1)

    def test_expand_weekly_sessions_crossing_midnight(self):
        sessions = expand_weekly_sessions(
            self.db,
            class_id=self.class_id,
            weekdays=[4],
            start_time_value=time(23, 0),
            end_time_value=time(1, 0),
            start_date=date(2026, 10, 19),
            end_date=date(2026, 10, 25),
            teacher_ids=[self.teacher_ids[0]],
        )
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].start_at, datetime(2026, 10, 23, 23, 0))
        self.assertEqual(sessions[0].end_at, datetime(2026, 10, 24, 1, 0))

    def test_list_sessions_filters_by_participant_and_status(self):
        first = self._create()
        self._create(
            start=datetime(2026, 10, 19, 12, 0),
            end=datetime(2026, 10, 19, 13, 0),
            teacher_ids=[self.teacher_ids[1]],
            student_ids=[self.student_ids[0]],
        )
        leave_session(self.db, first.id)
        self.assertEqual(len(list_sessions(self.db, teacher_id=self.teacher_ids[0])), 1)
        self.assertEqual(len(list_sessions(self.db, student_id=self.student_ids[0])), 2)
        self.assertEqual(len(list_sessions(self.db, statuses=['scheduled'])), 1)
        self.assertEqual(
            len(list_sessions(self.db, start_at=datetime(2026, 10, 19, 11, 0), end_at=datetime(2026, 10, 19, 14, 0))),
            1,
        )

    def test_session_to_dict_exposes_allowed_actions(self):
        session = self._create()
        payload = session_to_dict(session, tz_name='Asia/Kolkata')
        self.assertEqual(payload['allowed_actions'], ['initiate', 'leave', 'reschedule'])
        self.assertEqual(payload['local_start'], '2026-10-19T15:30:00+05:30')
        self.assertEqual(payload['start_at'], '2026-10-19T10:00:00+00:00')


if __name__ == '__main__':
    unittest.main()
