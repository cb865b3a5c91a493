import tempfile
import unittest
from datetime import time
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from academy.core.errors import InvalidRange, NotFound
from academy.db import Base
from academy.models import Role, User
from academy.services.teacher_availability_service import (
    create_teacher_unavailability,
    delete_teacher_unavailability,
    list_teacher_unavailability,
    list_weekly_availability,
    replace_weekly_availability,
)


class TeacherAvailabilityServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_teacher_availability.db'
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
        teacher = User(name='Teacher', role=Role.TEACHER.value)
        student = User(name='Student', role=Role.STUDENT.value)
        self.db.add_all([teacher, student])
        self.db.commit()
        self.teacher_id = teacher.id
        self.student_id = student.id

    def tearDown(self):
        self.db.close()

    def _block(self, weekday=2, start=time(9, 0), end=time(10, 0), teacher_id=None):
        return create_teacher_unavailability(
            self.db,
            teacher_id=teacher_id or self.teacher_id,
            weekday=weekday,
            start_time_value=start,
            end_time_value=end,
            reason=' Workshop ',
        )

    def test_create_and_delete_block(self):
        row = self._block()
        self.assertEqual(row.reason, 'Workshop')
        self.assertEqual(len(list_teacher_unavailability(self.db, self.teacher_id)), 1)
        self.assertTrue(delete_teacher_unavailability(self.db, teacher_id=self.teacher_id, block_id=row.id))
        self.assertFalse(delete_teacher_unavailability(self.db, teacher_id=self.teacher_id, block_id=row.id))

    def test_block_validation(self):
        with self.assertRaises(NotFound):
            self._block(teacher_id=self.student_id)
        with self.assertRaises(ValueError):
            self._block(weekday=7)
        with self.assertRaises(InvalidRange):
            self._block(start=time(10, 0), end=time(10, 0))

    def test_overlapping_blocks_are_rejected_but_adjacent_ones_are_not(self):
        self._block()
        with self.assertRaises(ValueError):
            self._block(start=time(9, 30), end=time(10, 30))
        self._block(start=time(10, 0), end=time(11, 0))
        self._block(weekday=3)
        self.assertEqual(len(list_teacher_unavailability(self.db, self.teacher_id)), 3)

    def test_replace_weekly_availability(self):
        rows = replace_weekly_availability(
            self.db,
            teacher_id=self.teacher_id,
            slots=[(1, time(14, 0), time(18, 0)), (1, time(8, 0), time(12, 0))],
        )
        self.assertEqual([row.start_time for row in rows], [time(8, 0), time(14, 0)])

        replace_weekly_availability(self.db, teacher_id=self.teacher_id, slots=[(4, time(9, 0), time(17, 0))])
        current = list_weekly_availability(self.db, self.teacher_id)
        self.assertEqual([(row.weekday, row.start_time) for row in current], [(4, time(9, 0))])

        replace_weekly_availability(self.db, teacher_id=self.teacher_id, slots=[])
        self.assertEqual(list_weekly_availability(self.db, self.teacher_id), [])

    def test_overlapping_availability_is_rejected(self):
        with self.assertRaises(ValueError):
            replace_weekly_availability(
                self.db,
                teacher_id=self.teacher_id,
                slots=[(1, time(8, 0), time(12, 0)), (1, time(11, 0), time(13, 0))],
            )


if __name__ == '__main__':
    unittest.main()
