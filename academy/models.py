from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Time, UniqueConstraint, event, inspect, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from academy.core.errors import InvoiceImmutable
from academy.core.session_states import AttendanceStatus, SessionStatus
from academy.core.time_provider import utc_now_naive
from academy.db import Base


class Role(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    STUDENT = 'student'


class SubscriptionStatus(str, Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'


class RescheduleRequestStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class InvoiceStatus(str, Enum):
    PENDING = 'pending'
    PAID = 'paid'
    CANCELLED = 'cancelled'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(160))
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    role: Mapped[str] = mapped_column(String(20), default=Role.STUDENT.value, index=True)
    timezone: Mapped[str] = mapped_column(String(60), default='UTC')
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ClassGroup(Base):
    __tablename__ = 'classes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(160))
    subject: Mapped[str] = mapped_column(String(120), default='General', index=True)
    timezone: Mapped[str] = mapped_column(String(60), default='UTC')
    class_link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    sessions: Mapped[list['ClassSession']] = relationship('ClassSession', back_populates='class_group')


class ClassSession(Base):
    __tablename__ = 'class_sessions'
    __table_args__ = (
        Index('ix_class_sessions_class_start', 'class_id', 'start_at'),
        Index('ix_class_sessions_status_start', 'status', 'start_at'),
        CheckConstraint('end_at > start_at', name='ck_class_sessions_end_after_start'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    class_id: Mapped[int] = mapped_column(ForeignKey('classes.id'), index=True)
    start_at: Mapped[datetime] = mapped_column(DateTime, index=True)  # naive UTC
    end_at: Mapped[datetime] = mapped_column(DateTime, index=True)  # naive UTC
    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.SCHEDULED.value, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[int | None] = mapped_column(ForeignKey('users.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __mapper_args__ = {'version_id_col': version}

    class_group: Mapped['ClassGroup'] = relationship('ClassGroup', back_populates='sessions')
    attendance: Mapped[list['AttendanceRecord']] = relationship(
        'AttendanceRecord',
        back_populates='session',
        order_by=lambda: (AttendanceRecord.position, AttendanceRecord.id),
        cascade='all, delete-orphan',
    )

    @property
    def teacher_ids(self) -> list[int]:
        return [row.participant_id for row in self.attendance if row.participant_role == Role.TEACHER.value]

    @property
    def student_ids(self) -> list[int]:
        return [row.participant_id for row in self.attendance if row.participant_role == Role.STUDENT.value]


class AttendanceRecord(Base):
    __tablename__ = 'attendance_records'
    __table_args__ = (
        UniqueConstraint('session_id', 'participant_id', name='uq_attendance_records_session_participant'),
        Index('ix_attendance_records_participant_status', 'participant_id', 'attendance_status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('class_sessions.id'), index=True)
    participant_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    participant_role: Mapped[str] = mapped_column(String(20), index=True)  # teacher|student
    position: Mapped[int] = mapped_column(Integer, default=0)
    attendance_status: Mapped[str] = mapped_column(String(20), default=AttendanceStatus.SCHEDULED.value)
    marked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    marked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    session: Mapped['ClassSession'] = relationship('ClassSession', back_populates='attendance')


class SessionHistory(Base):
    __tablename__ = 'session_history'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('class_sessions.id'), index=True)
    action: Mapped[str] = mapped_column(String(30))
    from_status: Mapped[str] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20))
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class TeacherUnavailability(Base):
    __tablename__ = 'teacher_unavailability'
    __table_args__ = (
        Index('ix_teacher_unavailability_teacher_weekday', 'teacher_id', 'weekday'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    weekday: Mapped[int] = mapped_column(Integer)  # Monday=0 ... Sunday=6
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    reason: Mapped[str] = mapped_column(String(255), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class TeacherAvailabilitySlot(Base):
    __tablename__ = 'teacher_availability_slots'
    __table_args__ = (
        Index('ix_teacher_availability_slots_teacher_weekday', 'teacher_id', 'weekday'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    weekday: Mapped[int] = mapped_column(Integer)  # Monday=0 ... Sunday=6
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class SubscriptionPlan(Base):
    __tablename__ = 'subscription_plans'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    hours_per_month: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal('0'))
    max_free_absences: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default='USD')
    cadence: Mapped[str] = mapped_column(String(20), default='month')  # month|4-weeks
    cadence_multiplier: Mapped[int] = mapped_column(Integer, default=1)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class StudentSubscription(Base):
    __tablename__ = 'student_subscriptions'
    __table_args__ = (
        Index(
            'uq_student_subscriptions_one_active',
            'student_id',
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index('ix_student_subscriptions_status_next_payment', 'status', 'next_payment_date'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey('subscription_plans.id'), index=True)
    start_date: Mapped[date] = mapped_column(Date)
    current_period_start: Mapped[date] = mapped_column(Date)
    next_payment_date: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.ACTIVE.value)
    deactivated_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    plan: Mapped['SubscriptionPlan'] = relationship('SubscriptionPlan')


class RescheduleRequest(Base):
    __tablename__ = 'reschedule_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('class_sessions.id'), index=True)
    requested_by: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    reason: Mapped[str] = mapped_column(Text)
    proposed_start: Mapped[datetime] = mapped_column(DateTime)  # naive UTC
    status: Mapped[str] = mapped_column(String(20), default=RescheduleRequestStatus.PENDING.value, index=True)
    resolution_note: Mapped[str] = mapped_column(Text, default='')
    processed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class InvoiceSequence(Base):
    __tablename__ = 'invoice_sequences'

    name: Mapped[str] = mapped_column(String(40), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0)


class Invoice(Base):
    __tablename__ = 'invoices'
    __table_args__ = (
        UniqueConstraint('invoice_number', name='uq_invoices_invoice_number'),
        Index('ix_invoices_student_period', 'student_id', 'period_start'),
        Index(
            'uq_invoices_subscription_open_period',
            'subscription_id',
            'period_start',
            'period_end',
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    invoice_number: Mapped[str] = mapped_column(String(40), index=True)
    student_id: Mapped[int] = mapped_column(ForeignKey('users.id'), index=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey('student_subscriptions.id'), index=True)
    period_start: Mapped[date] = mapped_column(Date)
    period_end: Mapped[date] = mapped_column(Date)
    months: Mapped[str] = mapped_column(String(40), default='')
    sessions_scheduled: Mapped[int] = mapped_column(Integer, default=0)
    sessions_attended: Mapped[int] = mapped_column(Integer, default=0)
    absences: Mapped[int] = mapped_column(Integer, default=0)
    free_absences_used: Mapped[int] = mapped_column(Integer, default=0)
    total_hours_scheduled: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal('0'))
    total_hours_attended: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal('0'))
    billable_hours: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal('0'))
    hourly_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default='USD')
    status: Mapped[str] = mapped_column(String(20), default=InvoiceStatus.PENDING.value, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    due_date: Mapped[date] = mapped_column(Date, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


INVOICE_SNAPSHOT_FIELDS = (
    'invoice_number',
    'student_id',
    'subscription_id',
    'period_start',
    'period_end',
    'months',
    'sessions_scheduled',
    'sessions_attended',
    'absences',
    'free_absences_used',
    'total_hours_scheduled',
    'total_hours_attended',
    'billable_hours',
    'hourly_rate',
    'total_amount',
    'currency',
    'issued_at',
    'due_date',
)


@event.listens_for(Invoice, 'before_update')
def _reject_invoice_snapshot_changes(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in INVOICE_SNAPSHOT_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise InvoiceImmutable(
            f'Invoice {target.invoice_number} amounts are immutable',
            invoice_number=target.invoice_number,
            fields=changed,
        )
