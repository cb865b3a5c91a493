from datetime import date, datetime, time
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class SessionCreateRequest(BaseModel):
    class_id: int
    start_at: datetime
    end_at: datetime
    teacher_ids: list[int] = Field(min_length=1)
    student_ids: list[int] = Field(default_factory=list)
    actor_id: int | None = None
    allow_availability_override: bool | None = None


class RecurringSessionRequest(BaseModel):
    class_id: int
    weekdays: list[int] = Field(min_length=1)
    start_time: time
    end_time: time
    start_date: date
    end_date: date
    teacher_ids: list[int] = Field(min_length=1)
    student_ids: list[int] = Field(default_factory=list)
    timezone: str | None = None
    actor_id: int | None = None
    allow_availability_override: bool | None = None


class TransitionRequest(BaseModel):
    action: Literal['initiate', 'start', 'end', 'mark_absence', 'leave', 'reschedule']
    actor_id: int | None = None
    reason: str | None = Field(default=None, max_length=1000)
    new_start: datetime | None = None
    allow_availability_override: bool | None = None


class ProposedRange(BaseModel):
    start_at: datetime
    end_at: datetime


class SlotConflictRequest(BaseModel):
    teacher_ids: list[int] = Field(min_length=1)
    start_at: datetime
    end_at: datetime


class AttendanceMarkRequest(BaseModel):
    marks: dict[int, Literal['present', 'absent', 'expected'] | bool]
    actor_id: int | None = None


class BillingPeriod(BaseModel):
    start: date
    end: date


class BillingCalculateRequest(BaseModel):
    student_id: int
    subscription_id: int
    period: BillingPeriod


class InvoiceCreateRequest(BaseModel):
    student_id: int
    subscription_id: int
    period: BillingPeriod
    allow_inactive: bool = False


class InvoiceStatusRequest(BaseModel):
    status: Literal['paid', 'cancelled']


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    hourly_rate: Decimal = Field(ge=0)
    hours_per_month: Decimal = Field(default=Decimal('0'), ge=0)
    max_free_absences: int = Field(default=0, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    cadence: Literal['month', '4-weeks'] = 'month'
    cadence_multiplier: int = Field(default=1, ge=1)


class SubscriptionCreateRequest(BaseModel):
    student_id: int
    plan_id: int
    start_date: date


class RescheduleRequestCreate(BaseModel):
    session_id: int
    requested_by: int
    proposed_start: datetime
    reason: str = Field(min_length=1, max_length=1000)


class RescheduleResolution(BaseModel):
    admin_id: int
    note: str = Field(default='', max_length=1000)
    allow_availability_override: bool | None = None


class UnavailabilityPayload(BaseModel):
    weekday: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    reason: str = Field(default='', max_length=255)


class AvailabilitySlotPayload(BaseModel):
    weekday: int = Field(ge=0, le=6)
    start_time: time
    end_time: time


class WeeklyAvailabilityPayload(BaseModel):
    slots: list[AvailabilitySlotPayload] = Field(default_factory=list)
