from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

AppointmentStatus = Literal["pending", "confirmed", "cancelled", "pending_reschedule"]
ParticipantStatus = Literal["confirmed", "waitlist", "cancelled"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BusinessCreate(CamelModel):
    slug: str = Field(min_length=2, max_length=80, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=2, max_length=120)
    plan: Literal["free", "basic", "pro"] = "free"


class BusinessOut(CamelModel):
    id: int
    slug: str
    name: str
    plan: str
    trial_ends_at: datetime | None = None
    created_at: datetime


class WorkingHours(CamelModel):
    start: str = Field(pattern=r"^\d{2}:\d{2}$")
    end: str = Field(pattern=r"^\d{2}:\d{2}$")


class CalendarSettingsUpdate(CamelModel):
    working_hours: WorkingHours | None = None
    working_days: list[int] | None = None
    time_slot_gap: int | None = Field(default=None, ge=1, le=480)

    @field_validator("working_days")
    @classmethod
    def validate_working_days(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return value
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("workingDays entries must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))


class CustomerCreate(CamelModel):
    name: str = Field(min_length=2, max_length=120)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, min_length=7, max_length=40)


class CustomerOut(CamelModel):
    id: int
    name: str
    email: str | None = None
    phone: str | None = None
    blocked: bool = False


class CustomerBlockUpdate(CamelModel):
    blocked: bool


class ServiceCreate(CamelModel):
    name: str = Field(min_length=2, max_length=120)
    duration: int = Field(ge=5, le=480)
    price: float = Field(default=0, ge=0)
    active: bool = True
    is_group_service: bool = False
    max_capacity: int | None = Field(default=None, ge=1)
    min_capacity: int | None = Field(default=None, ge=1)
    allow_waitlist: bool = False
    group_pricing_type: Literal["per_person", "fixed"] = "per_person"

    @model_validator(mode="after")
    def validate_group_fields(self):
        if self.is_group_service:
            if self.max_capacity is None or self.max_capacity <= 1:
                raise ValueError("Group services require maxCapacity greater than 1")
            if self.min_capacity is not None and self.min_capacity > self.max_capacity:
                raise ValueError("minCapacity cannot exceed maxCapacity")
        return self


class ServiceOut(CamelModel):
    id: int
    name: str
    duration: int
    price: float
    active: bool
    is_group_service: bool
    max_capacity: int | None = None
    min_capacity: int | None = None
    allow_waitlist: bool
    group_pricing_type: str


class WorkerCreate(CamelModel):
    name: str = Field(min_length=2, max_length=120)
    active: bool = True
    service_ids: list[int] = Field(default_factory=list)


class WorkerOut(CamelModel):
    id: int
    name: str
    active: bool


class AppointmentCreate(CamelModel):
    customer_id: int
    service_id: int
    worker_id: int
    start: datetime
    end: datetime
    status: Literal["pending", "confirmed", "cancelled"] = "pending"
    notes: str | None = Field(default=None, max_length=2000)
    created_by: Literal["customer", "admin"] = "admin"


class AppointmentUpdate(CamelModel):
    start: datetime | None = None
    end: datetime | None = None
    status: Literal["pending", "confirmed", "cancelled"] | None = None
    notes: str | None = Field(default=None, max_length=2000)


class AppointmentOut(CamelModel):
    id: int
    customer_id: int
    service_id: int
    worker_id: int
    start: datetime
    end: datetime
    status: str
    is_group_appointment: bool
    current_participants: int
    notes: str | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime


class AvailableSlotOut(CamelModel):
    start: datetime
    end: datetime
    worker_id: int
    worker_name: str


class AvailabilityOut(CamelModel):
    date: date
    service_id: int
    service_name: str
    duration: int
    time_slot_gap: int
    available_slots: list[AvailableSlotOut]
    message: str | None = None


class RescheduleRequestCreate(CamelModel):
    requested_start: datetime
    requested_end: datetime


class RescheduleRequestOut(CamelModel):
    id: int
    appointment_id: int
    activity_log_id: int | None = None
    original_start: datetime
    original_end: datetime
    requested_start: datetime
    requested_end: datetime
    previous_status: str
    status: str
    rejection_message: str | None = None
    decided_at: datetime | None = None
    created_at: datetime


class RescheduleRequestResult(CamelModel):
    message: str
    appointment: AppointmentOut
    reschedule_request: RescheduleRequestOut


class RescheduleDecisionBody(CamelModel):
    message: str | None = Field(default=None, max_length=500)
    decided_by: str | None = Field(default=None, max_length=160)


class RescheduleDecisionOut(CamelModel):
    success: bool = True
    message: str
    appointment: AppointmentOut | None = None


class ActivityLogOut(CamelModel):
    id: int
    appointment_id: int | None = None
    customer_id: int
    customer_name: str | None = None
    activity_type: str
    created_by: str
    status: str | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime


class ActivityLogPage(CamelModel):
    items: list[ActivityLogOut]
    total: int
    page: int
    limit: int
    total_pages: int


class ParticipantCreate(CamelModel):
    customer_id: int
    status: Literal["confirmed", "waitlist"] = "confirmed"


class ParticipantOut(CamelModel):
    id: int
    appointment_id: int
    customer_id: int
    customer_name: str | None = None
    status: str
    joined_at: datetime


class CapacityOut(CamelModel):
    current: int
    max: int
    available: int
    is_full: bool


class GroupAppointmentOut(CamelModel):
    id: int
    service_id: int
    worker_id: int
    worker_name: str | None = None
    start: datetime
    end: datetime
    status: str
    current_participants: int
    max_capacity: int
    available_spots: int
    is_full: bool
    allow_waitlist: bool


class ServiceCapacityOut(CamelModel):
    max_capacity: int | None = None
    min_capacity: int | None = None
    allow_waitlist: bool


class ServiceGroupSettingsOut(ServiceCapacityOut):
    is_group_service: bool


class GroupAvailabilityOut(CamelModel):
    is_group_service: bool
    service_capacity: ServiceCapacityOut | None = None
    appointments: list[GroupAppointmentOut]


class FeatureFlagSet(CamelModel):
    enabled: bool


class FeatureFlagOut(CamelModel):
    flag_key: str
    enabled: bool
    updated_at: datetime


class OutboxEventOut(CamelModel):
    id: int
    topic: str
    key: str | None = None
    status: str
    retries: int
    last_error: str | None = None
    created_at: datetime
    published_at: datetime | None = None
    delivered_at: datetime | None = None


class OutboxDispatchOut(CamelModel):
    processed: int
    published: int
    failed: int
    dead_lettered: int


class OutboxHealthOut(CamelModel):
    checked_at: datetime
    pending_count: int
    failed_count: int
    dead_letter_count: int
    published_count: int
    oldest_pending_age_seconds: int
