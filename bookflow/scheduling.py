import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import settings
from .models import Appointment, BusinessSettings, Service, Worker, WorkerService

log = structlog.get_logger("bookflow.scheduling")

# pending_reschedule keeps holding the current interval until a decision is made.
BLOCKING_STATUSES = ("confirmed", "pending", "pending_reschedule")
ALL_WEEKDAYS = (0, 1, 2, 3, 4, 5, 6)
NOT_A_WORKING_DAY = "Requested date is not a working day"


class SlotConflictError(Exception):
    """Raised when a proposed interval overlaps a blocking appointment of the same worker."""

    def __init__(self, appointment: Appointment):
        super().__init__("Time slot is already booked")
        self.appointment = appointment


class StateConflictError(Exception):
    pass


class NotFoundError(LookupError):
    """A tenant-scoped prerequisite (customer, service, worker, participant) is missing."""


@dataclass(frozen=True)
class CalendarConfig:
    working_start: time
    working_end: time
    working_days: tuple[int, ...]
    slot_gap: int | None = None


@dataclass(frozen=True)
class AvailableSlot:
    start: datetime
    end: datetime
    worker_id: int
    worker_name: str


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return a_start < b_end and b_start < a_end


def weekday_index(day: date) -> int:
    """0 = Sunday ... 6 = Saturday, the numbering stored in calendar settings."""
    return day.isoweekday() % 7


def parse_hhmm(raw, fallback: str) -> time:
    for candidate in (raw, fallback):
        if not isinstance(candidate, str):
            continue
        try:
            hours, minutes = candidate.strip().split(":")[:2]
            return time(int(hours), int(minutes))
        except (ValueError, TypeError):
            continue
    return time(9, 0)


def calendar_config_from_dict(calendar: dict | None) -> CalendarConfig:
    calendar = calendar if isinstance(calendar, dict) else {}
    hours = calendar.get("workingHours")
    hours = hours if isinstance(hours, dict) else {}
    working_start = parse_hhmm(hours.get("start"), settings.DEFAULT_WORKING_HOURS_START)
    working_end = parse_hhmm(hours.get("end"), settings.DEFAULT_WORKING_HOURS_END)
    if working_end <= working_start:
        working_start = parse_hhmm(settings.DEFAULT_WORKING_HOURS_START, "09:00")
        working_end = parse_hhmm(settings.DEFAULT_WORKING_HOURS_END, "18:00")

    raw_days = calendar.get("workingDays")
    if isinstance(raw_days, list):
        days = tuple(sorted({int(d) for d in raw_days if isinstance(d, int) and 0 <= d <= 6}))
    else:
        days = ALL_WEEKDAYS

    raw_gap = calendar.get("timeSlotGap")
    slot_gap = int(raw_gap) if isinstance(raw_gap, int) and raw_gap > 0 else None
    return CalendarConfig(
        working_start=working_start,
        working_end=working_end,
        working_days=days,
        slot_gap=slot_gap,
    )


def load_calendar_document(db: Session, tenant_id: int) -> dict:
    row = db.execute(
        select(BusinessSettings).where(BusinessSettings.business_id == tenant_id)
    ).scalar_one_or_none()
    if row is None or not row.calendar_json:
        return {}
    try:
        value = json.loads(row.calendar_json)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def load_calendar_config(db: Session, tenant_id: int) -> CalendarConfig:
    return calendar_config_from_dict(load_calendar_document(db, tenant_id))


def is_within_working_hours(start: datetime, end: datetime, config: CalendarConfig) -> bool:
    day_start = datetime.combine(start.date(), config.working_start)
    day_end = datetime.combine(start.date(), config.working_end)
    return start >= day_start and end <= day_end


def is_working_day(day: date, config: CalendarConfig) -> bool:
    return weekday_index(day) in config.working_days


def resolve_slot_gap(requested: int | None, config: CalendarConfig) -> int:
    if requested is not None:
        if requested <= 0:
            raise ValueError("timeSlotGap must be a positive number of minutes")
        return int(requested)
    if config.slot_gap:
        return int(config.slot_gap)
    return max(1, int(settings.DEFAULT_SLOT_GAP_MINUTES))


def lock_worker_calendar(db: Session, tenant_id: int, worker_id: int) -> bool:
    """Serialize booking writes for one worker until the surrounding transaction ends.

    Writing the worker row first takes a row lock on PostgreSQL and the database
    write lock on SQLite, so the conflict check that follows cannot interleave
    with another booking for the same worker.
    """
    result = db.execute(
        update(Worker)
        .where(Worker.business_id == tenant_id, Worker.id == worker_id)
        .values(calendar_version=Worker.calendar_version + 1)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def is_group_service(service: Service | None) -> bool:
    return bool(service and service.is_group_service and (service.max_capacity or 0) > 1)


def find_conflicting_appointment(
    db: Session,
    tenant_id: int,
    worker_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
    service_id: int | None = None,
) -> Appointment | None:
    start = to_utc_naive(start)
    end = to_utc_naive(end)
    stmt = select(Appointment).where(
        Appointment.business_id == tenant_id,
        Appointment.worker_id == worker_id,
        Appointment.status.in_(BLOCKING_STATUSES),
        Appointment.start < end,
        Appointment.end > start,
    )
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)
    rows = db.execute(stmt.order_by(Appointment.start.asc(), Appointment.id.asc())).scalars().all()
    if not rows:
        return None

    if service_id is not None:
        service = db.execute(
            select(Service).where(Service.business_id == tenant_id, Service.id == service_id)
        ).scalar_one_or_none()
        if is_group_service(service):
            # Same-service group sessions are joined, not blocked.
            rows = [
                row
                for row in rows
                if not (row.is_group_appointment and row.service_id == service_id)
            ]
    return rows[0] if rows else None


def ensure_slot_free(
    db: Session,
    tenant_id: int,
    worker_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
    service_id: int | None = None,
) -> None:
    blocking = find_conflicting_appointment(
        db,
        tenant_id,
        worker_id,
        start,
        end,
        exclude_appointment_id=exclude_appointment_id,
        service_id=service_id,
    )
    if blocking is not None:
        log.info(
            "slot_conflict",
            tenant_id=tenant_id,
            worker_id=worker_id,
            blocking_appointment_id=blocking.id,
        )
        raise SlotConflictError(blocking)


def generate_available_slots(
    day: date,
    duration_min: int,
    config: CalendarConfig,
    slot_gap: int,
    workers: list[tuple[int, str]],
    busy: dict[int, list[tuple[datetime, datetime]]],
) -> list[AvailableSlot]:
    if duration_min <= 0:
        raise ValueError("Service duration must be positive")
    if slot_gap <= 0:
        raise ValueError("timeSlotGap must be a positive number of minutes")

    day_start = datetime.combine(day, config.working_start)
    day_end = datetime.combine(day, config.working_end)
    duration = timedelta(minutes=duration_min)
    step = timedelta(minutes=slot_gap)

    slots: list[AvailableSlot] = []
    for worker_id, worker_name in workers:
        intervals = busy.get(worker_id, [])
        current = day_start
        while current + duration <= day_end:
            slot_end = current + duration
            if not any(overlaps(current, slot_end, b_start, b_end) for b_start, b_end in intervals):
                slots.append(
                    AvailableSlot(
                        start=current,
                        end=slot_end,
                        worker_id=worker_id,
                        worker_name=worker_name,
                    )
                )
            current += step

    slots.sort(key=lambda slot: (slot.start, slot.worker_id))
    return slots


def list_qualified_workers(
    db: Session, tenant_id: int, service_id: int, worker_id: int | None = None
) -> list[Worker]:
    stmt = (
        select(Worker)
        .join(WorkerService, WorkerService.worker_id == Worker.id)
        .where(
            Worker.business_id == tenant_id,
            Worker.active.is_(True),
            WorkerService.service_id == service_id,
        )
    )
    if worker_id is not None:
        stmt = stmt.where(Worker.id == worker_id)
    return db.execute(stmt.order_by(Worker.id.asc())).scalars().all()


def get_available_slots(
    db: Session,
    tenant_id: int,
    day: date,
    service_id: int,
    worker_id: int | None = None,
    slot_gap: int | None = None,
) -> dict:
    service = db.execute(
        select(Service).where(
            Service.business_id == tenant_id,
            Service.id == service_id,
            Service.active.is_(True),
        )
    ).scalar_one_or_none()
    if service is None:
        raise NotFoundError("Service not found or inactive")

    config = load_calendar_config(db, tenant_id)
    gap = resolve_slot_gap(slot_gap, config)
    result = {
        "date": day,
        "service": service,
        "slot_gap": gap,
        "available_slots": [],
        "message": None,
    }
    if not is_working_day(day, config):
        result["message"] = NOT_A_WORKING_DAY
        return result

    workers = list_qualified_workers(db, tenant_id, service.id, worker_id)
    if not workers:
        raise NotFoundError("No active workers available for this service")

    window_start = datetime.combine(day, time.min)
    window_end = window_start + timedelta(days=1)
    existing = db.execute(
        select(Appointment).where(
            Appointment.business_id == tenant_id,
            Appointment.worker_id.in_([w.id for w in workers]),
            Appointment.status.in_(BLOCKING_STATUSES),
            Appointment.start < window_end,
            Appointment.end > window_start,
        )
    ).scalars().all()

    busy: dict[int, list[tuple[datetime, datetime]]] = {}
    for appt in existing:
        busy.setdefault(appt.worker_id, []).append((appt.start, appt.end))

    result["available_slots"] = generate_available_slots(
        day=day,
        duration_min=int(service.duration),
        config=config,
        slot_gap=gap,
        workers=[(w.id, w.name) for w in workers],
        busy=busy,
    )
    return result
