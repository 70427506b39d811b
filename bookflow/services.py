import json
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .groups import add_participant, find_group_appointment
from .models import (
    ActivityLog,
    Appointment,
    AppointmentParticipant,
    Business,
    BusinessSettings,
    Customer,
    RescheduleRequest,
    Service,
    Worker,
    WorkerService,
    utc_now_naive,
)
from .platform import can_business_perform_action, is_trial_expired, trial_end_for_new_business
from .scheduling import (
    BLOCKING_STATUSES,
    NotFoundError,
    StateConflictError,
    ensure_slot_free,
    is_group_service,
    is_within_working_hours,
    is_working_day,
    load_calendar_config,
    load_calendar_document,
    lock_worker_calendar,
    to_utc_naive,
)

log = structlog.get_logger("bookflow.services")

WRITABLE_APPOINTMENT_STATUSES = {"pending", "confirmed", "cancelled"}


def create_business(db: Session, slug: str, name: str, plan: str = "free") -> Business:
    business = Business(
        slug=slug.strip().lower(),
        name=name.strip(),
        plan=plan,
        trial_ends_at=trial_end_for_new_business(),
        created_at=utc_now_naive(),
    )
    db.add(business)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise StateConflictError("Business slug already exists")
    db.refresh(business)
    log.info("business_created", tenant_id=business.id, slug=business.slug, plan=business.plan)
    return business


def _deep_merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_calendar_settings(db: Session, tenant_id: int) -> dict:
    config = load_calendar_config(db, tenant_id)
    return {
        "workingHours": {
            "start": config.working_start.strftime("%H:%M"),
            "end": config.working_end.strftime("%H:%M"),
        },
        "workingDays": list(config.working_days),
        "timeSlotGap": config.slot_gap or int(settings.DEFAULT_SLOT_GAP_MINUTES),
    }


def update_calendar_settings(db: Session, tenant_id: int, patch: dict) -> dict:
    hours = patch.get("workingHours")
    if isinstance(hours, dict) and hours.get("start") and hours.get("end"):
        if hours["end"] <= hours["start"]:
            raise ValueError("workingHours.end must be after workingHours.start")

    row = db.execute(
        select(BusinessSettings).where(BusinessSettings.business_id == tenant_id)
    ).scalar_one_or_none()
    if row is None:
        row = BusinessSettings(business_id=tenant_id)
        db.add(row)
    merged = _deep_merge(load_calendar_document(db, tenant_id), patch)
    row.calendar_json = json.dumps(merged, ensure_ascii=True, sort_keys=True)
    row.updated_at = utc_now_naive()
    db.commit()
    return get_calendar_settings(db, tenant_id)


def create_customer(
    db: Session, tenant_id: int, name: str, email: str | None = None, phone: str | None = None
) -> Customer:
    customer = Customer(
        business_id=tenant_id,
        name=name.strip(),
        email=(email or "").strip() or None,
        phone=(phone or "").strip() or None,
        created_at=utc_now_naive(),
    )
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


def get_customer(db: Session, tenant_id: int, customer_id: int) -> Customer | None:
    return db.execute(
        select(Customer).where(Customer.business_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()


def list_customers(db: Session, tenant_id: int, q: str | None = None) -> list[Customer]:
    stmt = select(Customer).where(Customer.business_id == tenant_id)
    if q:
        stmt = stmt.where(Customer.name.ilike(f"%{q.strip()}%"))
    return db.execute(stmt.order_by(Customer.name.asc(), Customer.id.asc())).scalars().all()


def set_customer_blocked(db: Session, tenant_id: int, customer_id: int, blocked: bool) -> Customer | None:
    customer = get_customer(db, tenant_id, customer_id)
    if customer is None:
        return None
    customer.blocked = bool(blocked)
    db.commit()
    db.refresh(customer)
    return customer


def create_service(db: Session, tenant_id: int, **fields) -> Service:
    if fields.get("is_group_service") and not can_business_perform_action(db, tenant_id, "group_services"):
        raise PermissionError("Your plan does not include group services")
    if not fields.get("is_group_service"):
        fields["max_capacity"] = None
        fields["min_capacity"] = None
        fields["allow_waitlist"] = False
    service = Service(business_id=tenant_id, **fields)
    db.add(service)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise StateConflictError("Service with this name already exists")
    db.refresh(service)
    return service


def list_services(db: Session, tenant_id: int, include_inactive: bool = False) -> list[Service]:
    stmt = select(Service).where(Service.business_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(Service.active.is_(True))
    return db.execute(stmt.order_by(Service.name.asc())).scalars().all()


def get_service(db: Session, tenant_id: int, service_id: int) -> Service | None:
    return db.execute(
        select(Service).where(Service.business_id == tenant_id, Service.id == service_id)
    ).scalar_one_or_none()


def get_worker(db: Session, tenant_id: int, worker_id: int) -> Worker | None:
    return db.execute(
        select(Worker).where(Worker.business_id == tenant_id, Worker.id == worker_id)
    ).scalar_one_or_none()


def assign_worker_service(db: Session, tenant_id: int, worker_id: int, service_id: int) -> Worker | None:
    worker = get_worker(db, tenant_id, worker_id)
    if worker is None:
        return None
    if get_service(db, tenant_id, service_id) is None:
        raise NotFoundError("Service not found")
    exists = db.execute(
        select(WorkerService).where(
            WorkerService.worker_id == worker.id, WorkerService.service_id == service_id
        )
    ).scalar_one_or_none()
    if exists is None:
        db.add(WorkerService(worker_id=worker.id, service_id=service_id))
        db.commit()
    return worker


def create_worker(
    db: Session, tenant_id: int, name: str, active: bool = True, service_ids: list[int] | None = None
) -> Worker:
    for service_id in service_ids or []:
        if get_service(db, tenant_id, service_id) is None:
            raise NotFoundError("Service not found")
    worker = Worker(business_id=tenant_id, name=name.strip(), active=active, calendar_version=0)
    db.add(worker)
    db.flush()
    for service_id in sorted(set(service_ids or [])):
        db.add(WorkerService(worker_id=worker.id, service_id=service_id))
    db.commit()
    db.refresh(worker)
    return worker


def list_workers(db: Session, tenant_id: int) -> list[Worker]:
    return db.execute(
        select(Worker).where(Worker.business_id == tenant_id).order_by(Worker.name.asc(), Worker.id.asc())
    ).scalars().all()


def add_activity_log(
    db: Session,
    tenant_id: int,
    customer_id: int,
    activity_type: str,
    appointment_id: int | None = None,
    created_by: str = "customer",
    status: str | None = None,
    metadata: dict | None = None,
) -> ActivityLog:
    now = utc_now_naive()
    row = ActivityLog(
        business_id=tenant_id,
        appointment_id=appointment_id,
        customer_id=customer_id,
        activity_type=activity_type,
        created_by=created_by,
        status=status,
        metadata_json=json.dumps(metadata or {}, ensure_ascii=True, default=str),
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()
    return row


def get_appointment(db: Session, tenant_id: int, appointment_id: int) -> Appointment | None:
    return db.execute(
        select(Appointment).where(
            Appointment.business_id == tenant_id,
            Appointment.id == appointment_id,
        )
    ).scalar_one_or_none()


def list_appointments(
    db: Session,
    tenant_id: int,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    worker_id: int | None = None,
    customer_id: int | None = None,
    service_id: int | None = None,
    status: str | None = None,
) -> list[Appointment]:
    stmt = select(Appointment).where(Appointment.business_id == tenant_id)
    if start_date is not None:
        stmt = stmt.where(Appointment.start >= to_utc_naive(start_date))
    if end_date is not None:
        stmt = stmt.where(Appointment.start <= to_utc_naive(end_date))
    if worker_id is not None:
        stmt = stmt.where(Appointment.worker_id == worker_id)
    if customer_id is not None:
        stmt = stmt.where(Appointment.customer_id == customer_id)
    if service_id is not None:
        stmt = stmt.where(Appointment.service_id == service_id)
    if status:
        stmt = stmt.where(Appointment.status == status.strip().lower())
    return db.execute(stmt.order_by(Appointment.start.asc(), Appointment.id.asc())).scalars().all()


def _validate_interval(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start = to_utc_naive(start)
    end = to_utc_naive(end)
    if end <= start:
        raise ValueError("End time must be after start time")
    return start, end


def _check_duration(service: Service, start: datetime, end: datetime) -> None:
    minutes = (end - start).total_seconds() / 60
    tolerance = max(0, int(settings.DURATION_TOLERANCE_MINUTES))
    if abs(minutes - int(service.duration)) > tolerance:
        raise ValueError(
            f"Service duration mismatch. Expected {service.duration} minutes, got {round(minutes)} minutes"
        )


def _check_working_time(db: Session, tenant_id: int, start: datetime, end: datetime) -> None:
    config = load_calendar_config(db, tenant_id)
    if not is_working_day(start.date(), config):
        raise ValueError("Requested date is not a working day")
    if not is_within_working_hours(start, end, config):
        raise ValueError("Appointment time is outside working hours")


def _ensure_can_book(db: Session, tenant_id: int) -> None:
    business = db.get(Business, tenant_id)
    if business is not None and is_trial_expired(business):
        raise PermissionError("Trial period has expired. Please upgrade your plan to continue booking appointments.")
    if not can_business_perform_action(db, tenant_id, "create_appointments"):
        raise PermissionError("Your plan does not allow creating appointments. Please upgrade your plan.")


def create_appointment(
    db: Session,
    tenant_id: int,
    customer_id: int,
    service_id: int,
    worker_id: int,
    start: datetime,
    end: datetime,
    status: str = "pending",
    notes: str | None = None,
    created_by: str = "admin",
) -> Appointment:
    _ensure_can_book(db, tenant_id)
    normalized_status = (status or "pending").strip().lower()
    if normalized_status not in WRITABLE_APPOINTMENT_STATUSES:
        raise ValueError("Invalid appointment status")

    start, end = _validate_interval(start, end)
    if start < utc_now_naive():
        raise ValueError("Cannot create appointments in the past")

    customer = get_customer(db, tenant_id, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    if customer.blocked:
        raise PermissionError("Cannot create appointment for blocked customer")

    service = get_service(db, tenant_id, service_id)
    if service is None or not service.active:
        raise NotFoundError("Service not found or inactive")

    worker = get_worker(db, tenant_id, worker_id)
    if worker is None or not worker.active:
        raise NotFoundError("Worker not found or inactive")
    qualified = db.execute(
        select(WorkerService).where(
            WorkerService.worker_id == worker.id, WorkerService.service_id == service.id
        )
    ).scalar_one_or_none()
    if qualified is None:
        raise ValueError("Worker cannot provide this service")

    _check_duration(service, start, end)
    _check_working_time(db, tenant_id, start, end)

    lock_worker_calendar(db, tenant_id, worker.id)
    group = is_group_service(service)
    if group:
        existing = find_group_appointment(db, tenant_id, service.id, worker.id, start, end)
        if existing is not None:
            participant = add_participant(
                db, tenant_id, existing.id, customer.id, status="confirmed", commit=False
            )
            if created_by == "customer":
                add_activity_log(
                    db,
                    tenant_id,
                    customer.id,
                    "appointment_created",
                    appointment_id=existing.id,
                    created_by=created_by,
                    status="completed",
                    metadata={"joinedGroup": True, "participantStatus": participant.status},
                )
            db.commit()
            db.refresh(existing)
            log.info(
                "group_appointment_joined",
                tenant_id=tenant_id,
                appointment_id=existing.id,
                customer_id=customer.id,
                participant_status=participant.status,
            )
            return existing

    ensure_slot_free(db, tenant_id, worker.id, start, end, service_id=service.id)

    now = utc_now_naive()
    appointment = Appointment(
        business_id=tenant_id,
        customer_id=customer.id,
        service_id=service.id,
        worker_id=worker.id,
        start=start,
        end=end,
        status=normalized_status,
        is_group_appointment=group,
        current_participants=1,
        notes=notes,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    db.flush()
    if group:
        db.add(
            AppointmentParticipant(
                appointment_id=appointment.id,
                customer_id=customer.id,
                status="confirmed",
                joined_at=now,
                created_at=now,
            )
        )
    if created_by == "customer":
        add_activity_log(
            db,
            tenant_id,
            customer.id,
            "appointment_created",
            appointment_id=appointment.id,
            created_by=created_by,
            status="completed",
            metadata={
                "start": start.isoformat(),
                "end": end.isoformat(),
                "serviceName": service.name,
                "workerName": worker.name,
            },
        )
    db.commit()
    db.refresh(appointment)
    log.info(
        "appointment_created",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        worker_id=worker.id,
        group=group,
    )
    return appointment


def update_appointment(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    status: str | None = None,
    notes: str | None = None,
) -> Appointment | None:
    appointment = get_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return None

    new_status = appointment.status
    if status is not None:
        new_status = status.strip().lower()
        if new_status not in WRITABLE_APPOINTMENT_STATUSES:
            raise ValueError("Invalid appointment status")

    moved = start is not None or end is not None
    new_start, new_end = appointment.start, appointment.end
    if moved:
        new_start, new_end = _validate_interval(start or appointment.start, end or appointment.end)
        service = get_service(db, tenant_id, appointment.service_id)
        if service is not None and start is not None and end is not None:
            _check_duration(service, new_start, new_end)

    # A cancelled appointment taking its slot back must not land on a newer booking.
    reactivated = new_status in BLOCKING_STATUSES and appointment.status not in BLOCKING_STATUSES
    if moved or reactivated:
        lock_worker_calendar(db, tenant_id, appointment.worker_id)
        ensure_slot_free(
            db,
            tenant_id,
            appointment.worker_id,
            new_start,
            new_end,
            exclude_appointment_id=appointment.id,
            service_id=appointment.service_id,
        )
    appointment.start = new_start
    appointment.end = new_end
    appointment.status = new_status
    if notes is not None:
        appointment.notes = notes
    appointment.updated_at = utc_now_naive()
    db.commit()
    db.refresh(appointment)
    return appointment


def cancel_appointment(
    db: Session, tenant_id: int, appointment_id: int, created_by: str = "admin"
) -> Appointment | None:
    appointment = get_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return None
    if appointment.status == "cancelled":
        raise ValueError("Appointment is already cancelled")

    previous = appointment.status
    appointment.status = "cancelled"
    appointment.updated_at = utc_now_naive()
    # A pending time-change request cannot outlive the appointment.
    db.execute(
        update(RescheduleRequest)
        .where(RescheduleRequest.appointment_id == appointment.id, RescheduleRequest.status == "pending")
        .values(status="rejected", decided_at=utc_now_naive(), decided_by="system")
    )
    db.execute(
        update(ActivityLog)
        .where(
            ActivityLog.business_id == tenant_id,
            ActivityLog.appointment_id == appointment.id,
            ActivityLog.activity_type == "reschedule_requested",
            ActivityLog.status == "pending",
        )
        .values(status="rejected", updated_at=utc_now_naive())
    )
    add_activity_log(
        db,
        tenant_id,
        appointment.customer_id,
        "appointment_cancelled",
        appointment_id=appointment.id,
        created_by=created_by,
        status="completed",
        metadata={"previousStatus": previous, "start": appointment.start.isoformat()},
    )
    db.commit()
    db.refresh(appointment)
    log.info("appointment_cancelled", tenant_id=tenant_id, appointment_id=appointment.id)
    return appointment


def delete_appointment(db: Session, tenant_id: int, appointment_id: int) -> bool:
    appointment = get_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return False
    if appointment.start <= utc_now_naive():
        raise ValueError("Cannot delete an appointment that has already started")

    db.query(AppointmentParticipant).filter(
        AppointmentParticipant.appointment_id == appointment.id
    ).delete(synchronize_session=False)
    db.query(RescheduleRequest).filter(
        RescheduleRequest.appointment_id == appointment.id
    ).delete(synchronize_session=False)
    db.execute(
        update(ActivityLog)
        .where(ActivityLog.appointment_id == appointment.id)
        .values(appointment_id=None)
    )
    db.delete(appointment)
    db.commit()
    log.info("appointment_deleted", tenant_id=tenant_id, appointment_id=appointment_id)
    return True
