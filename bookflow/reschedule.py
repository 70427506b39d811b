"""Customer-initiated time changes that wait for an admin decision.

A request stores the proposed interval in its own ``reschedule_requests`` row
and moves the appointment to ``pending_reschedule``. Approval re-checks the
worker's calendar before applying the new interval; rejection restores the
status the appointment had before the request. Customer e-mails are staged in
the outbox inside the same transaction as the decision.
"""
import json
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import ActivityLog, Appointment, Customer, RescheduleRequest, Service, Worker, utc_now_naive
from .notifications import DEFAULT_REJECTION_MESSAGE
from .platform import enqueue_outbox_event
from .scheduling import StateConflictError, ensure_slot_free, lock_worker_calendar, to_utc_naive
from .services import add_activity_log, get_appointment

log = structlog.get_logger("bookflow.reschedule")

RESCHEDULABLE_STATUSES = ("confirmed", "pending")


def _names(db: Session, appointment: Appointment) -> tuple[str, str]:
    service = db.get(Service, appointment.service_id)
    worker = db.get(Worker, appointment.worker_id)
    return (
        service.name if service else "Unknown Service",
        worker.name if worker else "Unknown Worker",
    )


def _pending_request(db: Session, appointment_id: int) -> RescheduleRequest | None:
    return db.execute(
        select(RescheduleRequest).where(
            RescheduleRequest.appointment_id == appointment_id,
            RescheduleRequest.status == "pending",
        )
    ).scalar_one_or_none()


def request_reschedule(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    requested_start: datetime,
    requested_end: datetime,
) -> tuple[Appointment, RescheduleRequest] | None:
    appointment = get_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return None

    if appointment.status == "pending_reschedule" or _pending_request(db, appointment.id) is not None:
        raise StateConflictError("A reschedule request is already pending for this appointment")
    if appointment.status not in RESCHEDULABLE_STATUSES:
        raise ValueError(f"Cannot reschedule an appointment with status '{appointment.status}'")

    start = to_utc_naive(requested_start)
    end = to_utc_naive(requested_end)
    if start == appointment.start:
        raise ValueError("Cannot reschedule to the same date and time")
    if end <= start:
        raise ValueError("End time must be after start time")

    lock_worker_calendar(db, tenant_id, appointment.worker_id)
    ensure_slot_free(
        db,
        tenant_id,
        appointment.worker_id,
        start,
        end,
        exclude_appointment_id=appointment.id,
        service_id=appointment.service_id,
    )

    service_name, worker_name = _names(db, appointment)
    activity = add_activity_log(
        db,
        tenant_id,
        appointment.customer_id,
        "reschedule_requested",
        appointment_id=appointment.id,
        created_by="customer",
        status="pending",
        metadata={
            "originalStart": appointment.start.isoformat(),
            "originalEnd": appointment.end.isoformat(),
            "requestedStart": start.isoformat(),
            "requestedEnd": end.isoformat(),
            "serviceName": service_name,
            "workerName": worker_name,
        },
    )
    request_row = RescheduleRequest(
        business_id=tenant_id,
        appointment_id=appointment.id,
        activity_log_id=activity.id,
        original_start=appointment.start,
        original_end=appointment.end,
        requested_start=start,
        requested_end=end,
        previous_status=appointment.status,
        status="pending",
        created_at=utc_now_naive(),
    )
    db.add(request_row)
    appointment.status = "pending_reschedule"
    appointment.updated_at = utc_now_naive()
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent request for the same appointment.
        db.rollback()
        raise StateConflictError("A reschedule request is already pending for this appointment")
    db.refresh(appointment)
    db.refresh(request_row)
    log.info(
        "reschedule_requested",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        request_id=request_row.id,
    )
    return appointment, request_row


def _load_pending(db: Session, tenant_id: int, activity_log_id: int):
    activity = db.execute(
        select(ActivityLog).where(
            ActivityLog.business_id == tenant_id,
            ActivityLog.id == activity_log_id,
            ActivityLog.activity_type == "reschedule_requested",
            ActivityLog.status == "pending",
        )
    ).scalar_one_or_none()
    if activity is None or activity.appointment_id is None:
        return None
    request_row = db.execute(
        select(RescheduleRequest).where(
            RescheduleRequest.business_id == tenant_id,
            RescheduleRequest.activity_log_id == activity.id,
            RescheduleRequest.status == "pending",
        )
    ).scalar_one_or_none()
    if request_row is None:
        return None
    appointment = get_appointment(db, tenant_id, activity.appointment_id)
    if appointment is None:
        return None
    return activity, request_row, appointment


def _email_payload(db: Session, tenant_id: int, customer_id: int, **fields) -> dict | None:
    customer = db.execute(
        select(Customer).where(Customer.business_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if customer is None or not customer.email:
        return None
    return {
        "customer_email": customer.email,
        "customer_name": customer.name or "Customer",
        **fields,
    }


def approve_reschedule(
    db: Session, tenant_id: int, activity_log_id: int, decided_by: str | None = None
) -> Appointment | None:
    loaded = _load_pending(db, tenant_id, activity_log_id)
    if loaded is None:
        return None
    activity, request_row, appointment = loaded
    if appointment.status == "cancelled":
        raise StateConflictError("Appointment was cancelled")

    lock_worker_calendar(db, tenant_id, appointment.worker_id)
    ensure_slot_free(
        db,
        tenant_id,
        appointment.worker_id,
        request_row.requested_start,
        request_row.requested_end,
        exclude_appointment_id=appointment.id,
        service_id=appointment.service_id,
    )

    now = utc_now_naive()
    original_start = appointment.start
    appointment.start = request_row.requested_start
    appointment.end = request_row.requested_end
    appointment.status = "confirmed"
    appointment.updated_at = now

    request_row.status = "approved"
    request_row.decided_by = decided_by
    request_row.decided_at = now
    activity.status = "approved"
    activity.updated_at = now

    service_name, worker_name = _names(db, appointment)
    add_activity_log(
        db,
        tenant_id,
        appointment.customer_id,
        "reschedule_approved",
        appointment_id=appointment.id,
        created_by="admin",
        status="completed",
        metadata={
            "originalStart": request_row.original_start.isoformat(),
            "originalEnd": request_row.original_end.isoformat(),
            "requestedStart": request_row.requested_start.isoformat(),
            "requestedEnd": request_row.requested_end.isoformat(),
            "serviceName": service_name,
            "workerName": worker_name,
        },
    )
    payload = _email_payload(
        db,
        tenant_id,
        appointment.customer_id,
        service_name=service_name,
        worker_name=worker_name,
        original_start=original_start.isoformat(),
        new_start=appointment.start.isoformat(),
    )
    if payload is not None:
        enqueue_outbox_event(
            db,
            topic="email.reschedule_approved",
            payload=payload,
            tenant_id=tenant_id,
            key=f"reschedule:{request_row.id}",
        )
    db.commit()
    db.refresh(appointment)
    log.info(
        "reschedule_approved",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        request_id=request_row.id,
    )
    return appointment


def reject_reschedule(
    db: Session,
    tenant_id: int,
    activity_log_id: int,
    message: str | None = None,
    decided_by: str | None = None,
) -> Appointment | None:
    loaded = _load_pending(db, tenant_id, activity_log_id)
    if loaded is None:
        return None
    activity, request_row, appointment = loaded
    rejection_message = (message or "").strip() or DEFAULT_REJECTION_MESSAGE

    now = utc_now_naive()
    request_row.status = "rejected"
    request_row.rejection_message = rejection_message
    request_row.decided_by = decided_by
    request_row.decided_at = now
    activity.status = "rejected"
    activity.updated_at = now
    if appointment.status == "pending_reschedule":
        appointment.status = request_row.previous_status
        appointment.updated_at = now

    service_name, worker_name = _names(db, appointment)
    add_activity_log(
        db,
        tenant_id,
        appointment.customer_id,
        "reschedule_rejected",
        appointment_id=appointment.id,
        created_by="admin",
        status="completed",
        metadata={
            "originalStart": request_row.original_start.isoformat(),
            "originalEnd": request_row.original_end.isoformat(),
            "requestedStart": request_row.requested_start.isoformat(),
            "requestedEnd": request_row.requested_end.isoformat(),
            "serviceName": service_name,
            "workerName": worker_name,
            "rejectionMessage": rejection_message,
        },
    )
    payload = _email_payload(
        db,
        tenant_id,
        appointment.customer_id,
        service_name=service_name,
        worker_name=worker_name,
        appointment_start=request_row.original_start.isoformat(),
        rejection_message=rejection_message,
    )
    if payload is not None:
        enqueue_outbox_event(
            db,
            topic="email.reschedule_rejected",
            payload=payload,
            tenant_id=tenant_id,
            key=f"reschedule:{request_row.id}",
        )
    db.commit()
    db.refresh(appointment)
    log.info(
        "reschedule_rejected",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        request_id=request_row.id,
    )
    return appointment


def list_activity_logs(
    db: Session,
    tenant_id: int,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    activity_type: str | None = None,
    customer_id: int | None = None,
    status: str | None = None,
    created_by: str | None = "customer",
    page: int = 1,
    limit: int = 25,
) -> dict:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))
    conditions = [ActivityLog.business_id == tenant_id]
    if start_date is not None:
        conditions.append(ActivityLog.created_at >= to_utc_naive(start_date))
    if end_date is not None:
        conditions.append(ActivityLog.created_at <= to_utc_naive(end_date))
    if activity_type:
        conditions.append(ActivityLog.activity_type == activity_type)
    if customer_id is not None:
        conditions.append(ActivityLog.customer_id == customer_id)
    if status:
        conditions.append(ActivityLog.status == status)
    if created_by:
        conditions.append(ActivityLog.created_by == created_by)

    total = int(db.execute(select(func.count(ActivityLog.id)).where(*conditions)).scalar_one())
    rows = db.execute(
        select(ActivityLog, Customer.name)
        .join(Customer, Customer.id == ActivityLog.customer_id)
        .where(*conditions)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    items = []
    for row, customer_name in rows:
        try:
            metadata = json.loads(row.metadata_json or "{}")
        except (TypeError, ValueError):
            metadata = {}
        items.append(
            {
                "id": row.id,
                "appointment_id": row.appointment_id,
                "customer_id": row.customer_id,
                "customer_name": customer_name,
                "activity_type": row.activity_type,
                "created_by": row.created_by,
                "status": row.status,
                "metadata": metadata if isinstance(metadata, dict) else {},
                "created_at": row.created_at,
            }
        )
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }
