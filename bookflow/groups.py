from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .models import Appointment, AppointmentParticipant, Customer, Service, Worker, utc_now_naive
from .platform import enqueue_outbox_event
from .scheduling import NotFoundError, StateConflictError, is_group_service, to_utc_naive

log = structlog.get_logger("bookflow.groups")

ACTIVE_PARTICIPANT_STATUSES = ("confirmed", "waitlist")


def get_service_capacity(db: Session, tenant_id: int, service_id: int) -> dict | None:
    service = db.execute(
        select(Service).where(Service.business_id == tenant_id, Service.id == service_id)
    ).scalar_one_or_none()
    if service is None:
        return None
    return {
        "is_group_service": is_group_service(service),
        "max_capacity": service.max_capacity,
        "min_capacity": service.min_capacity,
        "allow_waitlist": bool(service.allow_waitlist),
    }


def get_available_capacity(appointment: Appointment, service: Service | None) -> dict:
    current = int(appointment.current_participants or 0)
    if not appointment.is_group_appointment or not is_group_service(service):
        return {"current": current, "max": 1, "available": 0, "is_full": True}
    maximum = int(service.max_capacity)
    available = max(0, maximum - current)
    return {"current": current, "max": maximum, "available": available, "is_full": available == 0}


def lock_appointment(db: Session, tenant_id: int, appointment_id: int) -> bool:
    """Take the row lock for one appointment; held until commit or rollback."""
    result = db.execute(
        update(Appointment)
        .where(Appointment.business_id == tenant_id, Appointment.id == appointment_id)
        .values(updated_at=utc_now_naive())
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def _confirmed_count(db: Session, appointment_id: int) -> int:
    return int(
        db.execute(
            select(func.count(AppointmentParticipant.id)).where(
                AppointmentParticipant.appointment_id == appointment_id,
                AppointmentParticipant.status == "confirmed",
            )
        ).scalar_one()
    )


def _waitlist_count(db: Session, appointment_id: int) -> int:
    return int(
        db.execute(
            select(func.count(AppointmentParticipant.id)).where(
                AppointmentParticipant.appointment_id == appointment_id,
                AppointmentParticipant.status == "waitlist",
            )
        ).scalar_one()
    )


def recompute_participants(db: Session, appointment: Appointment) -> int:
    db.flush()
    appointment.current_participants = _confirmed_count(db, appointment.id)
    return appointment.current_participants


def get_group_appointment(db: Session, tenant_id: int, appointment_id: int) -> Appointment | None:
    return db.execute(
        select(Appointment).where(
            Appointment.business_id == tenant_id,
            Appointment.id == appointment_id,
        )
    ).scalar_one_or_none()


def add_participant(
    db: Session,
    tenant_id: int,
    appointment_id: int,
    customer_id: int,
    status: str = "confirmed",
    commit: bool = True,
) -> AppointmentParticipant | None:
    if status not in ACTIVE_PARTICIPANT_STATUSES:
        raise ValueError("status must be confirmed or waitlist")
    if not lock_appointment(db, tenant_id, appointment_id):
        return None
    appointment = get_group_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return None
    db.refresh(appointment)
    if not appointment.is_group_appointment:
        raise ValueError("This is not a group appointment")
    if appointment.status == "cancelled":
        raise StateConflictError("Appointment is cancelled")

    customer = db.execute(
        select(Customer).where(Customer.business_id == tenant_id, Customer.id == customer_id)
    ).scalar_one_or_none()
    if customer is None:
        raise NotFoundError("Customer not found")

    existing = db.execute(
        select(AppointmentParticipant).where(
            AppointmentParticipant.appointment_id == appointment.id,
            AppointmentParticipant.customer_id == customer_id,
        )
    ).scalar_one_or_none()
    if existing is not None and existing.status != "cancelled":
        raise StateConflictError("Customer is already a participant")

    service = db.get(Service, appointment.service_id)
    if status == "confirmed":
        maximum = int(service.max_capacity or 1) if service is not None else 1
        if _confirmed_count(db, appointment.id) >= maximum:
            if service is not None and service.allow_waitlist:
                status = "waitlist"
            else:
                raise StateConflictError("Appointment is full")

    now = utc_now_naive()
    if existing is not None:
        existing.status = status
        existing.joined_at = now
        participant = existing
    else:
        participant = AppointmentParticipant(
            appointment_id=appointment.id,
            customer_id=customer_id,
            status=status,
            joined_at=now,
            created_at=now,
        )
        db.add(participant)
    recompute_participants(db, appointment)
    appointment.updated_at = now
    log.info(
        "participant_added",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        customer_id=customer_id,
        status=status,
    )
    if commit:
        db.commit()
        db.refresh(participant)
    return participant


def remove_participant(
    db: Session, tenant_id: int, appointment_id: int, customer_id: int
) -> Appointment | None:
    if not lock_appointment(db, tenant_id, appointment_id):
        return None
    appointment = get_group_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return None
    participant = db.execute(
        select(AppointmentParticipant).where(
            AppointmentParticipant.appointment_id == appointment.id,
            AppointmentParticipant.customer_id == customer_id,
        )
    ).scalar_one_or_none()
    if participant is None:
        raise NotFoundError("Participant not found")

    freed_seat = participant.status == "confirmed"
    db.delete(participant)
    recompute_participants(db, appointment)
    appointment.updated_at = utc_now_naive()

    if freed_seat and _waitlist_count(db, appointment.id) > 0:
        enqueue_outbox_event(
            db,
            topic="group_appointment.spot_opened",
            payload={
                "appointment_id": appointment.id,
                "service_id": appointment.service_id,
                "start": appointment.start.isoformat(),
                "current_participants": appointment.current_participants,
            },
            tenant_id=tenant_id,
            key=f"appointment:{appointment.id}",
        )
    db.commit()
    db.refresh(appointment)
    log.info(
        "participant_removed",
        tenant_id=tenant_id,
        appointment_id=appointment.id,
        customer_id=customer_id,
    )
    return appointment


def list_participants(db: Session, tenant_id: int, appointment_id: int) -> list[AppointmentParticipant] | None:
    appointment = get_group_appointment(db, tenant_id, appointment_id)
    if appointment is None:
        return None
    return (
        db.query(AppointmentParticipant)
        .filter(AppointmentParticipant.appointment_id == appointment.id)
        .order_by(AppointmentParticipant.joined_at.asc(), AppointmentParticipant.id.asc())
        .all()
    )


def find_group_appointment(
    db: Session,
    tenant_id: int,
    service_id: int,
    worker_id: int,
    start: datetime,
    end: datetime,
) -> Appointment | None:
    return db.execute(
        select(Appointment)
        .where(
            Appointment.business_id == tenant_id,
            Appointment.service_id == service_id,
            Appointment.worker_id == worker_id,
            Appointment.start == to_utc_naive(start),
            Appointment.end == to_utc_naive(end),
            Appointment.is_group_appointment.is_(True),
            Appointment.status != "cancelled",
        )
        .order_by(Appointment.id.asc())
    ).scalars().first()


def list_group_availability(
    db: Session,
    tenant_id: int,
    service_id: int,
    worker_id: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict | None:
    service = db.execute(
        select(Service).where(Service.business_id == tenant_id, Service.id == service_id)
    ).scalar_one_or_none()
    if service is None:
        return None
    if not is_group_service(service):
        return {"is_group_service": False, "service_capacity": None, "appointments": []}

    stmt = select(Appointment, Worker.name).join(Worker, Worker.id == Appointment.worker_id).where(
        Appointment.business_id == tenant_id,
        Appointment.service_id == service.id,
        Appointment.is_group_appointment.is_(True),
        Appointment.status != "cancelled",
    )
    if worker_id is not None:
        stmt = stmt.where(Appointment.worker_id == worker_id)
    if start_date is not None:
        stmt = stmt.where(Appointment.start >= to_utc_naive(start_date))
    if end_date is not None:
        stmt = stmt.where(Appointment.start <= to_utc_naive(end_date))

    items = []
    for appointment, worker_name in db.execute(stmt.order_by(Appointment.start.asc(), Appointment.id.asc())).all():
        capacity = get_available_capacity(appointment, service)
        if capacity["is_full"] and not service.allow_waitlist:
            continue
        items.append(
            {
                "id": appointment.id,
                "service_id": appointment.service_id,
                "worker_id": appointment.worker_id,
                "worker_name": worker_name,
                "start": appointment.start,
                "end": appointment.end,
                "status": appointment.status,
                "current_participants": capacity["current"],
                "max_capacity": capacity["max"],
                "available_spots": capacity["available"],
                "is_full": capacity["is_full"],
                "allow_waitlist": bool(service.allow_waitlist),
            }
        )
    return {
        "is_group_service": True,
        "service_capacity": {
            "max_capacity": service.max_capacity,
            "min_capacity": service.min_capacity,
            "allow_waitlist": bool(service.allow_waitlist),
        },
        "appointments": items,
    }
