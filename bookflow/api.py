from contextlib import contextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .db import get_db
from .groups import (
    add_participant,
    get_available_capacity,
    get_service_capacity,
    list_group_availability,
    list_participants,
    remove_participant,
)
from .models import Appointment, AppointmentParticipant
from .platform import (
    dispatch_outbox_events,
    get_outbox_health,
    list_feature_flags,
    list_outbox_events,
    retry_outbox_events,
    upsert_feature_flag,
)
from .reschedule import approve_reschedule, list_activity_logs, reject_reschedule, request_reschedule
from .scheduling import NotFoundError, SlotConflictError, StateConflictError, get_available_slots
from .schemas import (
    ActivityLogPage,
    AppointmentCreate,
    AppointmentOut,
    AppointmentUpdate,
    AvailabilityOut,
    AvailableSlotOut,
    BusinessCreate,
    BusinessOut,
    CalendarSettingsUpdate,
    CapacityOut,
    CustomerBlockUpdate,
    CustomerCreate,
    CustomerOut,
    FeatureFlagOut,
    FeatureFlagSet,
    GroupAvailabilityOut,
    OutboxDispatchOut,
    OutboxEventOut,
    OutboxHealthOut,
    ParticipantCreate,
    ParticipantOut,
    RescheduleDecisionBody,
    RescheduleDecisionOut,
    RescheduleRequestCreate,
    RescheduleRequestOut,
    RescheduleRequestResult,
    ServiceCreate,
    ServiceGroupSettingsOut,
    ServiceOut,
    WorkerCreate,
    WorkerOut,
)
from .services import (
    assign_worker_service,
    cancel_appointment,
    create_appointment,
    create_business,
    create_customer,
    create_service,
    create_worker,
    delete_appointment,
    get_appointment,
    get_calendar_settings,
    get_service,
    list_appointments,
    list_customers,
    list_services,
    list_workers,
    set_customer_blocked,
    update_appointment,
    update_calendar_settings,
)
from .tenancy import TenantContext, get_public_tenant, get_tenant

router = APIRouter(prefix="/api")


@contextmanager
def domain_errors():
    """Translate service-layer exceptions into HTTP errors."""
    try:
        yield
    except StateConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SlotConflictError)
    async def slot_conflict_handler(request: Request, exc: SlotConflictError):
        blocking = exc.appointment
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=jsonable_encoder(
                {
                    "detail": str(exc),
                    "conflict": {
                        "appointmentId": blocking.id,
                        "start": blocking.start,
                        "end": blocking.end,
                    },
                }
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder({"detail": "Invalid request", "errors": exc.errors()}),
        )


def _to_participant_out(row: AppointmentParticipant) -> ParticipantOut:
    return ParticipantOut(
        id=row.id,
        appointment_id=row.appointment_id,
        customer_id=row.customer_id,
        customer_name=row.customer.name if row.customer else None,
        status=row.status,
        joined_at=row.joined_at,
    )


def _appointment_or_404(appointment: Appointment | None) -> Appointment:
    if appointment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return appointment


@router.post("/businesses", response_model=BusinessOut, status_code=status.HTTP_201_CREATED)
def add_business(payload: BusinessCreate, db: Session = Depends(get_db)):
    with domain_errors():
        return create_business(db, slug=payload.slug, name=payload.name, plan=payload.plan)


@router.get("/settings/calendar")
def read_calendar_settings(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return get_calendar_settings(db, tenant.business_id)


@router.put("/settings/calendar")
def write_calendar_settings(
    payload: CalendarSettingsUpdate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    patch = payload.model_dump(by_alias=True, exclude_none=True)
    if not patch:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    with domain_errors():
        return update_calendar_settings(db, tenant.business_id, patch)


@router.post("/customers", response_model=CustomerOut, status_code=status.HTTP_201_CREATED)
def add_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return create_customer(db, tenant.business_id, payload.name, email=payload.email, phone=payload.phone)


@router.get("/customers", response_model=List[CustomerOut])
def get_customers(
    q: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_customers(db, tenant.business_id, q=q)


@router.patch("/customers/{customer_id}/block", response_model=CustomerOut)
def block_customer(
    customer_id: int,
    payload: CustomerBlockUpdate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    customer = set_customer_blocked(db, tenant.business_id, customer_id, payload.blocked)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return customer


@router.post("/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def add_service(
    payload: ServiceCreate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        return create_service(db, tenant.business_id, **payload.model_dump())


@router.get("/services", response_model=List[ServiceOut])
def get_services(
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_services(db, tenant.business_id, include_inactive=include_inactive)


@router.get("/services/{service_id}/capacity", response_model=ServiceGroupSettingsOut)
def read_service_capacity(
    service_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    capacity = get_service_capacity(db, tenant.business_id, service_id)
    if capacity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return capacity


@router.post("/workers", response_model=WorkerOut, status_code=status.HTTP_201_CREATED)
def add_worker(
    payload: WorkerCreate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        return create_worker(
            db, tenant.business_id, payload.name, active=payload.active, service_ids=payload.service_ids
        )


@router.get("/workers", response_model=List[WorkerOut])
def get_workers(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_workers(db, tenant.business_id)


@router.post("/workers/{worker_id}/services/{service_id}", response_model=WorkerOut)
def add_worker_service(
    worker_id: int,
    service_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        worker = assign_worker_service(db, tenant.business_id, worker_id, service_id)
    if worker is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Worker not found")
    return worker


@router.get("/appointments/available", response_model=AvailabilityOut)
def available_slots(
    day: date = Query(..., alias="date"),
    service_id: int = Query(..., alias="serviceId"),
    worker_id: Optional[int] = Query(None, alias="workerId"),
    time_slot_gap: Optional[int] = Query(None, alias="timeSlotGap"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        result = get_available_slots(
            db,
            tenant.business_id,
            day,
            service_id,
            worker_id=worker_id,
            slot_gap=time_slot_gap,
        )
    service = result["service"]
    return AvailabilityOut(
        date=result["date"],
        service_id=service.id,
        service_name=service.name,
        duration=service.duration,
        time_slot_gap=result["slot_gap"],
        available_slots=[
            AvailableSlotOut(
                start=slot.start,
                end=slot.end,
                worker_id=slot.worker_id,
                worker_name=slot.worker_name,
            )
            for slot in result["available_slots"]
        ],
        message=result["message"],
    )


@router.get("/appointments/group/available", response_model=GroupAvailabilityOut)
def group_availability(
    service_id: int = Query(..., alias="serviceId"),
    worker_id: Optional[int] = Query(None, alias="workerId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_public_tenant),
):
    result = list_group_availability(
        db,
        tenant.business_id,
        service_id,
        worker_id=worker_id,
        start_date=start_date,
        end_date=end_date,
    )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Service not found")
    return result


@router.get("/appointments", response_model=List[AppointmentOut])
def get_appointments(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    worker_id: Optional[int] = Query(None, alias="workerId"),
    customer_id: Optional[int] = Query(None, alias="customerId"),
    service_id: Optional[int] = Query(None, alias="serviceId"),
    appointment_status: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_appointments(
        db,
        tenant.business_id,
        start_date=start_date,
        end_date=end_date,
        worker_id=worker_id,
        customer_id=customer_id,
        service_id=service_id,
        status=appointment_status,
    )


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def add_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        return create_appointment(
            db,
            tenant.business_id,
            customer_id=payload.customer_id,
            service_id=payload.service_id,
            worker_id=payload.worker_id,
            start=payload.start,
            end=payload.end,
            status=payload.status,
            notes=payload.notes,
            created_by=payload.created_by,
        )


@router.get("/appointments/{appointment_id}", response_model=AppointmentOut)
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return _appointment_or_404(get_appointment(db, tenant.business_id, appointment_id))


@router.patch("/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    appointment_id: int,
    payload: AppointmentUpdate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    fields = payload.model_dump(exclude_none=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    with domain_errors():
        appointment = update_appointment(db, tenant.business_id, appointment_id, **fields)
    return _appointment_or_404(appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
def cancel(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        appointment = cancel_appointment(db, tenant.business_id, appointment_id)
    return _appointment_or_404(appointment)


@router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        ok = delete_appointment(db, tenant.business_id, appointment_id)
    if not ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/appointments/{appointment_id}/reschedule-request", response_model=RescheduleRequestResult)
def create_reschedule_request(
    appointment_id: int,
    payload: RescheduleRequestCreate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        result = request_reschedule(
            db,
            tenant.business_id,
            appointment_id,
            payload.requested_start,
            payload.requested_end,
        )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    appointment, request_row = result
    return RescheduleRequestResult(
        message="Reschedule request created successfully",
        appointment=AppointmentOut.model_validate(appointment),
        reschedule_request=RescheduleRequestOut.model_validate(request_row),
    )


@router.get("/appointments/{appointment_id}/capacity", response_model=CapacityOut)
def read_appointment_capacity(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    appointment = _appointment_or_404(get_appointment(db, tenant.business_id, appointment_id))
    return get_available_capacity(appointment, get_service(db, tenant.business_id, appointment.service_id))


@router.get("/appointments/{appointment_id}/participants", response_model=List[ParticipantOut])
def get_participants(
    appointment_id: int,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    rows = list_participants(db, tenant.business_id, appointment_id)
    if rows is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return [_to_participant_out(row) for row in rows]


@router.post(
    "/appointments/{appointment_id}/participants",
    response_model=ParticipantOut,
    status_code=status.HTTP_201_CREATED,
)
def join_appointment(
    appointment_id: int,
    payload: ParticipantCreate,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        participant = add_participant(
            db, tenant.business_id, appointment_id, payload.customer_id, status=payload.status
        )
    if participant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return _to_participant_out(participant)


@router.delete("/appointments/{appointment_id}/participants", response_model=AppointmentOut)
def leave_appointment(
    appointment_id: int,
    customer_id: int = Query(..., alias="customerId"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        appointment = remove_participant(db, tenant.business_id, appointment_id, customer_id)
    return _appointment_or_404(appointment)


@router.get("/activity-logs", response_model=ActivityLogPage)
def get_activity_logs(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    activity_type: Optional[str] = Query(None, alias="activityType"),
    customer_id: Optional[int] = Query(None, alias="customerId"),
    log_status: Optional[str] = Query(None, alias="status"),
    created_by: Optional[str] = Query("customer", alias="createdBy"),
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_activity_logs(
        db,
        tenant.business_id,
        start_date=start_date,
        end_date=end_date,
        activity_type=activity_type,
        customer_id=customer_id,
        status=log_status,
        created_by=None if created_by == "all" else created_by,
        page=page,
        limit=limit,
    )


@router.post("/activity-logs/{activity_log_id}/approve-reschedule", response_model=RescheduleDecisionOut)
def approve_reschedule_request(
    activity_log_id: int,
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        appointment = approve_reschedule(db, tenant.business_id, activity_log_id, decided_by=x_actor_email)
    if appointment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reschedule request not found or already processed",
        )
    return RescheduleDecisionOut(
        message="Reschedule request approved successfully",
        appointment=AppointmentOut.model_validate(appointment),
    )


@router.post("/activity-logs/{activity_log_id}/reject-reschedule", response_model=RescheduleDecisionOut)
def reject_reschedule_request(
    activity_log_id: int,
    payload: Optional[RescheduleDecisionBody] = Body(default=None),
    x_actor_email: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    message = payload.message if payload else None
    decided_by = (payload.decided_by if payload else None) or x_actor_email
    appointment = reject_reschedule(
        db, tenant.business_id, activity_log_id, message=message, decided_by=decided_by
    )
    if appointment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reschedule request not found or already processed",
        )
    return RescheduleDecisionOut(
        message="Reschedule request rejected successfully",
        appointment=AppointmentOut.model_validate(appointment),
    )


@router.get("/feature-flags", response_model=List[FeatureFlagOut])
def get_feature_flags(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_feature_flags(db, tenant_id=tenant.business_id)


@router.put("/feature-flags/{flag_key}", response_model=FeatureFlagOut)
def set_feature_flag(
    flag_key: str,
    payload: FeatureFlagSet,
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    with domain_errors():
        return upsert_feature_flag(db, tenant_id=tenant.business_id, flag_key=flag_key, enabled=payload.enabled)


@router.get("/outbox/events", response_model=List[OutboxEventOut])
def get_outbox_events(
    event_status: Optional[str] = Query(None, alias="status"),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return list_outbox_events(db, tenant_id=tenant.business_id, status=event_status, limit=limit)


@router.post("/outbox/dispatch", response_model=OutboxDispatchOut)
def dispatch_outbox(
    batch_size: int = Query(50, ge=1, le=500, alias="batchSize"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return dispatch_outbox_events(db, tenant_id=tenant.business_id, batch_size=batch_size)


@router.post("/outbox/retry")
def retry_outbox(
    include_dead_letter: bool = Query(False, alias="includeDeadLetter"),
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return retry_outbox_events(db, tenant_id=tenant.business_id, include_dead_letter=include_dead_letter)


@router.get("/outbox/health", response_model=OutboxHealthOut)
def outbox_health(
    db: Session = Depends(get_db),
    tenant: TenantContext = Depends(get_tenant),
):
    return get_outbox_health(db, tenant_id=tenant.business_id)
