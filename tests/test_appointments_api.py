from datetime import timedelta

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from bookflow.api import install_exception_handlers, router
from bookflow.db import Base, get_db
from bookflow.models import ActivityLog, Business, utc_now_naive
from bookflow.platform import PLAN_FEATURES, can_business_perform_action


def make_client(tmp_path):
    db_path = tmp_path / "test_bookflow_appointments.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    install_exception_handlers(app)
    app.include_router(router)

    def override_get_db():
        db = testing_session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    client.testing_session_local = testing_session_local
    return client


def seed(client: TestClient, slug: str = "salon-a", plan: str = "free") -> dict:
    assert client.post("/api/businesses", json={"slug": slug, "name": slug.title(), "plan": plan}).status_code == 201
    headers = {"X-Tenant-Slug": slug}
    service = client.post("/api/services", headers=headers, json={"name": "Color", "duration": 60, "price": 120})
    worker = client.post("/api/workers", headers=headers, json={"name": "Magda", "serviceIds": [service.json()["id"]]})
    customer = client.post(
        "/api/customers", headers=headers, json={"name": "Anna Nowak", "email": "anna@example.com"}
    )
    return {
        "headers": headers,
        "service_id": service.json()["id"],
        "worker_id": worker.json()["id"],
        "customer_id": customer.json()["id"],
    }


def booking(ctx: dict, start: str, end: str, **extra) -> dict:
    payload = {
        "customerId": ctx["customer_id"],
        "serviceId": ctx["service_id"],
        "workerId": ctx["worker_id"],
        "start": start,
        "end": end,
    }
    payload.update(extra)
    return payload


def test_create_get_and_list_appointment(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    created = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", notes="first visit"),
    )
    assert created.status_code == 201
    body = created.json()
    assert body["status"] == "pending"
    assert body["isGroupAppointment"] is False
    assert body["createdBy"] == "admin"

    fetched = client.get(f"/api/appointments/{body['id']}", headers=ctx["headers"])
    assert fetched.status_code == 200
    assert fetched.json()["notes"] == "first visit"

    listed = client.get(
        "/api/appointments",
        headers=ctx["headers"],
        params={"startDate": "2030-03-04T00:00:00", "endDate": "2030-03-04T23:59:59", "workerId": ctx["worker_id"]},
    )
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == [body["id"]]


def test_timezone_aware_input_is_stored_as_utc(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    created = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T12:00:00+02:00", "2030-03-04T13:00:00+02:00"),
    )
    assert created.status_code == 201
    assert created.json()["start"] == "2030-03-04T10:00:00"


def test_overlapping_booking_returns_conflict_details(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    first = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", status="confirmed"),
    )
    assert first.status_code == 201

    clash = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:30:00", "2030-03-04T11:30:00"),
    )
    assert clash.status_code == 409
    body = clash.json()
    assert body["detail"] == "Time slot is already booked"
    assert body["conflict"]["appointmentId"] == first.json()["id"]
    assert body["conflict"]["start"] == "2030-03-04T10:00:00"

    touching = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T11:00:00", "2030-03-04T12:00:00"),
    )
    assert touching.status_code == 201


def test_business_rule_violations_are_bad_requests(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    cases = [
        (booking(ctx, "2030-03-04T11:00:00", "2030-03-04T10:00:00"), "End time must be after start time"),
        (booking(ctx, "2020-03-04T10:00:00", "2020-03-04T11:00:00"), "Cannot create appointments in the past"),
        (booking(ctx, "2030-03-04T10:00:00", "2030-03-04T10:30:00"), "Service duration mismatch"),
        (booking(ctx, "2030-03-04T17:30:00", "2030-03-04T18:30:00"), "Appointment time is outside working hours"),
    ]
    for payload, message in cases:
        response = client.post("/api/appointments", headers=ctx["headers"], json=payload)
        assert response.status_code == 400
        assert response.json()["detail"].startswith(message)

    within_tolerance = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:04:00"),
    )
    assert within_tolerance.status_code == 201


def test_worker_must_provide_the_service(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    other_worker = client.post("/api/workers", headers=ctx["headers"], json={"name": "Kamila"})
    response = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", workerId=other_worker.json()["id"]),
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Worker cannot provide this service"

    assigned = client.post(
        f"/api/workers/{other_worker.json()['id']}/services/{ctx['service_id']}", headers=ctx["headers"]
    )
    assert assigned.status_code == 200
    retry = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", workerId=other_worker.json()["id"]),
    )
    assert retry.status_code == 201


def test_blocked_customer_is_forbidden(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    blocked = client.patch(
        f"/api/customers/{ctx['customer_id']}/block", headers=ctx["headers"], json={"blocked": True}
    )
    assert blocked.status_code == 200
    response = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00"),
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "Cannot create appointment for blocked customer"


def test_expired_trial_blocks_booking(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    with client.testing_session_local() as db:
        business = db.execute(select(Business).where(Business.slug == "salon-a")).scalar_one()
        business.trial_ends_at = utc_now_naive() - timedelta(days=1)
        db.commit()

    response = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00"),
    )
    assert response.status_code == 403
    assert response.json()["detail"].startswith("Trial period has expired")


def test_feature_flag_can_disable_booking(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client, plan="pro")
    flag = client.put("/api/feature-flags/create_appointments", headers=ctx["headers"], json={"enabled": False})
    assert flag.status_code == 200
    assert flag.json()["enabled"] is False

    response = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00"),
    )
    assert response.status_code == 403

    flags = client.get("/api/feature-flags", headers=ctx["headers"])
    assert [row["flagKey"] for row in flags.json()] == ["create_appointments"]


def test_plan_defaults_cover_only_implemented_features(tmp_path):
    client = make_client(tmp_path)
    seed(client, plan="pro")
    with client.testing_session_local() as db:
        tenant_id = db.execute(select(Business.id).where(Business.slug == "salon-a")).scalar_one()
        assert can_business_perform_action(db, tenant_id, "create_appointments") is True
        assert can_business_perform_action(db, tenant_id, "group_services") is True
        assert can_business_perform_action(db, tenant_id, "reminders") is False
    assert set(PLAN_FEATURES["pro"]) == {"create_appointments", "group_services"}


def test_group_service_requires_plan_feature(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    payload = {"name": "Yoga", "duration": 60, "isGroupService": True, "maxCapacity": 10}
    denied = client.post("/api/services", headers=ctx["headers"], json=payload)
    assert denied.status_code == 403

    invalid = client.post(
        "/api/services", headers=ctx["headers"], json={**payload, "name": "Pilates", "maxCapacity": 1}
    )
    assert invalid.status_code == 400

    client.put("/api/feature-flags/group_services", headers=ctx["headers"], json={"enabled": True})
    allowed = client.post("/api/services", headers=ctx["headers"], json=payload)
    assert allowed.status_code == 201
    assert allowed.json()["isGroupService"] is True


def test_tenant_isolation_hides_foreign_appointments(tmp_path):
    client = make_client(tmp_path)
    ctx_a = seed(client, slug="salon-a")
    ctx_b = seed(client, slug="salon-b")
    created = client.post(
        "/api/appointments",
        headers=ctx_a["headers"],
        json=booking(ctx_a, "2030-03-04T10:00:00", "2030-03-04T11:00:00"),
    )
    appointment_id = created.json()["id"]

    assert client.get(f"/api/appointments/{appointment_id}", headers=ctx_b["headers"]).status_code == 404
    assert client.post(f"/api/appointments/{appointment_id}/cancel", headers=ctx_b["headers"]).status_code == 404
    assert client.delete(f"/api/appointments/{appointment_id}", headers=ctx_b["headers"]).status_code == 404
    assert client.get("/api/appointments", headers=ctx_b["headers"]).json() == []

    cross = client.post(
        "/api/appointments",
        headers=ctx_b["headers"],
        json=booking(ctx_b, "2030-03-04T10:00:00", "2030-03-04T11:00:00", customerId=ctx_a["customer_id"]),
    )
    assert cross.status_code == 404
    assert cross.json()["detail"] == "Customer not found"

    duplicate = client.post("/api/businesses", json={"slug": "salon-a", "name": "Again"})
    assert duplicate.status_code == 409


def test_update_rechecks_conflicts(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    first = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", status="confirmed"),
    ).json()
    second = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T12:00:00", "2030-03-04T13:00:00"),
    ).json()

    clash = client.patch(
        f"/api/appointments/{second['id']}",
        headers=ctx["headers"],
        json={"start": "2030-03-04T10:30:00", "end": "2030-03-04T11:30:00"},
    )
    assert clash.status_code == 409
    assert clash.json()["conflict"]["appointmentId"] == first["id"]

    moved = client.patch(
        f"/api/appointments/{second['id']}",
        headers=ctx["headers"],
        json={"start": "2030-03-04T14:00:00", "end": "2030-03-04T15:00:00", "status": "confirmed"},
    )
    assert moved.status_code == 200
    assert moved.json()["start"] == "2030-03-04T14:00:00"
    assert moved.json()["status"] == "confirmed"

    empty = client.patch(f"/api/appointments/{second['id']}", headers=ctx["headers"], json={})
    assert empty.status_code == 400


def test_reactivating_cancelled_appointment_rechecks_slot(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    first = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", status="confirmed"),
    ).json()
    assert client.post(f"/api/appointments/{first['id']}/cancel", headers=ctx["headers"]).status_code == 200
    taken = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", status="confirmed"),
    )
    assert taken.status_code == 201

    revived = client.patch(
        f"/api/appointments/{first['id']}", headers=ctx["headers"], json={"status": "confirmed"}
    )
    assert revived.status_code == 409
    assert revived.json()["conflict"]["appointmentId"] == taken.json()["id"]
    still = client.get(f"/api/appointments/{first['id']}", headers=ctx["headers"]).json()
    assert still["status"] == "cancelled"

    moved = client.patch(
        f"/api/appointments/{first['id']}",
        headers=ctx["headers"],
        json={"status": "pending", "start": "2030-03-04T12:00:00", "end": "2030-03-04T13:00:00"},
    )
    assert moved.status_code == 200
    assert moved.json()["status"] == "pending"


def test_cancel_twice_and_delete(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    created = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00"),
    ).json()

    cancelled = client.post(f"/api/appointments/{created['id']}/cancel", headers=ctx["headers"])
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    again = client.post(f"/api/appointments/{created['id']}/cancel", headers=ctx["headers"])
    assert again.status_code == 400

    with client.testing_session_local() as db:
        logs = db.execute(
            select(ActivityLog).where(ActivityLog.activity_type == "appointment_cancelled")
        ).scalars().all()
        assert len(logs) == 1

    deleted = client.delete(f"/api/appointments/{created['id']}", headers=ctx["headers"])
    assert deleted.status_code == 204
    assert client.get(f"/api/appointments/{created['id']}", headers=ctx["headers"]).status_code == 404
    with client.testing_session_local() as db:
        log_row = db.execute(
            select(ActivityLog).where(ActivityLog.activity_type == "appointment_cancelled")
        ).scalar_one()
        assert log_row.appointment_id is None


def test_customer_bookings_are_logged(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    created = client.post(
        "/api/appointments",
        headers=ctx["headers"],
        json=booking(ctx, "2030-03-04T10:00:00", "2030-03-04T11:00:00", createdBy="customer"),
    )
    assert created.status_code == 201
    logs = client.get("/api/activity-logs", headers=ctx["headers"], params={"activityType": "appointment_created"})
    assert logs.status_code == 200
    assert logs.json()["total"] == 1
    assert logs.json()["items"][0]["metadata"]["serviceName"] == "Color"


def test_invalid_body_is_a_bad_request(tmp_path):
    client = make_client(tmp_path)
    ctx = seed(client)
    response = client.post("/api/appointments", headers=ctx["headers"], json={"customerId": "abc"})
    assert response.status_code == 400
    assert response.json()["errors"]
