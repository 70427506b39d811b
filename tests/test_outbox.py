import json

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from bookflow import notifications, platform
from bookflow.api import install_exception_handlers, router
from bookflow.config import settings
from bookflow.db import Base, get_db
from bookflow.models import Business, OutboxEvent
from bookflow.platform import dispatch_outbox_events, enqueue_outbox_event


def make_client(tmp_path):
    db_path = tmp_path / "test_bookflow_outbox.db"
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


def stage_event(client: TestClient, topic: str, payload: dict) -> int:
    # A repeat call answers 409 and leaves the existing business in place.
    client.post("/api/businesses", json={"slug": "outbox-shop", "name": "Outbox Shop"})
    with client.testing_session_local() as db:
        business = db.execute(select(Business).where(Business.slug == "outbox-shop")).scalar_one()
        row = enqueue_outbox_event(db, topic=topic, payload=payload, tenant_id=business.id, key="test")
        db.commit()
        return row.id


HEADERS = {"X-Tenant-Slug": "outbox-shop"}

APPROVED_PAYLOAD = {
    "customer_email": "ola@example.com",
    "customer_name": "Ola",
    "service_name": "Massage",
    "worker_name": "Wiktor",
    "original_start": "2030-05-06T10:00:00",
    "new_start": "2030-05-06T14:00:00",
}


def test_dispatch_without_api_key_marks_events_published(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "BREVO_API_KEY", "")
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", False)
    client = make_client(tmp_path)
    stage_event(client, "email.reschedule_approved", APPROVED_PAYLOAD)
    stage_event(client, "group_appointment.spot_opened", {"appointment_id": 1})

    dispatched = client.post("/api/outbox/dispatch", headers=HEADERS)
    assert dispatched.status_code == 200
    assert dispatched.json() == {"processed": 2, "published": 2, "failed": 0, "deadLettered": 0}

    events = client.get("/api/outbox/events", headers=HEADERS, params={"status": "published"}).json()
    assert len(events) == 2
    assert all(e["publishedAt"] for e in events)

    again = client.post("/api/outbox/dispatch", headers=HEADERS).json()
    assert again["processed"] == 0


def test_email_is_posted_to_provider(tmp_path, monkeypatch):
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(201, json={"messageId": "abc"})

    real_client = httpx.Client

    def fake_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(settings, "BREVO_API_KEY", "test-key")
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", False)
    monkeypatch.setattr(notifications.httpx, "Client", fake_client)

    client = make_client(tmp_path)
    stage_event(client, "email.reschedule_rejected", {"customer_email": "ola@example.com", "customer_name": "Ola"})

    with client.testing_session_local() as db:
        result = dispatch_outbox_events(db, batch_size=10)
    assert result["published"] == 1

    assert len(captured) == 1
    request = captured[0]
    assert str(request.url) == settings.BREVO_API_URL
    assert request.headers["api-key"] == "test-key"
    body = json.loads(request.content)
    assert body["to"] == [{"email": "ola@example.com", "name": "Ola"}]
    assert body["subject"] == "Your Appointment Reschedule Request"
    assert "could not change the date" in body["htmlContent"]


def test_provider_error_leaves_event_retryable(tmp_path, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    real_client = httpx.Client

    def fake_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(settings, "BREVO_API_KEY", "test-key")
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", False)
    monkeypatch.setattr(settings, "OUTBOX_MAX_RETRIES", 3)
    monkeypatch.setattr(notifications.httpx, "Client", fake_client)

    client = make_client(tmp_path)
    event_id = stage_event(client, "email.reschedule_approved", APPROVED_PAYLOAD)

    result = client.post("/api/outbox/dispatch", headers=HEADERS).json()
    assert result["failed"] == 1
    assert result["deadLettered"] == 0

    with client.testing_session_local() as db:
        row = db.get(OutboxEvent, event_id)
        assert row.status == "failed"
        assert row.retries == 1
        assert "500" in row.last_error

    assert client.post("/api/outbox/retry", headers=HEADERS).json() == {"retried": 1}
    pending = client.get("/api/outbox/events", headers=HEADERS, params={"status": "pending"}).json()
    assert [e["id"] for e in pending] == [event_id]
    assert pending[0]["retries"] == 0


def test_unreachable_event_bus_dead_letters_after_max_retries(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "BREVO_API_KEY", "")
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", True)
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    monkeypatch.setattr(settings, "OUTBOX_MAX_RETRIES", 1)

    client = make_client(tmp_path)
    stage_event(client, "group_appointment.spot_opened", {"appointment_id": 7})

    result = client.post("/api/outbox/dispatch", headers=HEADERS).json()
    assert result == {"processed": 1, "published": 0, "failed": 1, "deadLettered": 1}

    health = client.get("/api/outbox/health", headers=HEADERS).json()
    assert health["deadLetterCount"] == 1
    assert health["pendingCount"] == 0

    assert client.post("/api/outbox/retry", headers=HEADERS).json() == {"retried": 0}
    revived = client.post("/api/outbox/retry", headers=HEADERS, params={"includeDeadLetter": True}).json()
    assert revived == {"retried": 1}

    health = client.get("/api/outbox/health", headers=HEADERS).json()
    assert health["deadLetterCount"] == 0
    assert health["pendingCount"] == 1


def test_event_without_recipient_is_skipped(monkeypatch):
    calls = []
    monkeypatch.setattr(notifications, "send_email", lambda *args, **kwargs: calls.append(args))
    notifications.deliver_outbox_event("email.reschedule_approved", {"customer_name": "Ola"})
    notifications.deliver_outbox_event("group_appointment.spot_opened", {"appointment_id": 1})
    assert calls == []


def test_mirror_failure_does_not_resend_delivered_email(tmp_path, monkeypatch):
    sent = []
    monkeypatch.setattr(platform, "deliver_outbox_event", lambda topic, payload: sent.append(topic))
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", True)
    monkeypatch.setattr(settings, "REDIS_URL", "")
    monkeypatch.setattr(settings, "OUTBOX_MAX_RETRIES", 5)

    client = make_client(tmp_path)
    event_id = stage_event(client, "email.reschedule_approved", APPROVED_PAYLOAD)

    for _ in range(3):
        result = client.post("/api/outbox/dispatch", headers=HEADERS).json()
        assert result["failed"] == 1

    assert sent == ["email.reschedule_approved"]
    with client.testing_session_local() as db:
        row = db.get(OutboxEvent, event_id)
        assert row.status == "failed"
        assert row.retries == 3
        assert row.delivered_at is not None
        assert "Redis is not configured" in row.last_error

    assert client.post("/api/outbox/retry", headers=HEADERS).json() == {"retried": 1}
    monkeypatch.setattr(settings, "EVENT_BUS_ENABLED", False)
    assert client.post("/api/outbox/dispatch", headers=HEADERS).json()["published"] == 1
    assert sent == ["email.reschedule_approved"]
    published = client.get("/api/outbox/events", headers=HEADERS, params={"status": "published"}).json()
    assert published[0]["deliveredAt"]
