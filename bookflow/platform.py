import json
from datetime import datetime, timedelta

import redis
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .models import Business, FeatureFlag, OutboxEvent, utc_now_naive
from .notifications import deliver_outbox_event

log = structlog.get_logger("bookflow.platform")

PLAN_FEATURES = {
    "free": {"create_appointments"},
    "basic": {"create_appointments", "group_services"},
    "pro": {"create_appointments", "group_services"},
}


def _json_dumps(payload: dict | None) -> str:
    return json.dumps(payload or {}, ensure_ascii=True, separators=(",", ":"), default=str)


def is_trial_expired(business: Business, now: datetime | None = None) -> bool:
    if (business.plan or "free") != "free":
        return False
    if business.trial_ends_at is None:
        return False
    return business.trial_ends_at < (now or utc_now_naive())


def can_business_perform_action(
    db: Session, tenant_id: int, feature_name: str, now: datetime | None = None
) -> bool:
    business = db.get(Business, tenant_id)
    if business is None:
        return False
    if is_trial_expired(business, now):
        return False

    key = (feature_name or "").strip().lower()
    row = db.execute(
        select(FeatureFlag).where(
            FeatureFlag.business_id == tenant_id,
            FeatureFlag.flag_key == key,
        )
    ).scalar_one_or_none()
    if row is not None:
        return bool(row.enabled)
    return key in PLAN_FEATURES.get(business.plan or "free", set())


def upsert_feature_flag(
    db: Session,
    *,
    tenant_id: int,
    flag_key: str,
    enabled: bool,
) -> FeatureFlag:
    key = (flag_key or "").strip().lower()
    if not key:
        raise ValueError("flag_key is required")
    row = db.execute(
        select(FeatureFlag).where(
            FeatureFlag.business_id == tenant_id,
            FeatureFlag.flag_key == key,
        )
    ).scalar_one_or_none()
    if row is None:
        row = FeatureFlag(business_id=tenant_id, flag_key=key)
        db.add(row)
    row.enabled = bool(enabled)
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def list_feature_flags(db: Session, *, tenant_id: int) -> list[FeatureFlag]:
    return (
        db.query(FeatureFlag)
        .filter(FeatureFlag.business_id == tenant_id)
        .order_by(FeatureFlag.flag_key.asc())
        .all()
    )


def enqueue_outbox_event(
    db: Session,
    *,
    topic: str,
    payload: dict,
    tenant_id: int | None = None,
    key: str | None = None,
) -> OutboxEvent:
    """Stage an event in the caller's transaction; the caller commits."""
    row = OutboxEvent(
        business_id=tenant_id,
        topic=(topic or "").strip(),
        key=(key or "").strip() or None,
        payload_json=_json_dumps(payload),
        status="pending",
        retries=0,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    db.flush()
    return row


def list_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    status: str | None = None,
    statuses: set[str] | None = None,
    limit: int = 200,
) -> list[OutboxEvent]:
    q = db.query(OutboxEvent)
    if tenant_id is not None:
        q = q.filter(OutboxEvent.business_id == tenant_id)
    if status:
        q = q.filter(OutboxEvent.status == status.strip().lower())
    if statuses:
        q = q.filter(OutboxEvent.status.in_(sorted(statuses)))
    return (
        q.order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
        .limit(max(1, min(limit, 1000)))
        .all()
    )


def _redis_client() -> redis.Redis | None:
    if not settings.REDIS_URL:
        return None
    try:
        return redis.from_url(settings.REDIS_URL, decode_responses=True)
    except Exception:
        return None


def dispatch_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    batch_size: int = 50,
) -> dict:
    rows = list_outbox_events(
        db=db, tenant_id=tenant_id, statuses={"pending", "failed"}, limit=batch_size
    )
    if not rows:
        return {"processed": 0, "published": 0, "failed": 0, "dead_lettered": 0}

    client = _redis_client() if settings.EVENT_BUS_ENABLED else None
    published = 0
    failed = 0
    dead_lettered = 0
    max_retries = max(1, int(settings.OUTBOX_MAX_RETRIES))
    for row in rows:
        try:
            payload = json.loads(row.payload_json or "{}")
            # Retries after a mirror failure must not send the e-mail again.
            if row.delivered_at is None:
                deliver_outbox_event(row.topic, payload)
                row.delivered_at = utc_now_naive()

            if settings.EVENT_BUS_ENABLED:
                if client is None:
                    raise RuntimeError("Event bus enabled but Redis is not configured")
                client.xadd(
                    settings.EVENT_BUS_STREAM,
                    fields={
                        "event_id": str(row.id),
                        "topic": row.topic,
                        "business_id": str(row.business_id or ""),
                        "key": row.key or "",
                        "payload_json": _json_dumps(payload),
                    },
                    maxlen=50000,
                    approximate=True,
                )
            row.status = "published"
            row.published_at = utc_now_naive()
            row.last_error = None
            published += 1
        except Exception as exc:
            row.retries = int(row.retries or 0) + 1
            row.last_error = str(exc)[:500]
            if int(row.retries) >= max_retries:
                row.status = "dead_letter"
                dead_lettered += 1
            else:
                row.status = "failed"
            failed += 1
            log.warning(
                "outbox_delivery_failed",
                event_id=row.id,
                topic=row.topic,
                retries=row.retries,
                error=row.last_error,
            )
        row.updated_at = utc_now_naive()
    db.commit()
    log.info(
        "outbox_dispatched",
        processed=len(rows),
        published=published,
        failed=failed,
        dead_lettered=dead_lettered,
    )
    return {
        "processed": len(rows),
        "published": published,
        "failed": failed,
        "dead_lettered": dead_lettered,
    }


def retry_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    include_dead_letter: bool = False,
    limit: int = 100,
) -> dict:
    statuses = {"failed"}
    if include_dead_letter:
        statuses.add("dead_letter")
    q = db.query(OutboxEvent).filter(OutboxEvent.status.in_(list(statuses)))
    if tenant_id is not None:
        q = q.filter(OutboxEvent.business_id == tenant_id)
    rows = (
        q.order_by(OutboxEvent.updated_at.asc(), OutboxEvent.id.asc())
        .limit(max(1, min(limit, 1000)))
        .all()
    )
    for row in rows:
        row.status = "pending"
        row.retries = 0
        row.last_error = None
        row.updated_at = utc_now_naive()
    db.commit()
    return {"retried": len(rows)}


def get_outbox_health(db: Session, *, tenant_id: int | None = None) -> dict:
    q = db.query(OutboxEvent)
    if tenant_id is not None:
        q = q.filter(OutboxEvent.business_id == tenant_id)
    rows = q.all()
    now = utc_now_naive()
    pending = [r for r in rows if r.status == "pending"]
    oldest_pending = min((r.created_at for r in pending), default=None)
    oldest_pending_age = int((now - oldest_pending).total_seconds()) if oldest_pending else 0
    return {
        "checked_at": now,
        "pending_count": len(pending),
        "failed_count": len([r for r in rows if r.status == "failed"]),
        "dead_letter_count": len([r for r in rows if r.status == "dead_letter"]),
        "published_count": len([r for r in rows if r.status == "published"]),
        "oldest_pending_age_seconds": max(0, oldest_pending_age),
    }


def trial_end_for_new_business(now: datetime | None = None) -> datetime:
    return (now or utc_now_naive()) + timedelta(days=max(0, int(settings.TRIAL_DAYS)))
