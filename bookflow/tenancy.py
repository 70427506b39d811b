from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .models import Business


@dataclass(frozen=True)
class TenantContext:
    business_id: int
    business_slug: str


def _normalize_slug(raw: str | None) -> str:
    return (raw or "").strip().lower()


def resolve_tenant(db: Session, slug: str | None) -> TenantContext:
    normalized = _normalize_slug(slug)
    if not normalized:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Business context required")
    business = db.execute(select(Business).where(Business.slug == normalized)).scalar_one_or_none()
    if business is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business not found")
    return TenantContext(business_id=business.id, business_slug=business.slug)


def get_tenant(
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
) -> TenantContext:
    return resolve_tenant(db, x_tenant_slug)


def get_public_tenant(
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
    business_slug: Optional[str] = Query(default=None, alias="businessSlug"),
) -> TenantContext:
    """Public booking pages pass the slug in the query string instead of a header."""
    return resolve_tenant(db, business_slug or x_tenant_slug)
