# models/billing_store.py
from __future__ import annotations
import logging
from decimal import Decimal
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session
from models.base import session_scope
from models.schema import Billing, Payment, Property, Room, Tenant
from models.tenants_store import new_id
from services.datetimex import now_utc, to_iso_z
from services.payments.status import BillingStatus, PaymentStatus

log = logging.getLogger(__name__)


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x if x is not None else 0))


def derive_billing_status(payment_statuses: Iterable[str]) -> BillingStatus:
    """
    A billing is a view over its payments:
      no payments           -> draft
      every payment paid    -> settled
      anything else         -> sent
    """
    statuses = [PaymentStatus(s) for s in payment_statuses]
    if not statuses:
        return BillingStatus.DRAFT
    if all(s is PaymentStatus.PAID for s in statuses):
        return BillingStatus.SETTLED
    return BillingStatus.SENT


def recompute_billing(s: Session, billing_id: str) -> Optional[BillingStatus]:
    """
    Re-derive a billing's status inside the caller's transaction.
    The billing row is locked first so two payments of the same billing
    settling concurrently cannot both read a stale sibling status.
    """
    b = s.execute(
        select(Billing).where(Billing.id == billing_id).with_for_update()
    ).scalars().first()
    if b is None:
        return None
    statuses = s.execute(
        select(Payment.status).where(Payment.billing_id == billing_id)
    ).scalars().all()
    new_status = derive_billing_status(statuses)
    if b.status != new_status.value:
        log.info("billing %s: %s -> %s", billing_id, b.status, new_status.value)
        b.status = new_status.value
        b.updated_at = now_utc()
    return new_status


def _billing_dict(b: Billing, payments: list[dict] | None = None) -> dict:
    out = {
        "id": b.id, "tenant_id": b.tenant_id, "title": b.title,
        "description": b.description, "amount": float(b.amount),
        "type": b.type, "due_date": to_iso_z(b.due_date), "status": b.status,
        "created_at": to_iso_z(b.created_at), "updated_at": to_iso_z(b.updated_at),
    }
    if payments is not None:
        out["payments"] = payments
    return out


def create_billing(tenant_id: str, title: str, amount: Decimal, type_: str,
                   due_date: datetime, description: str | None = None) -> dict:
    now = now_utc()
    with session_scope() as s:
        b = Billing(
            id=new_id(), tenant_id=tenant_id, title=title,
            description=description, amount=D(amount), type=type_,
            due_date=due_date, status=BillingStatus.DRAFT.value,
            created_at=now, updated_at=now,
        )
        s.add(b)
        s.flush()
        return _billing_dict(b, payments=[])


def get_billing(billing_id: str) -> Optional[dict]:
    from models.payments_store import payment_to_dict
    if not billing_id:
        return None
    with session_scope() as s:
        b = s.get(Billing, billing_id)
        if not b:
            return None
        pays = s.execute(
            select(Payment).where(Payment.billing_id == billing_id)
            .order_by(Payment.created_at)
        ).scalars().all()
        return _billing_dict(b, payments=[payment_to_dict(p) for p in pays])


def billing_owner(billing_id: str) -> Optional[str]:
    """Username owning the property the billing's tenant lives in."""
    with session_scope() as s:
        return s.execute(
            select(Property.owner)
            .join(Room, Room.property_id == Property.id)
            .join(Tenant, Tenant.room_id == Room.id)
            .join(Billing, Billing.tenant_id == Tenant.id)
            .where(Billing.id == billing_id)
        ).scalar()


def list_billings(*, owner: str | None = None, property_id: str | None = None,
                  tenant_id: str | None = None, status: str | None = None,
                  search: str | None = None, page: int = 1,
                  limit: int = 10) -> tuple[list[dict], int]:
    """Newest-due first. `search` matches title or description, case-insensitive."""
    q = (select(Billing)
         .join(Tenant, Tenant.id == Billing.tenant_id)
         .join(Room, Room.id == Tenant.room_id)
         .join(Property, Property.id == Room.property_id))
    if owner:
        q = q.where(Property.owner == owner)
    if property_id:
        q = q.where(Property.id == property_id)
    if tenant_id:
        q = q.where(Billing.tenant_id == tenant_id)
    if status:
        q = q.where(Billing.status == status)
    if search:
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(func.lower(Billing.title).like(like),
                        func.lower(func.coalesce(Billing.description, "")).like(like)))

    with session_scope() as s:
        total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
        rows = s.execute(
            q.order_by(Billing.due_date.desc(), Billing.id)
            .offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return [_billing_dict(b) for b in rows], int(total)
