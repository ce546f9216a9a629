# models/payments_store.py (Postgres / SQLAlchemy)
from __future__ import annotations
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from models.base import session_scope
from models.schema import Billing, Payment, PaymentEvent, Property
from models.billing_store import D, recompute_billing
from models.tenants_store import new_id
from services.datetimex import now_utc, to_iso_z, ensure_utc
from services.payments.errors import NotFound, ValidationFailed
from services.payments.status import PaymentStatus, sources_for

log = logging.getLogger(__name__)


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id, "tenant_id": p.tenant_id, "property_id": p.property_id,
        "billing_id": p.billing_id, "amount": float(p.amount), "type": p.type,
        "method": p.method, "status": p.status,
        "due_date": to_iso_z(p.due_date), "paid_at": to_iso_z(p.paid_at),
        "refunded_at": to_iso_z(p.refunded_at),
        "description": p.description, "notes": p.notes,
        "proof_of_payment": p.proof_of_payment,
        "external_id": p.external_id, "client_token": p.client_token,
        "redirect_url": p.redirect_url, "gateway_status": p.gateway_status,
        "gateway_attempted_at": to_iso_z(p.gateway_attempted_at),
        "created_at": to_iso_z(p.created_at), "updated_at": to_iso_z(p.updated_at),
    }


def insert_payment(*, tenant_id: str, property_id: str, amount: Decimal, type_: str,
                   method: str, due_date: datetime, description: str | None = None,
                   notes: str | None = None, billing_id: str | None = None,
                   only_if_billing_empty: bool = False) -> dict:
    """
    Insert a pending payment and commit it before any gateway is contacted.
    With `only_if_billing_empty` the billing row is locked and the insert is
    refused when the billing already has a payment (double "send").
    """
    now = now_utc()
    with session_scope() as s:
        if billing_id and only_if_billing_empty:
            b = s.execute(select(Billing).where(Billing.id == billing_id)
                          .with_for_update()).scalars().first()
            if b is None:
                raise NotFound("Billing not found", billing_id=billing_id)
            existing = s.execute(select(func.count(Payment.id)).where(
                Payment.billing_id == billing_id)).scalar_one()
            if existing:
                raise ValidationFailed("Billing has already been sent")
        p = Payment(
            id=new_id(), tenant_id=tenant_id, property_id=property_id,
            billing_id=billing_id, amount=D(amount), type=type_, method=method,
            status=PaymentStatus.PENDING.value, due_date=due_date,
            description=description, notes=notes,
            created_at=now, updated_at=now,
        )
        s.add(p)
        if billing_id:
            s.flush()
            recompute_billing(s, billing_id)
        s.flush()
        return payment_to_dict(p)


def attach_gateway_checkout(payment_id: str, external_id: str, token: Optional[str],
                            redirect_url: Optional[str]) -> dict:
    now = now_utc()
    with session_scope() as s:
        p = s.get(Payment, payment_id)
        if not p:
            raise NotFound("Payment not found", payment_id=payment_id)
        p.external_id = external_id
        p.client_token = token
        p.redirect_url = redirect_url
        p.gateway_attempted_at = now
        p.updated_at = now
        s.add(p)
        s.flush()
        return payment_to_dict(p)


def record_gateway_attempt(payment_id: str, gateway_status: str) -> None:
    """Remember that a create call was made whose outcome we do not know (or that failed)."""
    now = now_utc()
    with session_scope() as s:
        s.execute(
            update(Payment).where(Payment.id == payment_id)
            .values(gateway_status=gateway_status, gateway_attempted_at=now, updated_at=now)
        )


def get_payment(payment_id: str) -> Optional[dict]:
    if not payment_id:
        return None
    with session_scope() as s:
        p = s.get(Payment, payment_id)
        return payment_to_dict(p) if p else None


def get_payment_by_external_id(external_id: str) -> Optional[dict]:
    if not external_id:
        return None
    with session_scope() as s:
        p = s.execute(select(Payment).where(
            Payment.external_id == external_id)).scalars().first()
        return payment_to_dict(p) if p else None


def payment_owner(payment_id: str) -> Optional[str]:
    with session_scope() as s:
        return s.execute(
            select(Property.owner).join(Payment, Payment.property_id == Property.id)
            .where(Payment.id == payment_id)
        ).scalar()


def apply_status(payment_id: str, target: PaymentStatus | str, *,
                 at: datetime | None = None, gateway_status: str | None = None,
                 proof_of_payment: str | None = None) -> Tuple[bool, dict]:
    """
    Move a payment to `target` with a single conditional UPDATE:
    the row only changes if its current status may legally move to `target`.
    Same-status and terminal-state updates therefore match zero rows (no-op).
    The owning billing is re-derived in the same transaction.

    Returns (applied, payment_dict).
    """
    target = PaymentStatus(target)
    now = now_utc()
    values: dict = {"status": target.value, "updated_at": now}
    if target is PaymentStatus.PAID:
        values["paid_at"] = ensure_utc(at) or now
    else:
        values["paid_at"] = None
    if target is PaymentStatus.REFUNDED:
        values["refunded_at"] = ensure_utc(at) or now
    if gateway_status is not None:
        values["gateway_status"] = gateway_status
    if proof_of_payment is not None:
        values["proof_of_payment"] = proof_of_payment

    with session_scope() as s:
        res = s.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(sources_for(target)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = res.rowcount == 1
        p = s.get(Payment, payment_id)
        if p is None:
            raise NotFound("Payment not found", payment_id=payment_id)
        if applied and p.billing_id:
            recompute_billing(s, p.billing_id)
        s.flush()
        return applied, payment_to_dict(p)


def list_payments(*, owner: str | None = None, property_id: str | None = None,
                  tenant_id: str | None = None, billing_id: str | None = None,
                  status: str | None = None, type_: str | None = None,
                  page: int = 1, limit: int = 10) -> Tuple[list[dict], int]:
    q = select(Payment)
    if owner:
        q = q.join(Property, Property.id == Payment.property_id).where(
            Property.owner == owner)
    if property_id:
        q = q.where(Payment.property_id == property_id)
    if tenant_id:
        q = q.where(Payment.tenant_id == tenant_id)
    if billing_id:
        q = q.where(Payment.billing_id == billing_id)
    if status:
        q = q.where(Payment.status == status)
    if type_:
        q = q.where(Payment.type == type_)

    with session_scope() as s:
        total = s.execute(select(func.count()).select_from(
            q.subquery())).scalar_one()
        rows = s.execute(
            q.order_by(Payment.due_date.desc(), Payment.id)
            .offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return [payment_to_dict(p) for p in rows], int(total)


def list_due_pending_ids(now: datetime) -> list[str]:
    with session_scope() as s:
        return list(s.execute(
            select(Payment.id).where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.due_date < now,
            ).order_by(Payment.due_date)
        ).scalars())


def list_orphans(cutoff: datetime) -> list[dict]:
    """Gateway payments still pending with no correlation id, created before `cutoff`."""
    with session_scope() as s:
        rows = s.execute(
            select(Payment).where(
                Payment.method != "manual",
                Payment.external_id.is_(None),
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < cutoff,
            ).order_by(Payment.created_at)
        ).scalars().all()
        return [payment_to_dict(p) for p in rows]


def list_payments_for_owner(owner: str | None) -> list[dict]:
    """Flat rows for the stats frame."""
    q = select(Payment.amount, Payment.status, Payment.due_date, Payment.paid_at)
    if owner:
        q = q.join(Property, Property.id == Payment.property_id).where(
            Property.owner == owner)
    with session_scope() as s:
        return [
            {"amount": float(r.amount), "status": r.status,
             "due_date": ensure_utc(r.due_date), "paid_at": ensure_utc(r.paid_at)}
            for r in s.execute(q)
        ]


# ----- webhook delivery bookkeeping -----

def _find_event(provider: str, external_event_id: str) -> Optional[dict]:
    with session_scope() as s:
        e = s.execute(select(PaymentEvent).where(
            (PaymentEvent.provider == provider) &
            (PaymentEvent.external_event_id == external_event_id)
        )).scalars().first()
        if not e:
            return None
        return {"id": e.id, "processed": bool(e.processed), "payment_id": e.payment_id}


def record_webhook_event(provider: str, external_event_id: Optional[str], signal: str,
                         raw_payload: dict, signature_ok: bool) -> Tuple[int, bool]:
    """
    Persist one webhook delivery. Returns (event_row_id, already_processed).
    Unverified deliveries are stored without their event id so a forged
    request can never shadow the genuine event.
    """
    if not signature_ok:
        external_event_id = None
    if external_event_id:
        existing = _find_event(provider, external_event_id)
        if existing:
            return existing["id"], existing["processed"]

    raw_text = json.dumps(raw_payload, ensure_ascii=False,
                          separators=(",", ":"), default=str)
    try:
        with session_scope() as s:
            e = PaymentEvent(
                provider=provider, external_event_id=external_event_id,
                signal=signal or "", raw=raw_text,
                signature_ok=1 if signature_ok else 0, processed=0,
                received_at=now_utc(),
            )
            s.add(e)
            s.flush()
            return e.id, False
    except IntegrityError:
        # concurrent delivery of the same event won the insert
        existing = _find_event(provider, external_event_id or "")
        if not existing:
            raise
        return existing["id"], existing["processed"]


def mark_event_processed(event_id: int, payment_id: str) -> None:
    with session_scope() as s:
        s.execute(update(PaymentEvent).where(PaymentEvent.id == event_id)
                  .values(processed=1, payment_id=payment_id))


def count_events(provider: str | None = None) -> int:
    q = select(func.count(PaymentEvent.id))
    if provider:
        q = q.where(PaymentEvent.provider == provider)
    with session_scope() as s:
        return int(s.execute(q).scalar_one())
