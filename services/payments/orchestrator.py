# services/payments/orchestrator.py
"""
Payment orchestration: creating payments, handing them to the selected
gateway, refreshing their status, and staff-driven status changes.

The orchestrator owns the "at most one gateway create per payment" rule:
the pending row is committed first, the gateway is called once, and the
outcome (correlation id, or the fact that the attempt failed / timed out)
is written back to the row.
"""
from __future__ import annotations
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Mapping, Optional, TypeVar

from flask import Flask, current_app

from models import payments_store as ps
from models.audit_store import audit
from models import billing_store
from models.tenants_store import get_property, get_tenant
from services.datetimex import now_utc, parse_iso_to_utc
from services.metrics import (
    GATEWAY_CALLS, GATEWAY_LATENCY, PAYMENTS_CREATED, PAYMENT_TRANSITIONS,
)
from services.notifications import (
    CONFIRMATION, OVERDUE, REMINDER, NotificationResult, Notifier, get_notifier,
)
from services.payments.base import Customer, PaymentGateway
from services.payments.registry import EXT_KEY as GATEWAYS_KEY
from services.payments.errors import (
    GatewayUnavailable, Internal, NotFound, PaymentError, PermissionDenied, ValidationFailed,
)
from services.payments.status import (
    BillingStatus, PaymentMethod, PaymentStatus, PaymentType,
    can_transition, map_signal, parse_enum,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

CREATION_UNKNOWN = "creation_unknown"
CREATION_FAILED = "creation_failed"
ORPHAN_EXPIRED = "orphan_expired"


def _as_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("amount must be numeric") from None
    if not value.is_finite() or value < 0:
        raise ValidationFailed(
            "Amount must be greater than or equal to 0")
    return value


class PaymentOrchestrator:
    def __init__(self, gateways: Mapping[PaymentMethod, PaymentGateway], notifier: Notifier,
                 *, orphan_ttl: timedelta = timedelta(hours=24)) -> None:
        self.gateways = dict(gateways)
        self.notifier = notifier
        self.orphan_ttl = orphan_ttl

    # ----- helpers -----

    def gateway(self, method: PaymentMethod | str) -> PaymentGateway:
        gw = self.gateways.get(PaymentMethod(method))
        if gw is None:
            raise Internal(
                f"payment method '{PaymentMethod(method).value}' is not configured")
        return gw

    def _call(self, method: PaymentMethod, op: str, fn: Callable[[], T]) -> T:
        t0 = time.monotonic()
        try:
            out = fn()
        except PaymentError:
            GATEWAY_CALLS.labels(provider=method.value, op=op, outcome="error").inc()
            raise
        finally:
            GATEWAY_LATENCY.labels(provider=method.value, op=op).observe(
                time.monotonic() - t0)
        GATEWAY_CALLS.labels(provider=method.value, op=op, outcome="ok").inc()
        return out

    def _after_transition(self, before: dict, after: dict, *, source: str,
                          actor: str | None = None, signal: str | None = None) -> None:
        """Side effects of an applied transition; runs after the row is committed."""
        PAYMENT_TRANSITIONS.labels(source=source.split(":")[0], status=after["status"]).inc()
        log.info("payment %s: %s -> %s (source=%s signal=%s)", after["id"],
                 before["status"], after["status"], source, signal)
        audit("payment.status", target_type="payment", target_id=after["id"],
              outcome="success", status=200, actor=actor or source,
              extra={"old": before["status"], "new": after["status"],
                     "signal": signal, "method": after["method"]})

        kind = {PaymentStatus.PAID.value: CONFIRMATION,
                PaymentStatus.OVERDUE.value: OVERDUE}.get(after["status"])
        if kind:
            self.notifier.notify(kind, get_tenant(after["tenant_id"]), after)

    def _require(self, payment_id: str) -> dict:
        p = ps.get_payment(payment_id)
        if not p:
            raise NotFound("Payment not found", payment_id=payment_id)
        return p

    # ----- create -----

    def create_payment(self, *, tenant_id: str, property_id: str, amount, type_,
                       method, due_date: Optional[datetime], description: str | None = None,
                       notes: str | None = None, billing_id: str | None = None,
                       actor: str | None = None, is_admin: bool = False,
                       only_if_billing_empty: bool = False) -> dict:
        type_ = parse_enum(PaymentType, type_, "type")
        method = parse_enum(PaymentMethod, method, "method")
        amount = _as_amount(amount)
        if due_date is None:
            raise ValidationFailed("dueDate is required")
        if method is PaymentMethod.MIDTRANS and amount != amount.to_integral_value():
            raise ValidationFailed("Midtrans payments must be in whole rupiah")

        prop = get_property(property_id)
        if not prop:
            raise NotFound("Property not found", property_id=property_id)
        if actor and not is_admin and prop["owner"] != actor:
            raise PermissionDenied("You do not have access to this property")
        tenant = get_tenant(tenant_id)
        if not tenant or tenant["property_id"] != property_id:
            raise NotFound("Tenant not found or you do not have access to this tenant",
                           tenant_id=tenant_id)
        gw = self.gateway(method)

        payment = ps.insert_payment(
            tenant_id=tenant_id, property_id=property_id, amount=amount,
            type_=type_.value, method=method.value, due_date=due_date,
            description=description, notes=notes, billing_id=billing_id,
            only_if_billing_empty=only_if_billing_empty,
        )
        PAYMENTS_CREATED.labels(method=method.value, type=type_.value).inc()
        audit("payment.create", target_type="payment", target_id=payment["id"],
              outcome="success", status=201, actor=actor,
              extra={"amount": float(amount), "method": method.value})

        if method.is_gateway:
            desc = description or (f"{type_.value.title()} payment for {tenant['property_name']}"
                                   f" - Room {tenant['room']['number']}")
            try:
                checkout = self._call(method, "create", lambda: gw.create(
                    order_id=payment["id"], amount=amount,
                    customer=Customer(tenant["name"], tenant.get("email"), tenant.get("phone")),
                    description=desc,
                ))
            except GatewayUnavailable as e:
                outcome = CREATION_UNKNOWN if e.timed_out else CREATION_FAILED
                ps.record_gateway_attempt(payment["id"], outcome)
                log.warning("gateway create failed payment=%s provider=%s outcome=%s: %s",
                            payment["id"], method.value, outcome, e)
                audit("payment.gateway_create", target_type="payment",
                      target_id=payment["id"], outcome="failure", status=502, actor=actor,
                      extra={"method": method.value, "reason": str(e)})
                raise
            payment = ps.attach_gateway_checkout(
                payment["id"], checkout.external_id, checkout.token, checkout.redirect_url)

        self.notifier.notify(REMINDER, tenant, payment)
        return payment

    # ----- refresh / reconcile -----

    def apply_gateway_signal(self, payment: dict, signal: str, *, at: datetime | None = None,
                             source: str, actor: str | None = None) -> tuple[bool, dict]:
        """
        Map a raw gateway signal and apply it to `payment`.
        Shared by status polling and webhooks so both converge on one table.
        """
        target = map_signal(payment["method"], signal)
        due = parse_iso_to_utc(payment.get("due_date"))
        if target is PaymentStatus.PENDING and due is not None and due < now_utc():
            target = PaymentStatus.OVERDUE
        if target.value == payment["status"] or not can_transition(payment["status"], target):
            return False, payment
        applied, updated = ps.apply_status(
            payment["id"], target, at=at, gateway_status=signal)
        if applied:
            self._after_transition(payment, updated, source=source, actor=actor, signal=signal)
        return applied, updated

    def check_status(self, payment_id: str) -> dict:
        """
        Refresh a payment from its gateway. Advisory: gateway trouble is logged
        and the stored record is returned instead of an error.
        """
        p = self._require(payment_id)
        if not p.get("external_id"):
            return p
        method = PaymentMethod(p["method"])
        try:
            gw = self.gateway(method)
            signal = self._call(method, "retrieve", lambda: gw.retrieve(p["external_id"]))
        except (GatewayUnavailable, NotFound, Internal) as e:
            log.warning("status check failed payment=%s provider=%s: %s",
                        payment_id, method.value, e)
            return p
        _, updated = self.apply_gateway_signal(p, signal, source=f"poll:{method.value}")
        return updated

    # ----- staff actions -----

    def set_manual_status(self, payment_id: str, status, *, actor: str,
                          proof_of_payment: str | None = None) -> dict:
        p = self._require(payment_id)
        target = parse_enum(PaymentStatus, status, "status")
        if PaymentMethod(p["method"]).is_gateway:
            raise PermissionDenied(
                f"Cannot manually update status of {p['method']} payments")
        if target is PaymentStatus.REFUNDED:
            raise ValidationFailed("use the refund action for deposits")
        if target.value == p["status"]:
            return p
        applied, updated = ps.apply_status(payment_id, target,
                                           proof_of_payment=proof_of_payment)
        if not applied:
            raise ValidationFailed(
                f"cannot move payment from {updated['status']} to {target.value}")
        self._after_transition(p, updated, source="staff", actor=actor)
        return updated

    def cancel_payment(self, payment_id: str, *, actor: str) -> dict:
        p = self._require(payment_id)
        if p["status"] == PaymentStatus.CANCELLED.value:
            return p
        if not can_transition(p["status"], PaymentStatus.CANCELLED):
            raise ValidationFailed(f"cannot cancel a {p['status']} payment")

        method = PaymentMethod(p["method"])
        if method.is_gateway and p.get("external_id"):
            gw = self.gateway(method)
            try:
                self._call(method, "cancel", lambda: gw.cancel(p["external_id"]))
            except NotFound:
                log.info("gateway has no record of payment %s; cancelling locally", payment_id)

        applied, updated = ps.apply_status(
            payment_id, PaymentStatus.CANCELLED,
            gateway_status="cancel" if method.is_gateway else None)
        if applied:
            self._after_transition(p, updated, source="staff", actor=actor)
        return updated

    def refund_deposit(self, payment_id: str, *, actor: str) -> dict:
        p = self._require(payment_id)
        if p["type"] != PaymentType.DEPOSIT.value:
            raise ValidationFailed("This payment is not a deposit")
        if p["status"] == PaymentStatus.REFUNDED.value:
            return p
        applied, updated = ps.apply_status(payment_id, PaymentStatus.REFUNDED)
        if not applied:
            raise ValidationFailed("only paid deposits can be refunded")
        self._after_transition(p, updated, source="staff", actor=actor)
        return updated

    def remind_payment(self, payment_id: str, *, actor: str) -> NotificationResult:
        """Staff-triggered reminder for a payment that is still open."""
        p = self._require(payment_id)
        if p["status"] not in (PaymentStatus.PENDING.value, PaymentStatus.OVERDUE.value):
            raise ValidationFailed(f"cannot remind about a {p['status']} payment")
        res = self.notifier.notify(REMINDER, get_tenant(p["tenant_id"]), p)
        audit("payment.remind", target_type="payment", target_id=payment_id,
              outcome="success" if res.ok else "failure", actor=actor,
              extra={"method": res.channel, "reason": res.error})
        return res

    # ----- sweeps -----

    def mark_overdue(self, now: datetime | None = None, *, actor: str | None = None) -> int:
        now = now or now_utc()
        moved = 0
        for pid in ps.list_due_pending_ids(now):
            before = ps.get_payment(pid)
            applied, after = ps.apply_status(pid, PaymentStatus.OVERDUE)
            if applied:
                moved += 1
                self._after_transition(before, after, source="sweep", actor=actor)
        log.info("overdue sweep: %d payment(s) moved", moved)
        return moved

    def reconcile_orphans(self, now: datetime | None = None, *, actor: str | None = None) -> dict:
        """
        Settle gateway payments whose create call failed or timed out.
        Midtrans orders are keyed by our payment id, so the gateway can be asked
        whether the order exists; everything else past the TTL is cancelled.
        """
        now = now or now_utc()
        summary = {"checked": 0, "adopted": 0, "cancelled": 0, "errors": 0}
        for p in ps.list_orphans(now - self.orphan_ttl):
            summary["checked"] += 1
            method = PaymentMethod(p["method"])
            if method is PaymentMethod.MIDTRANS and method in self.gateways:
                gw = self.gateways[method]
                try:
                    signal = self._call(method, "retrieve", lambda: gw.retrieve(p["id"]))
                except NotFound:
                    signal = None
                except GatewayUnavailable as e:
                    summary["errors"] += 1
                    log.warning("orphan %s: gateway unavailable: %s", p["id"], e)
                    continue
                if signal is not None:
                    adopted = ps.attach_gateway_checkout(p["id"], p["id"], None, None)
                    self.apply_gateway_signal(adopted, signal, source="orphan:midtrans",
                                              actor=actor)
                    summary["adopted"] += 1
                    continue
            applied, after = ps.apply_status(p["id"], PaymentStatus.CANCELLED,
                                             gateway_status=ORPHAN_EXPIRED)
            if applied:
                summary["cancelled"] += 1
                self._after_transition(p, after, source="orphan", actor=actor)
        log.info("orphan reconciliation: %s", summary)
        return summary

    # ----- billing -----

    def create_billing(self, *, tenant_id: str, title: str, amount, type_,
                       due_date: Optional[datetime], description: str | None = None,
                       actor: str | None = None) -> dict:
        type_ = parse_enum(PaymentType, type_, "type")
        amount = _as_amount(amount)
        if not (title or "").strip():
            raise ValidationFailed("title is required")
        if due_date is None:
            raise ValidationFailed("dueDate is required")
        if not get_tenant(tenant_id):
            raise NotFound("Tenant not found", tenant_id=tenant_id)
        b = billing_store.create_billing(tenant_id, title.strip(), amount, type_.value,
                                         due_date, description)
        audit("billing.create", target_type="billing", target_id=b["id"],
              outcome="success", status=201, actor=actor,
              extra={"amount": float(amount)})
        return b

    def send_billing(self, billing_id: str, method, *, actor: str | None = None,
                     is_admin: bool = False) -> dict:
        """Issue the payment for a draft billing; the billing then derives to 'sent'."""
        b = billing_store.get_billing(billing_id)
        if not b:
            raise NotFound("Billing not found", billing_id=billing_id)
        if b["status"] != BillingStatus.DRAFT.value or b["payments"]:
            raise ValidationFailed("Billing has already been sent")
        tenant = get_tenant(b["tenant_id"])
        if not tenant:
            raise ValidationFailed("Billing has no associated tenant")
        self.create_payment(
            tenant_id=tenant["id"], property_id=tenant["property_id"],
            amount=b["amount"], type_=b["type"], method=method,
            due_date=parse_iso_to_utc(b["due_date"]),
            description=b["description"] or b["title"], billing_id=b["id"],
            actor=actor, is_admin=is_admin, only_if_billing_empty=True,
        )
        return billing_store.get_billing(billing_id)

    def mark_billing_paid(self, billing_id: str, *, actor: str | None = None,
                          is_admin: bool = False,
                          proof_of_payment: str | None = None) -> dict:
        """
        Settle a billing by hand. A draft is first issued as a manual payment;
        open manual payments are then marked paid. Gateway payments settle
        through their gateway only.
        """
        b = billing_store.get_billing(billing_id)
        if not b:
            raise NotFound("Billing not found", billing_id=billing_id)
        if b["status"] == BillingStatus.SETTLED.value:
            return b
        open_states = (PaymentStatus.PENDING.value, PaymentStatus.OVERDUE.value)
        for p in b["payments"]:
            if p["status"] == PaymentStatus.PAID.value:
                continue
            if p["status"] not in open_states:
                raise ValidationFailed(f"Billing has a {p['status']} payment")
            if PaymentMethod(p["method"]).is_gateway:
                raise ValidationFailed(
                    f"Billing is awaiting a {p['method']} payment; it settles via the gateway")

        if not b["payments"]:
            b = self.send_billing(billing_id, PaymentMethod.MANUAL, actor=actor,
                                  is_admin=is_admin)
        for p in b["payments"]:
            if p["status"] in open_states:
                self.set_manual_status(p["id"], PaymentStatus.PAID, actor=actor or "staff",
                                       proof_of_payment=proof_of_payment)
        audit("billing.mark_paid", target_type="billing", target_id=billing_id,
              outcome="success", status=200, actor=actor)
        return billing_store.get_billing(billing_id)


def get_orchestrator(app: Flask | None = None) -> PaymentOrchestrator:
    """Orchestrator wired to the adapters and notifier installed on the app."""
    app = app or current_app
    return PaymentOrchestrator(
        app.extensions.get(GATEWAYS_KEY, {}),
        get_notifier(app),
        orphan_ttl=timedelta(hours=float(app.config.get("ORPHAN_TTL_HOURS") or 24)),
    )
