# models/schema.py
from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    JSON, Numeric, String, Text, Integer, DateTime, ForeignKey, CheckConstraint,
    UniqueConstraint, Index
)
from models.base import Base


def _in(col: str, values) -> str:
    return f"{col} in (" + ",".join(f"'{v}'" for v in values) + ")"


PAYMENT_STATUSES = ("pending", "paid", "failed",
                    "cancelled", "overdue", "refunded")
PAYMENT_METHODS = ("manual", "midtrans", "stripe")
PAYMENT_TYPES = ("rent", "deposit", "utility", "other")
BILLING_STATUSES = ("draft", "sent", "settled")


# --- COLLABORATOR ENTITIES (property / room / tenant)

class Property(Base):
    __tablename__ = "properties"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    owner: Mapped[str] = mapped_column(
        String(128), nullable=False)  # username of the managing account
    name: Mapped[str] = mapped_column(String, nullable=False)
    address: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)


class Room(Base):
    __tablename__ = "rooms"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    property_id: Mapped[str] = mapped_column(String(32), ForeignKey(
        "properties.id", ondelete="CASCADE"), nullable=False)
    number: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0"))
    __table_args__ = (
        UniqueConstraint("property_id", "number", name="uq_rooms_number"),
    )


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    room_id: Mapped[str] = mapped_column(String(32), ForeignKey(
        "rooms.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("status in ('active','inactive')",
                        name="ck_tenants_status"),
    )


Index("idx_tenants_room", Tenant.room_id)


# --- BILLING / PAYMENTS

class Billing(Base):
    __tablename__ = "billings"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(32), ForeignKey(
        "tenants.id", ondelete="RESTRICT"), nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False, default="rent")
    due_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    # derived from payments; see billing_store.recompute_billing
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="draft")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_billings_amount_ge_0"),
        CheckConstraint(_in("status", BILLING_STATUSES),
                        name="ck_billings_status"),
        CheckConstraint(_in("type", PAYMENT_TYPES), name="ck_billings_type"),
    )


Index("idx_billings_tenant", Billing.tenant_id)


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(32), ForeignKey(
        "tenants.id", ondelete="RESTRICT"), nullable=False)
    property_id: Mapped[str] = mapped_column(String(32), ForeignKey(
        "properties.id", ondelete="RESTRICT"), nullable=False)
    billing_id: Mapped[str | None] = mapped_column(String(32), ForeignKey(
        "billings.id", ondelete="SET NULL"))

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    method: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending")
    due_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    description: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    proof_of_payment: Mapped[str | None] = mapped_column(Text)  # receipt URL

    # gateway correlation (null for manual payments)
    external_id: Mapped[str | None] = mapped_column(String(128))
    client_token: Mapped[str | None] = mapped_column(Text)
    redirect_url: Mapped[str | None] = mapped_column(Text)
    gateway_status: Mapped[str | None] = mapped_column(String(64))
    gateway_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_ge_0"),
        CheckConstraint(_in("status", PAYMENT_STATUSES),
                        name="ck_payments_status"),
        CheckConstraint(_in("method", PAYMENT_METHODS),
                        name="ck_payments_method"),
        CheckConstraint(_in("type", PAYMENT_TYPES), name="ck_payments_type"),
        CheckConstraint("(status = 'paid') = (paid_at IS NOT NULL)",
                        name="ck_payments_paid_at"),
        UniqueConstraint("external_id", name="uq_payments_external_id"),
    )


Index("idx_payments_tenant", Payment.tenant_id)
Index("idx_payments_billing", Payment.billing_id)
Index("idx_payments_status_due", Payment.status, Payment.due_date)


class PaymentEvent(Base):
    __tablename__ = "payment_events"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    external_event_id: Mapped[str | None] = mapped_column(String)
    payment_id: Mapped[str | None] = mapped_column(
        String(32))  # intended FK to payments.id (nullable)
    signal: Mapped[str] = mapped_column(String, nullable=False)
    raw: Mapped[str] = mapped_column(Text, nullable=False)
    signature_ok: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    # 1 once the event was matched to a payment and applied (or found to be a no-op)
    processed: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        UniqueConstraint("provider", "external_event_id",
                         name="uq_paymentevents_provider_external"),
        CheckConstraint("signature_ok IN (0,1)",
                        name="ck_paymentevents_signature_ok"),
        CheckConstraint("processed IN (0,1)",
                        name="ck_paymentevents_processed"),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)

    actor: Mapped[str | None] = mapped_column(String(128))
    request_id: Mapped[str | None] = mapped_column(String(64))
    ip: Mapped[str | None] = mapped_column(String(64))
    method: Mapped[str | None] = mapped_column(String(8))
    path: Mapped[str | None] = mapped_column(Text)

    action: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(32))
    target_id: Mapped[str | None] = mapped_column(String(128))
    outcome: Mapped[str | None] = mapped_column(String(16))
    status: Mapped[int | None] = mapped_column(Integer)
    extra: Mapped[dict | None] = mapped_column(JSON)

    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str] = mapped_column(String(64), nullable=False)
    key_id: Mapped[str] = mapped_column(String(16), nullable=False)


Index("idx_audit_action", AuditLog.action)
Index("idx_audit_target", AuditLog.target_type, AuditLog.target_id)
