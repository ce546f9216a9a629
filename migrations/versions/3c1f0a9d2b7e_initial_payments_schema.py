"""initial payments schema

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 09:30:12.114208

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f0a9d2b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAYMENT_TYPES = "type in ('rent','deposit','utility','other')"


def upgrade():
    op.create_table(
        "properties",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("owner", sa.String(128), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("address", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_table(
        "rooms",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("property_id", sa.String(32),
                  sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False),
        sa.Column("number", sa.String(32), nullable=False),
        sa.Column("price", sa.Numeric(14, 2), nullable=False),
        sa.UniqueConstraint("property_id", "number", name="uq_rooms_number"),
    )
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("room_id", sa.String(32),
                  sa.ForeignKey("rooms.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String()),
        sa.Column("phone", sa.String(32)),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("status in ('active','inactive')", name="ck_tenants_status"),
    )
    op.create_index("idx_tenants_room", "tenants", ["room_id"])

    op.create_table(
        "billings",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(32),
                  sa.ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_billings_amount_ge_0"),
        sa.CheckConstraint("status in ('draft','sent','settled')", name="ck_billings_status"),
        sa.CheckConstraint(PAYMENT_TYPES, name="ck_billings_type"),
    )
    op.create_index("idx_billings_tenant", "billings", ["tenant_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("tenant_id", sa.String(32),
                  sa.ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("property_id", sa.String(32),
                  sa.ForeignKey("properties.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("billing_id", sa.String(32),
                  sa.ForeignKey("billings.id", ondelete="SET NULL")),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("description", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("proof_of_payment", sa.Text()),
        sa.Column("external_id", sa.String(128)),
        sa.Column("client_token", sa.Text()),
        sa.Column("redirect_url", sa.Text()),
        sa.Column("gateway_status", sa.String(64)),
        sa.Column("gateway_attempted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_ge_0"),
        sa.CheckConstraint(
            "status in ('pending','paid','failed','cancelled','overdue','refunded')",
            name="ck_payments_status"),
        sa.CheckConstraint("method in ('manual','midtrans','stripe')",
                           name="ck_payments_method"),
        sa.CheckConstraint(PAYMENT_TYPES, name="ck_payments_type"),
        sa.CheckConstraint("(status = 'paid') = (paid_at IS NOT NULL)",
                           name="ck_payments_paid_at"),
        sa.UniqueConstraint("external_id", name="uq_payments_external_id"),
    )
    op.create_index("idx_payments_tenant", "payments", ["tenant_id"])
    op.create_index("idx_payments_billing", "payments", ["billing_id"])
    op.create_index("idx_payments_status_due", "payments", ["status", "due_date"])

    op.create_table(
        "payment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("external_event_id", sa.String()),
        sa.Column("payment_id", sa.String(32)),
        sa.Column("signal", sa.String(), nullable=False),
        sa.Column("raw", sa.Text(), nullable=False),
        sa.Column("signature_ok", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "external_event_id",
                            name="uq_paymentevents_provider_external"),
        sa.CheckConstraint("signature_ok IN (0,1)", name="ck_paymentevents_signature_ok"),
        sa.CheckConstraint("processed IN (0,1)", name="ck_paymentevents_processed"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor", sa.String(128)),
        sa.Column("request_id", sa.String(64)),
        sa.Column("ip", sa.String(64)),
        sa.Column("method", sa.String(8)),
        sa.Column("path", sa.Text()),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_type", sa.String(32)),
        sa.Column("target_id", sa.String(128)),
        sa.Column("outcome", sa.String(16)),
        sa.Column("status", sa.Integer()),
        sa.Column("extra", sa.JSON()),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("signature", sa.String(64), nullable=False),
        sa.Column("key_id", sa.String(16), nullable=False),
    )
    op.create_index("idx_audit_action", "audit_log", ["action"])
    op.create_index("idx_audit_target", "audit_log", ["target_type", "target_id"])


def downgrade():
    op.drop_table("audit_log")
    op.drop_table("payment_events")
    op.drop_table("payments")
    op.drop_table("billings")
    op.drop_table("tenants")
    op.drop_table("rooms")
    op.drop_table("properties")
