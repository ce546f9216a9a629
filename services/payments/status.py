# services/payments/status.py
"""
Closed vocabularies for payments/billings and the gateway signal tables.

Every gateway reports status in its own words. The tables below are the only
place those words are translated into PaymentStatus; anything not listed
falls through to DEFAULT_STATUS.
"""

from __future__ import annotations
from enum import Enum
from typing import Dict, FrozenSet, Mapping

from services.payments.errors import ValidationFailed


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MANUAL = "manual"
    MIDTRANS = "midtrans"   # hosted checkout (redirect / snap token)
    STRIPE = "stripe"       # intent-based (client secret)

    @property
    def is_gateway(self) -> bool:
        return self is not PaymentMethod.MANUAL


class PaymentType(str, Enum):
    RENT = "rent"
    DEPOSIT = "deposit"
    UTILITY = "utility"
    OTHER = "other"


class BillingStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    SETTLED = "settled"


DEFAULT_STATUS = PaymentStatus.PENDING

MIDTRANS_SIGNALS: Mapping[str, PaymentStatus] = {
    "capture": PaymentStatus.PAID,
    "settlement": PaymentStatus.PAID,
    "pending": PaymentStatus.PENDING,
    "deny": PaymentStatus.CANCELLED,
    "cancel": PaymentStatus.CANCELLED,
    "expire": PaymentStatus.CANCELLED,
    "failure": PaymentStatus.FAILED,
}

STRIPE_SIGNALS: Mapping[str, PaymentStatus] = {
    "succeeded": PaymentStatus.PAID,
    "checkout.session.completed": PaymentStatus.PAID,
    "processing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
    "canceled": PaymentStatus.CANCELLED,
    "payment_failed": PaymentStatus.FAILED,
}

SIGNAL_TABLES: Dict[PaymentMethod, Mapping[str, PaymentStatus]] = {
    PaymentMethod.MIDTRANS: MIDTRANS_SIGNALS,
    PaymentMethod.STRIPE: STRIPE_SIGNALS,
    PaymentMethod.MANUAL: {},
}

# from-status -> statuses it may move to. paid -> refunded is a staff-only move
# (deposit refunds); gateways never report it.
TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PAID, PaymentStatus.FAILED,
        PaymentStatus.CANCELLED, PaymentStatus.OVERDUE,
    }),
    PaymentStatus.OVERDUE: frozenset({
        PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

assert set(TRANSITIONS) == set(PaymentStatus)


def map_signal(method: PaymentMethod | str, signal: str | None) -> PaymentStatus:
    """Translate a raw gateway signal into a PaymentStatus (unknown -> pending)."""
    table = SIGNAL_TABLES.get(PaymentMethod(method), {})
    key = (signal or "").strip().lower()
    return table.get(key, DEFAULT_STATUS)


def can_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return PaymentStatus(target) in TRANSITIONS[PaymentStatus(current)]


def sources_for(target: PaymentStatus | str) -> list[str]:
    """All statuses from which `target` is reachable; used as the UPDATE precondition."""
    t = PaymentStatus(target)
    return sorted(s.value for s, allowed in TRANSITIONS.items() if t in allowed)


def is_terminal(status: PaymentStatus | str) -> bool:
    return not TRANSITIONS[PaymentStatus(status)]


def parse_enum(enum_cls, value, field: str):
    """Parse a user-supplied enum value; raise ValidationFailed with a readable message."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or "").strip().lower())
    except ValueError:
        allowed = "|".join(m.value for m in enum_cls)
        raise ValidationFailed(f"{field} must be one of {allowed}") from None
