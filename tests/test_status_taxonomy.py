import pytest
from services.payments.errors import ValidationFailed
from services.payments.status import (
    PaymentMethod, PaymentStatus, TRANSITIONS,
    can_transition, is_terminal, map_signal, parse_enum, sources_for,
)


@pytest.mark.parametrize("signal,expected", [
    ("capture", PaymentStatus.PAID),
    ("settlement", PaymentStatus.PAID),
    ("pending", PaymentStatus.PENDING),
    ("deny", PaymentStatus.CANCELLED),
    ("cancel", PaymentStatus.CANCELLED),
    ("expire", PaymentStatus.CANCELLED),
    ("failure", PaymentStatus.FAILED),
])
def test_midtrans_signals(signal, expected):
    assert map_signal(PaymentMethod.MIDTRANS, signal) is expected


@pytest.mark.parametrize("signal,expected", [
    ("succeeded", PaymentStatus.PAID),
    ("checkout.session.completed", PaymentStatus.PAID),
    ("processing", PaymentStatus.PENDING),
    ("requires_action", PaymentStatus.PENDING),
    ("canceled", PaymentStatus.CANCELLED),
    ("payment_failed", PaymentStatus.FAILED),
])
def test_stripe_signals(signal, expected):
    assert map_signal("stripe", signal) is expected


def test_unknown_signal_falls_back_to_pending():
    assert map_signal("midtrans", "refund") is PaymentStatus.PENDING
    assert map_signal("stripe", "charge.dispute.created") is PaymentStatus.PENDING
    assert map_signal("midtrans", None) is PaymentStatus.PENDING
    assert map_signal("manual", "settlement") is PaymentStatus.PENDING


def test_signal_lookup_ignores_case_and_whitespace():
    assert map_signal("midtrans", "  Settlement ") is PaymentStatus.PAID


def test_transition_table():
    assert can_transition("pending", "paid")
    assert can_transition("pending", "overdue")
    assert can_transition("overdue", "paid")
    assert can_transition("paid", "refunded")
    assert not can_transition("paid", "pending")
    assert not can_transition("paid", "cancelled")
    assert not can_transition("overdue", "pending")
    assert not can_transition("pending", "refunded")
    for terminal in ("failed", "cancelled", "refunded"):
        assert is_terminal(terminal)
        assert not TRANSITIONS[PaymentStatus(terminal)]
    assert not is_terminal("paid")


def test_sources_for_is_the_update_precondition():
    assert sources_for("paid") == ["overdue", "pending"]
    assert sources_for("overdue") == ["pending"]
    assert sources_for("refunded") == ["paid"]
    assert sources_for("pending") == []


def test_parse_enum_reports_allowed_values():
    assert parse_enum(PaymentMethod, " Stripe ", "method") is PaymentMethod.STRIPE
    with pytest.raises(ValidationFailed) as ei:
        parse_enum(PaymentMethod, "paypal", "method")
    assert "manual|midtrans|stripe" in str(ei.value)
