import json

import pytest

from models.billing_store import get_billing
from models.payments_store import count_events, get_payment, list_payments
from services.datetimex import from_epoch, to_iso_z
from services.payments.orchestrator import get_orchestrator
from tests.utils import FakeResponse, auth, midtrans_body, stripe_event, stripe_headers


@pytest.fixture()
def midtrans_payment(app, gateways, house, tomorrow):
    with app.app_context():
        return get_orchestrator().create_payment(
            tenant_id=house["tenant_id"], property_id=house["property_id"],
            amount=100000, type_="rent", method="midtrans", due_date=tomorrow)


def _post_midtrans(client, body):
    return client.post("/webhooks/midtrans", data=body, content_type="application/json")


def test_settlement_marks_paid_at_event_time(client, midtrans_payment, channel):
    pid = midtrans_payment["id"]
    r = _post_midtrans(client, midtrans_body(pid, "settlement"))
    assert r.status_code == 200
    assert r.get_json() == {"received": True, "applied": True, "status": "paid"}

    p = get_payment(pid)
    assert p["status"] == "paid"
    assert p["paid_at"] == "2026-10-20T03:15:00Z"
    assert p["gateway_status"] == "settlement"
    assert channel.kinds(pid) == ["reminder", "confirmation"]


def test_duplicate_delivery_is_acknowledged_once(client, midtrans_payment, channel):
    pid = midtrans_payment["id"]
    body = midtrans_body(pid, "settlement")
    assert _post_midtrans(client, body).get_json()["applied"] is True

    r = _post_midtrans(client, body)
    assert r.status_code == 200
    assert r.get_json()["applied"] is False
    assert r.get_json()["status"] == "paid"
    assert channel.kinds(pid).count("confirmation") == 1
    assert count_events("midtrans") == 1


def test_pending_after_settlement_stays_paid(client, midtrans_payment):
    pid = midtrans_payment["id"]
    _post_midtrans(client, midtrans_body(pid, "settlement"))
    r = _post_midtrans(client, midtrans_body(pid, "pending"))
    assert r.status_code == 200
    assert r.get_json() == {"received": True, "applied": False, "status": "paid"}
    assert get_payment(pid)["status"] == "paid"


def test_pending_before_settlement_ends_paid(client, midtrans_payment):
    pid = midtrans_payment["id"]
    r = _post_midtrans(client, midtrans_body(pid, "pending"))
    assert r.get_json()["applied"] is False
    _post_midtrans(client, midtrans_body(pid, "settlement"))
    assert get_payment(pid)["status"] == "paid"


def test_deny_cancels(client, midtrans_payment):
    pid = midtrans_payment["id"]
    r = _post_midtrans(client, midtrans_body(pid, "deny"))
    assert r.get_json()["status"] == "cancelled"
    p = get_payment(pid)
    assert p["status"] == "cancelled"
    assert p["paid_at"] is None

    # a settlement arriving after the cancellation changes nothing
    r = _post_midtrans(client, midtrans_body(pid, "settlement"))
    assert r.get_json()["applied"] is False
    assert get_payment(pid)["status"] == "cancelled"


def test_unknown_order_is_404_without_mutation(client, midtrans_payment):
    r = _post_midtrans(client, midtrans_body("no-such-order", "settlement"))
    assert r.status_code == 404
    assert "error" in r.get_json()
    assert get_payment(midtrans_payment["id"])["status"] == "pending"
    assert list_payments()[1] == 1


def test_invalid_signature_is_401_without_mutation(client, midtrans_payment, channel):
    pid = midtrans_payment["id"]
    r = _post_midtrans(client, midtrans_body(pid, "settlement", signature="f" * 128))
    assert r.status_code == 401
    assert get_payment(pid)["status"] == "pending"
    assert channel.kinds(pid) == ["reminder"]
    # the rejected delivery is still on record
    assert count_events("midtrans") == 1

    # and does not block the genuine event
    r = _post_midtrans(client, midtrans_body(pid, "settlement"))
    assert r.get_json()["applied"] is True


def test_unknown_provider_is_rejected(client):
    r = client.post("/webhooks/paypal", data=b"{}", content_type="application/json")
    assert r.status_code == 400


def test_webhook_settles_billing(client, app, house, tomorrow):
    with app.app_context():
        orch = get_orchestrator()
        b = orch.create_billing(tenant_id=house["tenant_id"], title="October rent",
                                amount=100000, type_="rent", due_date=tomorrow)
        assert b["status"] == "draft"
        b = orch.send_billing(b["id"], "midtrans")
    assert b["status"] == "sent"
    pid = b["payments"][0]["id"]

    _post_midtrans(client, midtrans_body(pid, "settlement"))
    assert get_billing(b["id"])["status"] == "settled"


def test_stripe_succeeded_marks_paid(client, app, house, tomorrow):
    with app.app_context():
        p = get_orchestrator().create_payment(
            tenant_id=house["tenant_id"], property_id=house["property_id"],
            amount=250000, type_="deposit", method="stripe", due_date=tomorrow)

    body = stripe_event("payment_intent.succeeded",
                        {"id": p["external_id"], "object": "payment_intent",
                         "status": "succeeded", "metadata": {"order_id": p["id"]}})
    r = client.post("/webhooks/stripe", data=body, headers=stripe_headers(body))
    assert r.status_code == 200
    assert r.get_json()["status"] == "paid"
    assert get_payment(p["id"])["paid_at"] == to_iso_z(from_epoch(1760000000))


def test_stripe_falls_back_to_metadata_order_id(client, app, house, tomorrow):
    with app.app_context():
        p = get_orchestrator().create_payment(
            tenant_id=house["tenant_id"], property_id=house["property_id"],
            amount=250000, type_="rent", method="stripe", due_date=tomorrow)

    body = stripe_event("checkout.session.completed",
                        {"id": "cs_1", "object": "checkout.session",
                         "payment_intent": "pi_from_checkout",
                         "metadata": {"orderId": p["id"]}}, event_id="evt_cs_1")
    r = client.post("/webhooks/stripe", data=body, headers=stripe_headers(body))
    assert r.status_code == 200
    assert get_payment(p["id"])["status"] == "paid"


def test_stripe_bad_signature(client, app, house, tomorrow):
    body = stripe_event("payment_intent.succeeded", {"id": "pi_test_1"})
    r = client.post("/webhooks/stripe", data=body,
                    headers=stripe_headers(body, secret="whsec_wrong"))
    assert r.status_code == 401
    assert json.loads(r.data)["error"]


def test_midtrans_settlement_after_refused_cancel_is_paid(client, midtrans_payment, midtrans_http):
    pid = midtrans_payment["id"]
    midtrans_http.force_response = FakeResponse(200, {"status_code": "412",
                                                      "status_message": "cannot cancel"})
    r = client.post(f"/api/payments/{pid}/cancel", headers=auth())
    assert r.status_code == 502
    midtrans_http.force_response = None

    r = _post_midtrans(client, midtrans_body(pid, "settlement"))
    assert r.get_json() == {"received": True, "applied": True, "status": "paid"}


def test_stripe_decline_then_retry_ends_paid(client, app, house, tomorrow):
    with app.app_context():
        p = get_orchestrator().create_payment(
            tenant_id=house["tenant_id"], property_id=house["property_id"],
            amount=250000, type_="rent", method="stripe", due_date=tomorrow)
    intent = {"id": p["external_id"], "object": "payment_intent",
              "metadata": {"order_id": p["id"]}}

    body = stripe_event("payment_intent.payment_failed",
                        dict(intent, status="requires_payment_method"), event_id="evt_decline")
    r = client.post("/webhooks/stripe", data=body, headers=stripe_headers(body))
    assert r.get_json() == {"received": True, "applied": False, "status": "pending"}

    body = stripe_event("payment_intent.succeeded", dict(intent, status="succeeded"),
                        event_id="evt_retry")
    r = client.post("/webhooks/stripe", data=body, headers=stripe_headers(body))
    assert r.get_json() == {"received": True, "applied": True, "status": "paid"}
    assert get_payment(p["id"])["status"] == "paid"
