import hashlib
import json
from decimal import Decimal

import pytest
import requests

from services.payments.base import Customer
from services.payments.errors import (
    AuthenticationFailed, GatewayUnavailable, NotFound, ValidationFailed,
)
from services.payments.midtrans_gateway import MidtransGateway
from tests.utils import MIDTRANS_KEY, FakeMidtransSession, FakeResponse, midtrans_body


@pytest.fixture()
def gw(midtrans_http):
    return MidtransGateway(MIDTRANS_KEY, session=midtrans_http)


def test_create_posts_snap_transaction(gw, midtrans_http):
    out = gw.create(order_id="ord1", amount=Decimal("100000"),
                    customer=Customer("Budi", "budi@example.com", "0812"),
                    description="Rent payment for Kos Mawar - Room 101")
    assert out.external_id == "ord1"
    assert out.token == "snap-ord1"
    assert out.redirect_url.endswith("snap-ord1")

    method, url, kw = midtrans_http.calls[0]
    assert method == "POST"
    assert url == "https://app.sandbox.midtrans.com/snap/v1/transactions"
    assert kw["json"]["transaction_details"] == {"order_id": "ord1", "gross_amount": 100000}
    assert midtrans_http.auth == (MIDTRANS_KEY, "")


def test_production_flag_switches_endpoints():
    http = FakeMidtransSession()
    gw = MidtransGateway(MIDTRANS_KEY, is_production=True, session=http)
    gw.create(order_id="o", amount=1, customer=Customer("x"), description="d")
    assert http.calls[0][1].startswith("https://app.midtrans.com/")


def test_timeout_is_flagged(gw, midtrans_http):
    midtrans_http.fail_with = requests.Timeout("read timed out")
    with pytest.raises(GatewayUnavailable) as ei:
        gw.create(order_id="o", amount=1, customer=Customer("x"), description="d")
    assert ei.value.timed_out is True


def test_http_error_is_gateway_unavailable(gw, midtrans_http):
    midtrans_http.force_response = FakeResponse(500, {"error_messages": ["boom"]})
    with pytest.raises(GatewayUnavailable) as ei:
        gw.create(order_id="o", amount=1, customer=Customer("x"), description="d")
    assert ei.value.timed_out is False


def test_retrieve_returns_raw_status(gw, midtrans_http):
    midtrans_http.transactions["ord9"] = "settlement"
    assert gw.retrieve("ord9") == "settlement"
    assert midtrans_http.calls[-1][1].endswith("/v2/ord9/status")


def test_retrieve_unknown_order_in_band_404(gw):
    with pytest.raises(NotFound):
        gw.retrieve("missing")


def test_signature_matches_midtrans_formula(gw):
    raw = f"ord1200100000.00{MIDTRANS_KEY}".encode("utf-8")
    assert gw.signature_for("ord1", "200", "100000.00") == hashlib.sha512(raw).hexdigest()


def test_parse_webhook_builds_event(gw):
    evt = gw.parse_webhook(midtrans_body("ord1", "settlement", transaction_id="tx-9"), {})
    assert evt.provider == "midtrans"
    assert evt.external_id == evt.order_id == "ord1"
    assert evt.signal == "settlement"
    assert evt.external_event_id == "tx-9:settlement"
    # settlement_time is Jakarta local time (UTC+7)
    assert evt.event_time.isoformat() == "2026-10-20T03:15:00+00:00"


def test_parse_webhook_rejects_bad_signature(gw):
    body = midtrans_body("ord1", "settlement", signature="0" * 128)
    with pytest.raises(AuthenticationFailed):
        gw.parse_webhook(body, {})


def test_parse_webhook_rejects_tampered_amount(gw):
    payload = json.loads(midtrans_body("ord1", "settlement"))
    payload["gross_amount"] = "1.00"
    with pytest.raises(AuthenticationFailed):
        gw.parse_webhook(json.dumps(payload).encode(), {})


def test_parse_webhook_requires_order_id(gw):
    with pytest.raises(ValidationFailed):
        gw.parse_webhook(midtrans_body("", "settlement"), {})


def test_parse_webhook_rejects_garbage(gw):
    with pytest.raises(ValidationFailed):
        gw.parse_webhook(b"not json", {})


def test_in_band_refusal_on_cancel_is_an_error(gw, midtrans_http):
    midtrans_http.force_response = FakeResponse(200, {
        "status_code": "412",
        "status_message": "Merchant cannot modify the status of the transaction"})
    with pytest.raises(GatewayUnavailable) as ei:
        gw.cancel("ord1")
    assert "412" in str(ei.value)


def test_in_band_auth_error_on_retrieve_is_an_error(gw, midtrans_http):
    midtrans_http.force_response = FakeResponse(200, {
        "status_code": "401", "status_message": "Unknown Merchant server_key/id"})
    with pytest.raises(GatewayUnavailable):
        gw.retrieve("ord1")


def test_retrieve_accepts_expired_state_code(gw, midtrans_http):
    midtrans_http.force_response = FakeResponse(200, {
        "status_code": "407", "status_message": "Success, transaction is expired",
        "order_id": "ord1", "transaction_status": "expire"})
    assert gw.retrieve("ord1") == "expire"


def test_create_rejects_fractional_rupiah(gw, midtrans_http):
    with pytest.raises(ValidationFailed):
        gw.create(order_id="o", amount=Decimal("100000.50"), customer=Customer("x"),
                  description="d")
    assert midtrans_http.calls == []
