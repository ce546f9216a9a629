# tests/utils.py
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import requests
import stripe

MIDTRANS_KEY = "SB-Mid-server-test"
STRIPE_WHSEC = "whsec_test_secret"

OWNER_TOKEN = "tok-owner"
OTHER_TOKEN = "tok-other"
ADMIN_TOKEN = "tok-admin"
API_TOKENS = f"owner:{OWNER_TOKEN},other:{OTHER_TOKEN}:user,root:{ADMIN_TOKEN}:admin"


def auth(token=OWNER_TOKEN):
    return {"Authorization": f"Bearer {token}"}


# ----- midtrans -----

class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeMidtransSession:
    """Stands in for requests.Session; keeps a tiny in-memory transaction table."""

    def __init__(self):
        self.calls = []
        self.headers = {}
        self.auth = None
        self.transactions = {}
        self.fail_with = None
        self.force_response = None

    def request(self, method, url, timeout=None, **kw):
        self.calls.append((method, url, kw))
        if self.fail_with is not None:
            raise self.fail_with
        if self.force_response is not None:
            return self.force_response
        if url.endswith("/snap/v1/transactions"):
            order_id = kw["json"]["transaction_details"]["order_id"]
            self.transactions.setdefault(order_id, "pending")
            return FakeResponse(201, {
                "token": f"snap-{order_id}",
                "redirect_url": f"https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-{order_id}",
            })
        order_id = url.rstrip("/").split("/")[-2]
        if order_id not in self.transactions:
            return FakeResponse(200, {"status_code": "404",
                                      "status_message": "Transaction doesn't exist."})
        if url.endswith("/cancel"):
            self.transactions[order_id] = "cancel"
        return FakeResponse(200, {"status_code": "200", "order_id": order_id,
                                  "transaction_status": self.transactions[order_id]})


def midtrans_body(order_id, status, *, gross="100000.00", status_code="200",
                  transaction_id="tx-1", settlement_time="2026-10-20 10:15:00",
                  key=MIDTRANS_KEY, signature=None) -> bytes:
    sig = signature or hashlib.sha512(
        f"{order_id}{status_code}{gross}{key}".encode("utf-8")).hexdigest()
    payload = {
        "transaction_time": "2026-10-20 10:00:00",
        "transaction_status": status,
        "transaction_id": transaction_id,
        "status_code": status_code,
        "signature_key": sig,
        "payment_type": "bank_transfer",
        "order_id": order_id,
        "gross_amount": gross,
        "fraud_status": "accept",
    }
    if status in ("settlement", "capture") and settlement_time:
        payload["settlement_time"] = settlement_time
    return json.dumps(payload).encode("utf-8")


# ----- stripe -----

class FakeIntents:
    def __init__(self):
        self.created = []
        self.cancelled = []
        self.intents = {}
        self.error = None

    def create(self, params=None, options=None):
        if self.error is not None:
            raise self.error
        iid = f"pi_test_{len(self.intents) + 1}"
        intent = SimpleNamespace(id=iid, client_secret=f"{iid}_secret_abc",
                                 status="requires_payment_method",
                                 metadata=dict(params["metadata"]))
        self.intents[iid] = intent
        self.created.append((params, options))
        return intent

    def retrieve(self, intent_id, params=None, options=None):
        if intent_id not in self.intents:
            raise stripe.InvalidRequestError(
                f"No such payment_intent: '{intent_id}'", "id", http_status=404)
        return self.intents[intent_id]

    def cancel(self, intent_id, params=None, options=None):
        intent = self.retrieve(intent_id)
        intent.status = "canceled"
        self.cancelled.append(intent_id)
        return intent


class FakeStripeClient:
    def __init__(self):
        self.payment_intents = FakeIntents()


def stripe_event(event_type, obj, *, event_id="evt_test_1", created=1760000000) -> bytes:
    return json.dumps({
        "id": event_id, "object": "event", "type": event_type,
        "created": created, "data": {"object": obj},
    }).encode("utf-8")


def stripe_headers(body: bytes, secret=STRIPE_WHSEC, timestamp=None) -> dict:
    t = int(timestamp or time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{t}.".encode("utf-8") + body,
                   hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={t},v1={mac}", "Content-Type": "application/json"}


# ----- notifications -----

class RecordingChannel:
    name = "recording"

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, kind, tenant, payment):
        if self.fail:
            raise ConnectionError("messaging provider down")
        self.sent.append((kind, tenant["id"], payment["id"]))

    def kinds(self, payment_id=None):
        return [k for k, _, pid in self.sent if payment_id in (None, pid)]
