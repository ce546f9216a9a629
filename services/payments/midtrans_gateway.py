# services/payments/midtrans_gateway.py
"""
Midtrans adapter (hosted checkout via Snap).

Configuration (env first, Flask config second):
  MIDTRANS_SERVER_KEY       server key; used for Basic auth and webhook signatures
  MIDTRANS_IS_PRODUCTION    "true" to hit the live endpoints (default sandbox)
  GATEWAY_TIMEOUT_SEC       per-call timeout in seconds (default 5)

The order id we send is our own payment id, so the correlation id is
known before the call is made and can be looked up later even when the
create call timed out.
"""

from __future__ import annotations
import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping

import requests

from services.datetimex import parse_iso_to_utc, APP_TZ
from services.payments.base import Customer, GatewayCheckout, GatewayEvent
from services.payments.errors import (
    AuthenticationFailed, GatewayUnavailable, NotFound, ValidationFailed,
)

log = logging.getLogger(__name__)

SNAP_URLS = {
    True: "https://app.midtrans.com/snap/v1/transactions",
    False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
}
CORE_URLS = {
    True: "https://api.midtrans.com/v2",
    False: "https://api.sandbox.midtrans.com/v2",
}


def _gross(amount) -> str:
    # Midtrans takes whole rupiah; the webhook echoes it back as "100000.00"
    value = Decimal(str(amount))
    if value != value.to_integral_value():
        raise ValidationFailed("midtrans amounts must be whole rupiah")
    return str(int(value))


class MidtransGateway:
    name = "midtrans"

    def __init__(self, server_key: str, *, is_production: bool = False,
                 timeout: float = 5.0, session: requests.Session | None = None) -> None:
        if not server_key:
            raise RuntimeError("MIDTRANS_SERVER_KEY not set")
        self.server_key = server_key
        self.is_production = is_production
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.auth = (server_key, "")
        self.http.headers.update({"Accept": "application/json"})

    # --- outbound ---

    def _call(self, method: str, url: str, op: str, *, reports_state: bool = False,
              **kw) -> Dict[str, Any]:
        """
        One core/Snap API call. The core API answers HTTP 200 and puts the
        real outcome in `status_code`; anything outside 2xx is an error unless
        `reports_state` is set and the body carries a transaction_status
        (the status endpoint answers 407 for an expired transaction).
        """
        try:
            resp = self.http.request(method, url, timeout=self.timeout, **kw)
        except requests.Timeout as e:
            raise GatewayUnavailable(f"midtrans {op} timed out", timed_out=True,
                                     provider=self.name) from e
        except requests.RequestException as e:
            raise GatewayUnavailable(f"midtrans {op} failed: {e}",
                                     provider=self.name) from e
        if resp.status_code == 404:
            raise NotFound(f"midtrans {op}: transaction not found")
        if not resp.ok:
            raise GatewayUnavailable(
                f"midtrans {op} returned HTTP {resp.status_code}", provider=self.name)
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayUnavailable(f"midtrans {op} returned non-JSON body",
                                     provider=self.name) from e
        code = str(data.get("status_code") or "")
        if not code or code.startswith("2"):
            return data
        if code == "404":
            raise NotFound(f"midtrans {op}: transaction not found")
        if reports_state and data.get("transaction_status"):
            return data
        raise GatewayUnavailable(
            f"midtrans {op} refused ({code}): {data.get('status_message') or 'no message'}",
            provider=self.name, status_code=code)

    def create(self, *, order_id: str, amount, customer: Customer,
               description: str) -> GatewayCheckout:
        body = {
            "transaction_details": {"order_id": order_id, "gross_amount": int(_gross(amount))},
            "customer_details": {
                "first_name": customer.name,
                "email": customer.email,
                "phone": customer.phone,
            },
            "item_details": [{
                "id": order_id, "price": int(_gross(amount)), "quantity": 1,
                "name": description[:50],
            }],
            "credit_card": {"secure": True},
        }
        data = self._call("POST", SNAP_URLS[self.is_production], "create", json=body)
        log.info("midtrans snap created order=%s", order_id)
        return GatewayCheckout(external_id=order_id, token=data.get("token"),
                               redirect_url=data.get("redirect_url"))

    def retrieve(self, external_id: str) -> str:
        data = self._call(
            "GET", f"{CORE_URLS[self.is_production]}/{external_id}/status", "status",
            reports_state=True)
        return str(data.get("transaction_status") or "")

    def cancel(self, external_id: str) -> None:
        self._call(
            "POST", f"{CORE_URLS[self.is_production]}/{external_id}/cancel", "cancel")

    # --- inbound ---

    def signature_for(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode("utf-8")).hexdigest()

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        try:
            payload = json.loads(body or b"{}")
        except ValueError as e:
            raise ValidationFailed("malformed JSON body") from e
        if not isinstance(payload, dict):
            raise ValidationFailed("malformed JSON body")

        order_id = str(payload.get("order_id") or "")
        sig = str(payload.get("signature_key") or "")
        expected = self.signature_for(order_id, str(payload.get("status_code") or ""),
                                      str(payload.get("gross_amount") or ""))
        if not sig or not hmac.compare_digest(expected, sig):
            raise AuthenticationFailed("invalid midtrans signature",
                                       provider=self.name, order_id=order_id)
        if not order_id:
            raise ValidationFailed("Missing order_id")

        status = str(payload.get("transaction_status") or "")
        tx_id = payload.get("transaction_id")
        return GatewayEvent(
            provider=self.name,
            # one transaction produces several notifications, one per status
            external_event_id=f"{tx_id}:{status}" if tx_id else None,
            signal=status,
            external_id=order_id,
            order_id=order_id,
            event_time=parse_iso_to_utc(payload.get("settlement_time")
                                        or payload.get("transaction_time"), assume_tz=APP_TZ),
            raw=payload,
        )
