# services/payments/stripe_gateway.py
"""
Stripe adapter (intent-based): a PaymentIntent is created server-side and
its client secret is handed to the payer's browser. The intent id is the
correlation id; our payment id travels in metadata.order_id.
"""

from __future__ import annotations
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping

import stripe

from services.datetimex import from_epoch
from services.payments.base import Customer, GatewayCheckout, GatewayEvent
from services.payments.errors import (
    AuthenticationFailed, GatewayUnavailable, NotFound, ValidationFailed,
)

log = logging.getLogger(__name__)

# used when the event object carries no intent status (checkout sessions)
_EVENT_SIGNALS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.processing": "processing",
    "payment_intent.requires_action": "requires_action",
    "payment_intent.payment_failed": "payment_failed",
    "payment_intent.canceled": "canceled",
    "checkout.session.completed": "checkout.session.completed",
}


def _minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _signal_for(etype: str, obj: dict) -> str:
    """
    payment_intent.* events report the intent's own status, the same word
    `retrieve` returns, so a declined card (requires_payment_method) stays
    retryable. Unhandled event types map to the default (pending).
    """
    if etype.startswith("payment_intent.") and obj.get("status"):
        return str(obj["status"])
    return _EVENT_SIGNALS.get(etype, etype)


class StripeGateway:
    name = "stripe"

    def __init__(self, api_key: str, *, webhook_secret: str | None = None,
                 currency: str = "idr", timeout: float = 5.0,
                 client: stripe.StripeClient | None = None) -> None:
        if not api_key and client is None:
            raise RuntimeError("STRIPE_API_KEY not set")
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()
        self.client = client or stripe.StripeClient(
            api_key, http_client=stripe.RequestsClient(timeout=timeout))

    def _wrap(self, op: str, fn):
        try:
            return fn()
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                raise NotFound(f"stripe {op}: {e.user_message or e}") from e
            raise GatewayUnavailable(f"stripe {op} rejected: {e.user_message or e}",
                                     provider=self.name) from e
        except stripe.APIConnectionError as e:
            raise GatewayUnavailable(f"stripe {op} connection error", timed_out=True,
                                     provider=self.name) from e
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"stripe {op} failed: {e.user_message or e}",
                                     provider=self.name) from e

    def create(self, *, order_id: str, amount, customer: Customer,
               description: str) -> GatewayCheckout:
        params = {
            "amount": _minor_units(amount),
            "currency": self.currency,
            "description": description,
            "payment_method_types": ["card"],
            "metadata": {"order_id": order_id, "customer_name": customer.name},
        }
        if customer.email:
            params["receipt_email"] = customer.email
        intent = self._wrap("create", lambda: self.client.payment_intents.create(
            params=params, options={"idempotency_key": f"create-{order_id}"}))
        log.info("stripe intent %s created order=%s", intent.id, order_id)
        return GatewayCheckout(external_id=intent.id, token=intent.client_secret,
                               redirect_url=None)

    def retrieve(self, external_id: str) -> str:
        intent = self._wrap(
            "retrieve", lambda: self.client.payment_intents.retrieve(external_id))
        return str(intent.status or "")

    def cancel(self, external_id: str) -> None:
        self._wrap("cancel", lambda: self.client.payment_intents.cancel(external_id))

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        sig = headers.get("Stripe-Signature") or ""
        if not self.webhook_secret:
            raise AuthenticationFailed("STRIPE_WEBHOOK_SECRET not configured")
        if not sig:
            raise AuthenticationFailed("Missing stripe-signature")
        payload_text = (body or b"").decode("utf-8", errors="replace")
        try:
            stripe.WebhookSignature.verify_header(
                payload_text, sig, self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE)
        except stripe.SignatureVerificationError as e:
            raise AuthenticationFailed("Invalid signature", provider=self.name) from e

        try:
            event = json.loads(payload_text)
            obj = event["data"]["object"]
            etype = str(event["type"])
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationFailed("malformed stripe event") from e

        metadata = obj.get("metadata") or {}
        order_id = metadata.get("order_id") or metadata.get("orderId")
        if etype == "checkout.session.completed":
            external_id = obj.get("payment_intent") or ""
        else:
            external_id = obj.get("id") or ""
        if not external_id and not order_id:
            raise ValidationFailed("Missing orderId")

        return GatewayEvent(
            provider=self.name,
            external_event_id=event.get("id"),
            signal=_signal_for(etype, obj),
            external_id=external_id,
            order_id=order_id,
            event_time=from_epoch(event.get("created")),
            raw=event,
        )
