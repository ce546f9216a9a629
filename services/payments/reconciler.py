# services/payments/reconciler.py
"""
Inbound webhook handling.

  1. verify the delivery with the gateway adapter (unverified -> 401, nothing changes)
  2. record the event; an already-processed duplicate is acknowledged as-is
  3. find the payment by correlation id (unknown -> 404, nothing changes)
  4. map the signal and apply it through the orchestrator
  5. mark the event processed

Out-of-order and repeated deliveries are safe because the status write is
a conditional UPDATE over the transition table.
"""
from __future__ import annotations
import json
import logging
from typing import Mapping

from models import payments_store as ps
from models.audit_store import audit
from services.metrics import WEBHOOK_EVENTS
from services.payments.errors import AuthenticationFailed, NotFound, ValidationFailed
from services.payments.orchestrator import PaymentOrchestrator
from services.payments.status import PaymentMethod, map_signal, parse_enum

log = logging.getLogger(__name__)


def _raw_for_rejected(body: bytes) -> dict:
    try:
        data = json.loads(body or b"{}")
    except ValueError:
        return {"unparsed": (body or b"")[:512].decode("utf-8", "replace")}
    return data if isinstance(data, dict) else {"payload": data}


def handle_webhook(orchestrator: PaymentOrchestrator, provider: str, body: bytes,
                   headers: Mapping[str, str]) -> dict:
    method = parse_enum(PaymentMethod, provider, "provider")
    if not method.is_gateway:
        raise ValidationFailed("manual payments do not receive webhooks")
    gw = orchestrator.gateway(method)

    try:
        evt = gw.parse_webhook(body, headers)
    except AuthenticationFailed:
        WEBHOOK_EVENTS.labels(provider=method.value, outcome="bad_signature").inc()
        ps.record_webhook_event(method.value, None, "", _raw_for_rejected(body), False)
        audit("webhook.reject", target_type="payment_event", outcome="failure",
              status=401, actor=f"webhook:{method.value}",
              extra={"provider": method.value, "reason": "bad_signature"})
        log.warning("webhook %s: signature verification failed", method.value)
        raise

    event_row_id, already = ps.record_webhook_event(
        method.value, evt.external_event_id, evt.signal, evt.raw, True)
    if already:
        WEBHOOK_EVENTS.labels(provider=method.value, outcome="duplicate").inc()
        log.info("webhook %s: duplicate event %s ignored", method.value, evt.external_event_id)
        current = (ps.get_payment_by_external_id(evt.external_id)
                   or ps.get_payment(evt.order_id))
        return {"received": True, "applied": False, "duplicate": True,
                "status": current["status"] if current else None}

    payment = ps.get_payment_by_external_id(evt.external_id)
    if payment is None and evt.order_id:
        payment = ps.get_payment(evt.order_id)
    if payment is None or payment["method"] != method.value:
        WEBHOOK_EVENTS.labels(provider=method.value, outcome="not_found").inc()
        log.warning("webhook %s: no payment for external id %s (order %s)",
                    method.value, evt.external_id, evt.order_id)
        raise NotFound("Payment not found", external_id=evt.external_id)

    applied, updated = orchestrator.apply_gateway_signal(
        payment, evt.signal, at=evt.event_time, source=f"webhook:{method.value}",
        actor=f"webhook:{method.value}")
    ps.mark_event_processed(event_row_id, payment["id"])

    WEBHOOK_EVENTS.labels(provider=method.value,
                          outcome="applied" if applied else "noop").inc()
    if not applied:
        log.info("webhook %s: payment %s stays %s (signal=%s -> %s)", method.value,
                 payment["id"], updated["status"], evt.signal,
                 map_signal(method, evt.signal).value)
    return {"received": True, "applied": applied, "status": updated["status"]}
