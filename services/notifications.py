# services/notifications.py
"""
Tenant notifications (payment reminder / confirmation / overdue notice).

Delivery is best-effort: Notifier.notify() returns a NotificationResult and
never raises, so a messaging outage cannot fail a payment write. Every
outcome is logged and counted.

Configuration:
  NOTIFY_CHANNEL             "log" (default) or "whatsapp"
  WHATSAPP_PHONE_NUMBER_ID   Cloud API sender id
  WHATSAPP_ACCESS_TOKEN      bearer token
  WHATSAPP_API_URL           default https://graph.facebook.com/v17.0
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

import requests
from flask import Flask, current_app

from services.datetimex import APP_TZ, parse_iso_to_utc
from services.metrics import NOTIFICATIONS

log = logging.getLogger(__name__)

EXT_KEY = "notifier"

REMINDER = "reminder"
CONFIRMATION = "confirmation"
OVERDUE = "overdue"
KINDS = (REMINDER, CONFIRMATION, OVERDUE)


@dataclass
class NotificationResult:
    kind: str
    ok: bool
    channel: str
    error: Optional[str] = None


def format_rupiah(amount) -> str:
    return "Rp " + f"{float(amount or 0):,.0f}".replace(",", ".")


def _local_date(iso: str | None) -> str:
    dt = parse_iso_to_utc(iso)
    return dt.astimezone(APP_TZ).strftime("%d %B %Y") if dt else "-"


def to_msisdn(phone: str | None) -> str | None:
    """08123... -> 628123... (Indonesian local numbers to international form)."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0"):
        digits = "62" + digits[1:]
    return digits or None


def render_text(kind: str, tenant: dict, payment: dict) -> str:
    amount = format_rupiah(payment.get("amount"))
    room = (tenant.get("room") or {}).get("number", "-")
    prop = tenant.get("property_name") or "-"
    if kind == REMINDER:
        lines = [
            f"Hi {tenant.get('name')}, a {payment.get('type')} payment of {amount} "
            f"for {prop} room {room} is due on {_local_date(payment.get('due_date'))}.",
        ]
        if payment.get("redirect_url"):
            lines.append(f"Pay online: {payment['redirect_url']}")
        else:
            lines.append(
                "Please upload your proof of payment after making the transfer.")
        return "\n".join(lines)
    if kind == CONFIRMATION:
        return (f"Hi {tenant.get('name')}, we received your payment of {amount} "
                f"on {_local_date(payment.get('paid_at'))}. Thank you!")
    return (f"Hi {tenant.get('name')}, your payment of {amount} due on "
            f"{_local_date(payment.get('due_date'))} is overdue.")


class Channel(Protocol):
    name: str

    def send(self, kind: str, tenant: dict, payment: dict) -> None:
        """Deliver or raise."""


class LogChannel:
    name = "log"

    def send(self, kind: str, tenant: dict, payment: dict) -> None:
        log.info("notify[%s] tenant=%s phone=%s payment=%s: %s", kind, tenant.get("id"),
                 tenant.get("phone"), payment.get("id"), render_text(kind, tenant, payment))


class WhatsAppChannel:
    name = "whatsapp"

    TEMPLATES = {
        CONFIRMATION: "payment_confirmation",
        OVERDUE: "payment_overdue",
    }

    def __init__(self, phone_number_id: str, access_token: str, *,
                 api_url: str = "https://graph.facebook.com/v17.0",
                 timeout: float = 5.0, session: requests.Session | None = None) -> None:
        if not phone_number_id or not access_token:
            raise RuntimeError(
                "WHATSAPP_PHONE_NUMBER_ID / WHATSAPP_ACCESS_TOKEN not set")
        self.url = f"{api_url.rstrip('/')}/{phone_number_id}/messages"
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Authorization": f"Bearer {access_token}"})

    def _message(self, kind: str, to: str, tenant: dict, payment: dict) -> dict:
        template = self.TEMPLATES.get(kind)
        if template is None:
            return {"messaging_product": "whatsapp", "to": to, "type": "text",
                    "text": {"body": render_text(kind, tenant, payment)}}
        when = payment.get("paid_at") if kind == CONFIRMATION else payment.get("due_date")
        params = [tenant.get("name") or "-", format_rupiah(payment.get("amount")),
                  _local_date(when)]
        return {
            "messaging_product": "whatsapp", "to": to, "type": "template",
            "template": {
                "name": template, "language": {"code": "id"},
                "components": [{"type": "body", "parameters": [
                    {"type": "text", "text": p} for p in params]}],
            },
        }

    def send(self, kind: str, tenant: dict, payment: dict) -> None:
        to = to_msisdn(tenant.get("phone"))
        if not to:
            raise ValueError("tenant has no phone number")
        resp = self.http.post(self.url, json=self._message(kind, to, tenant, payment),
                              timeout=self.timeout)
        resp.raise_for_status()


class Notifier:
    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    def notify(self, kind: str, tenant: dict | None, payment: dict) -> NotificationResult:
        if kind not in KINDS:
            raise ValueError(f"unknown notification kind: {kind}")
        if not tenant:
            NOTIFICATIONS.labels(kind=kind, outcome="skipped").inc()
            log.warning("notify[%s] skipped: no tenant for payment %s",
                        kind, payment.get("id"))
            return NotificationResult(kind, False, self.channel.name, "no tenant")
        try:
            self.channel.send(kind, tenant, payment)
        except Exception as e:
            NOTIFICATIONS.labels(kind=kind, outcome="error").inc()
            log.warning("notify[%s] via %s failed for payment %s: %s",
                        kind, self.channel.name, payment.get("id"), e)
            return NotificationResult(kind, False, self.channel.name, str(e))
        NOTIFICATIONS.labels(kind=kind, outcome="sent").inc()
        return NotificationResult(kind, True, self.channel.name)


def build_notifier(config) -> Notifier:
    channel = (config.get("NOTIFY_CHANNEL") or "log").lower()
    if channel == "whatsapp":
        return Notifier(WhatsAppChannel(
            config.get("WHATSAPP_PHONE_NUMBER_ID"),
            config.get("WHATSAPP_ACCESS_TOKEN"),
            api_url=config.get("WHATSAPP_API_URL") or "https://graph.facebook.com/v17.0",
            timeout=float(config.get("GATEWAY_TIMEOUT_SEC") or 5),
        ))
    if channel != "log":
        raise RuntimeError(f"Unknown NOTIFY_CHANNEL: {channel}")
    return Notifier(LogChannel())


def install_notifier(app: Flask, notifier: Notifier | None = None) -> None:
    app.extensions[EXT_KEY] = notifier or build_notifier(app.config)


def get_notifier(app: Flask | None = None) -> Notifier:
    return (app or current_app).extensions[EXT_KEY]
