# services/payments/base.py
"""
Abstract interface + simple event model for payment gateways.
Adapters must implement PaymentGateway.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Mapping, Protocol


@dataclass
class Customer:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class GatewayCheckout:
    external_id: Optional[str]        # gateway's id (order id / intent id)
    # snap token or client secret handed to the payer's browser
    token: Optional[str] = None
    # URL to redirect the payer, if the gateway hosts the checkout page
    redirect_url: Optional[str] = None


@dataclass
class GatewayEvent:
    provider: str                     # 'midtrans' | 'stripe'
    external_event_id: Optional[str]
    signal: str                       # raw gateway status word, e.g. 'settlement'
    external_id: str                  # correlation id (order id / intent id)
    order_id: Optional[str]           # our payment id, when the gateway echoes it
    event_time: Optional[datetime]
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: str

    def create(self, *, order_id: str, amount: Decimal, customer: Customer,
               description: str) -> GatewayCheckout:
        """
        Create the payment on the gateway.
        Not idempotent on the gateway side: the orchestrator calls it at most once per payment.
        Raise GatewayUnavailable on transport errors, timeouts and non-2xx replies.
        """

    def retrieve(self, external_id: str) -> str:
        """Return the gateway's raw status word for `external_id`, verbatim."""

    def cancel(self, external_id: str) -> None:
        """Cancel the payment on the gateway side."""

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """
        Verify signature and parse the gateway webhook into a GatewayEvent.
        Raise AuthenticationFailed if verification fails and ValidationFailed
        on malformed payloads.
        """
