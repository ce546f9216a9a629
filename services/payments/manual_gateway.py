# services/payments/manual_gateway.py
"""
Manual bank transfer: nothing is created anywhere, staff mark the payment
paid once proof of payment arrives. Exists so every PaymentMethod has an
adapter behind the same interface.
"""

from __future__ import annotations
from typing import Mapping

from services.payments.base import Customer, GatewayCheckout, GatewayEvent
from services.payments.errors import NotFound, ValidationFailed


class ManualGateway:
    name = "manual"

    def create(self, *, order_id: str, amount, customer: Customer,
               description: str) -> GatewayCheckout:
        return GatewayCheckout(external_id=None)

    def retrieve(self, external_id: str) -> str:
        raise NotFound("manual payments have no gateway record")

    def cancel(self, external_id: str) -> None:
        return None

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        raise ValidationFailed("manual payments do not receive webhooks")
