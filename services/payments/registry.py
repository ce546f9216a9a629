# services/payments/registry.py
"""
Builds every gateway adapter once at app start and keeps them on the Flask
app (app.extensions["payment_gateways"]). Code paths ask the registry for
an adapter instead of importing module-level clients, so tests can install
fakes with `install_gateways(app, {...})`.
"""
import logging
from flask import Flask

from services.payments.base import PaymentGateway
from services.payments.manual_gateway import ManualGateway
from services.payments.midtrans_gateway import MidtransGateway
from services.payments.status import PaymentMethod
from services.payments.stripe_gateway import StripeGateway

log = logging.getLogger(__name__)

EXT_KEY = "payment_gateways"


def _truthy(v) -> bool:
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


def build_gateways(config) -> dict[PaymentMethod, PaymentGateway]:
    """Instantiate the adapters whose credentials are configured."""
    timeout = float(config.get("GATEWAY_TIMEOUT_SEC") or 5)
    gateways: dict[PaymentMethod, PaymentGateway] = {
        PaymentMethod.MANUAL: ManualGateway()}

    server_key = config.get("MIDTRANS_SERVER_KEY")
    if server_key:
        gateways[PaymentMethod.MIDTRANS] = MidtransGateway(
            server_key,
            is_production=_truthy(config.get("MIDTRANS_IS_PRODUCTION")),
            timeout=timeout,
        )
    else:
        log.warning("MIDTRANS_SERVER_KEY not set; midtrans payments disabled")

    api_key = config.get("STRIPE_API_KEY")
    if api_key:
        gateways[PaymentMethod.STRIPE] = StripeGateway(
            api_key,
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            currency=config.get("PAYMENT_CURRENCY") or "IDR",
            timeout=timeout,
        )
    else:
        log.warning("STRIPE_API_KEY not set; stripe payments disabled")
    return gateways


def install_gateways(app: Flask, gateways: dict | None = None) -> None:
    app.extensions[EXT_KEY] = dict(
        gateways) if gateways is not None else build_gateways(app.config)
