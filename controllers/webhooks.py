# controllers/webhooks.py
from flask import Blueprint, request, jsonify

from services.payments.orchestrator import get_orchestrator
from services.payments.reconciler import handle_webhook

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


# ----- gateway callbacks (no auth, signature-verified) -----

@webhooks_bp.post("/<provider>")
def receive(provider: str):
    """
    The raw body is handed to the adapter untouched: Stripe signs the exact
    bytes, Midtrans signs fields inside the JSON.
    """
    body = request.get_data(cache=False)
    result = handle_webhook(get_orchestrator(), provider, body, request.headers)
    return jsonify(result), 200
