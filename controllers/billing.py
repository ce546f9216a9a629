# controllers/billing.py
from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from controllers.auth import can_access
from controllers.payments import page_args
from models.billing_store import billing_owner, get_billing, list_billings
from models.tenants_store import get_tenant
from services.datetimex import parse_due_date
from services.payments.errors import NotFound, PermissionDenied, ValidationFailed
from services.payments.orchestrator import get_orchestrator
from services.payments.status import BillingStatus, parse_enum

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


def _load_owned(bid: str) -> dict:
    b = get_billing(bid)
    if not b:
        raise NotFound("Billing not found", billing_id=bid)
    if not can_access(billing_owner(bid)):
        raise PermissionDenied("You do not have access to this billing")
    return b


@billing_bp.post("/billings")
@login_required
def create_billing():
    data = request.get_json(force=True, silent=True) or {}
    tenant = get_tenant(str(data.get("tenant_id") or ""))
    if not tenant:
        raise NotFound("Tenant not found")
    if not can_access(tenant["owner"]):
        raise PermissionDenied("You do not have access to this tenant")
    if data.get("amount") in (None, ""):
        raise ValidationFailed("amount is required")
    due = parse_due_date(data.get("due_date"))
    if due is None:
        raise ValidationFailed("due_date must be YYYY-MM-DD or an ISO timestamp")

    b = get_orchestrator().create_billing(
        tenant_id=tenant["id"], title=data.get("title") or "",
        amount=data["amount"], type_=data.get("type") or "rent",
        due_date=due, description=data.get("description"),
        actor=current_user.username,
    )
    return jsonify(b), 201


@billing_bp.get("/billings/<bid>")
@login_required
def get_one(bid: str):
    return jsonify(_load_owned(bid))


@billing_bp.post("/billings/<bid>/send")
@login_required
def send(bid: str):
    _load_owned(bid)
    data = request.get_json(force=True, silent=True) or {}
    b = get_orchestrator().send_billing(
        bid, data.get("method") or "manual",
        actor=current_user.username, is_admin=current_user.is_admin)
    return jsonify(b)


@billing_bp.get("/billings")
@login_required
def list_all():
    page, limit = page_args()
    status = request.args.get("status")
    rows, total = list_billings(
        owner=None if current_user.is_admin else current_user.username,
        property_id=request.args.get("property_id"),
        tenant_id=request.args.get("tenant_id"),
        status=parse_enum(BillingStatus, status, "status").value if status else None,
        search=request.args.get("search"),
        page=page, limit=limit,
    )
    return jsonify({
        "billings": rows,
        "pagination": {"total": total, "page": page, "limit": limit,
                       "pages": (total + limit - 1) // limit},
    })


@billing_bp.post("/billings/<bid>/mark-paid")
@login_required
def mark_paid(bid: str):
    _load_owned(bid)
    data = request.get_json(force=True, silent=True) or {}
    b = get_orchestrator().mark_billing_paid(
        bid, actor=current_user.username, is_admin=current_user.is_admin,
        proof_of_payment=data.get("proof_of_payment"))
    return jsonify(b)
