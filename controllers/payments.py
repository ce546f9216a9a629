# controllers/payments.py
from __future__ import annotations
from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user

from controllers.auth import admin_required, can_access
from models.audit_store import list_audit
from models.payments_store import get_payment, list_payments, payment_owner
from services.datetimex import parse_due_date, parse_iso_to_utc
from services.payments.errors import NotFound, PermissionDenied, ValidationFailed
from services.payments.orchestrator import get_orchestrator
from services.payments.status import PaymentStatus, PaymentType, parse_enum
from services.stats import payment_stats

payments_bp = Blueprint("payments", __name__, url_prefix="/api")


def _body() -> dict:
    return request.get_json(force=True, silent=True) or {}


def _load_owned(pid: str) -> dict:
    p = get_payment(pid)
    if not p:
        raise NotFound("Payment not found", payment_id=pid)
    if not can_access(payment_owner(pid)):
        raise PermissionDenied("You do not have access to this payment")
    return p


def page_args() -> tuple[int, int]:
    page = request.args.get("page", default=1, type=int) or 1
    limit = request.args.get("limit", default=10, type=int) or 10
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationFailed("page must be >= 1 and limit between 1 and 100")
    return page, limit


@payments_bp.post("/payments")
@login_required
def create_payment():
    data = _body()
    for key in ("tenant_id", "property_id", "amount", "type", "method", "due_date"):
        if data.get(key) in (None, ""):
            raise ValidationFailed(f"{key} is required")
    due = parse_due_date(data.get("due_date"))
    if due is None:
        raise ValidationFailed("due_date must be YYYY-MM-DD or an ISO timestamp")

    p = get_orchestrator().create_payment(
        tenant_id=str(data["tenant_id"]),
        property_id=str(data["property_id"]),
        amount=data["amount"],
        type_=data["type"],
        method=data["method"],
        due_date=due,
        description=data.get("description"),
        notes=data.get("notes"),
        actor=current_user.username,
        is_admin=current_user.is_admin,
    )
    return jsonify(p), 201


@payments_bp.get("/payments")
@login_required
def list_all():
    page, limit = page_args()
    status = request.args.get("status")
    type_ = request.args.get("type")
    rows, total = list_payments(
        owner=None if current_user.is_admin else current_user.username,
        property_id=request.args.get("property_id"),
        tenant_id=request.args.get("tenant_id"),
        billing_id=request.args.get("billing_id"),
        status=parse_enum(PaymentStatus, status, "status").value if status else None,
        type_=parse_enum(PaymentType, type_, "type").value if type_ else None,
        page=page, limit=limit,
    )
    return jsonify({
        "payments": rows,
        "pagination": {"total": total, "page": page, "limit": limit,
                       "pages": (total + limit - 1) // limit},
    })


@payments_bp.get("/payments/stats")
@login_required
def stats():
    rng = (request.args.get("range") or "month").lower()
    owner = None if current_user.is_admin else current_user.username
    return jsonify(payment_stats(owner, rng))


@payments_bp.get("/payments/<pid>")
@login_required
def get_one(pid: str):
    return jsonify(_load_owned(pid))


@payments_bp.get("/payments/<pid>/audit")
@login_required
def audit_trail(pid: str):
    _load_owned(pid)
    return jsonify({"events": list_audit(target_type="payment", target_id=pid)})


@payments_bp.post("/payments/<pid>/check")
@login_required
def check(pid: str):
    _load_owned(pid)
    return jsonify(get_orchestrator().check_status(pid))


@payments_bp.post("/payments/<pid>/status")
@login_required
def set_status(pid: str):
    _load_owned(pid)
    data = _body()
    if not data.get("status"):
        raise ValidationFailed("status is required")
    p = get_orchestrator().set_manual_status(
        pid, data["status"], actor=current_user.username,
        proof_of_payment=data.get("proof_of_payment"))
    return jsonify(p)


@payments_bp.post("/payments/<pid>/cancel")
@login_required
def cancel(pid: str):
    _load_owned(pid)
    return jsonify(get_orchestrator().cancel_payment(pid, actor=current_user.username))


@payments_bp.post("/payments/<pid>/refund")
@login_required
def refund(pid: str):
    _load_owned(pid)
    return jsonify(get_orchestrator().refund_deposit(pid, actor=current_user.username))


@payments_bp.post("/payments/<pid>/remind")
@login_required
def remind(pid: str):
    _load_owned(pid)
    res = get_orchestrator().remind_payment(pid, actor=current_user.username)
    return jsonify({"sent": res.ok, "channel": res.channel, "error": res.error})


# ----- admin sweeps (cron-friendly) -----

@payments_bp.post("/admin/payments/mark-overdue")
@login_required
@admin_required
def mark_overdue():
    at = parse_iso_to_utc(_body().get("now"))
    moved = get_orchestrator().mark_overdue(at, actor=current_user.username)
    return jsonify({"ok": True, "updated": moved})


@payments_bp.post("/admin/payments/reconcile-orphans")
@login_required
@admin_required
def reconcile_orphans():
    at = parse_iso_to_utc(_body().get("now"))
    return jsonify(get_orchestrator().reconcile_orphans(at, actor=current_user.username))
