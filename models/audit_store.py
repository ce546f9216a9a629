# models/audit_store.py
import os
import json
import hmac
import hashlib
import logging
from typing import Any, Optional
from flask import request, has_request_context, g
from flask_login import current_user
from sqlalchemy import select, asc
from models.base import session_scope
from models.schema import AuditLog
from services.datetimex import now_utc, to_iso_z

log = logging.getLogger(__name__)

APP_SECRET = (os.getenv("AUDIT_HMAC_SECRET") or "secret-key").encode("utf-8")
SIGNING_KEY_ID = os.getenv("AUDIT_HMAC_KEY_ID", "k1")

_ALLOWED_EXTRA_KEYS = {"reason", "note", "provider", "signal", "order_id",
                       "old", "new", "amount", "method", "count"}


def _compute_hash(prev_hash: str, payload: dict) -> str:
    s = prev_hash + json.dumps(payload, separators=(",", ":"),
                               sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _sign(h: str) -> str:
    return hmac.new(APP_SECRET, h.encode("utf-8"), hashlib.sha256).hexdigest()


def _clean_extra(extra: Optional[dict[str, Any]]) -> dict:
    if not extra:
        return {}
    out = {}
    for k, v in extra.items():
        if k not in _ALLOWED_EXTRA_KEYS:
            continue
        if isinstance(v, str) and len(v) > 512:
            v = v[:512] + "…"
        out[k] = v
    return out


def _payload(ts: str, r) -> dict:
    return {
        "ts": ts, "actor": r["actor"], "request_id": r["request_id"],
        "ip": r["ip"], "method": r["method"], "path": r["path"],
        "action": r["action"], "target_type": r["target_type"],
        "target_id": r["target_id"], "outcome": r["outcome"],
        "status": r["status"], "extra": r["extra"] or {},
        "key_id": r["key_id"],
    }


def _request_actor() -> Optional[str]:
    try:
        if current_user and current_user.is_authenticated:
            return current_user.username
    except Exception:
        # no login manager bound (CLI / scripts)
        return None
    return None


def audit(
    action: str,
    *,
    target_type: str | None = None,
    target_id: str | None = None,
    outcome: str | None = None,            # 'success'|'failure'|'noop'
    status: int | None = None,
    extra: Optional[dict[str, Any]] = None,
    actor: Optional[str] = None
) -> None:
    now = now_utc().replace(microsecond=0)
    ts = to_iso_z(now)

    ip = method = path = req_id = None
    if has_request_context():
        fwd = request.headers.get("X-Forwarded-For", "")
        ip = fwd.split(",")[0].strip() or request.remote_addr
        method = request.method
        path = request.path
        req_id = getattr(g, "request_id", None) or request.headers.get(
            "X-Request-ID")
    actor = actor or _request_actor() or "anonymous"

    row = {
        "actor": actor, "request_id": req_id, "ip": ip, "method": method,
        "path": path, "action": action, "target_type": target_type,
        "target_id": target_id, "outcome": outcome, "status": status,
        "extra": _clean_extra(extra), "key_id": SIGNING_KEY_ID,
    }

    with session_scope() as s:
        last = s.execute(select(AuditLog.hash).order_by(
            AuditLog.id.desc()).limit(1)).scalar()
        prev = last or ""
        h = _compute_hash(prev, _payload(ts, row))
        s.add(AuditLog(ts=now, prev_hash=prev, hash=h, signature=_sign(h), **row))


def verify_chain(limit: Optional[int] = None) -> dict:
    """Walk the log oldest-first and report the first row whose hash or signature breaks."""
    prev = ""
    checked = 0
    last_ok = None
    with session_scope() as s:
        q = select(AuditLog).order_by(asc(AuditLog.id))
        if limit:
            q = q.limit(int(limit))
        for r in s.execute(q).scalars():
            row = {c: getattr(r, c) for c in (
                "actor", "request_id", "ip", "method", "path", "action",
                "target_type", "target_id", "outcome", "status", "extra", "key_id")}
            exp_hash = _compute_hash(prev, _payload(to_iso_z(r.ts), row))
            reason = None
            if r.prev_hash != prev:
                reason = "prev_hash_mismatch"
            elif r.hash != exp_hash:
                reason = "hash_mismatch"
            elif not hmac.compare_digest(r.signature, _sign(exp_hash)):
                reason = "signature_mismatch"
            if reason:
                log.warning("audit chain broken at id=%s: %s", r.id, reason)
                return {"ok": False, "checked": checked, "last_ok_id": last_ok,
                        "first_bad_id": r.id, "reason": reason}
            checked += 1
            last_ok = r.id
            prev = r.hash
    return {"ok": True, "checked": checked, "last_ok_id": last_ok,
            "first_bad_id": None, "reason": None}


def list_audit(target_type: str | None = None, target_id: str | None = None,
               limit: int = 500) -> list[dict]:
    with session_scope() as s:
        q = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        if target_type:
            q = q.where(AuditLog.target_type == target_type)
        if target_id:
            q = q.where(AuditLog.target_id == target_id)
        return [
            {
                "id": r.id, "ts": to_iso_z(r.ts), "actor": r.actor,
                "action": r.action, "target_type": r.target_type,
                "target_id": r.target_id, "outcome": r.outcome,
                "status": r.status, "extra": r.extra or {},
            }
            for r in s.execute(q).scalars()
        ]
