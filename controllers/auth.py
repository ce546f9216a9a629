import hmac
from functools import wraps
from flask import current_app, jsonify, request
from flask_login import LoginManager, UserMixin, current_user
from models.audit_store import audit
from services.metrics import FORBIDDEN_REQUESTS

login_manager = LoginManager()


class User(UserMixin):
    def __init__(self, username, role):
        self.id = username
        self.username = username
        self.role = role

    @property
    def is_admin(self):
        return self.role == "admin"


def parse_api_tokens(env_val: str) -> dict[str, tuple[str, str]]:
    """
    Parse API_TOKENS like:
      "owner1:tok-abc,staff2:tok-def:user,root:tok-xyz:admin"
    Returns {token: (username, role)}; role defaults to "user" if omitted.
    Invalid entries are ignored.
    """
    out: dict[str, tuple[str, str]] = {}
    if not env_val:
        return out
    for item in env_val.split(","):
        item = item.strip()
        if not item:
            continue
        parts = [p.strip() for p in item.split(":")]
        if len(parts) == 3:
            u, tok, role = parts
        elif len(parts) == 2:
            u, tok = parts
            role = "user"
        else:
            continue
        if u and tok:
            out[tok] = (u, role or "user")
    return out


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    presented = header[7:].strip().encode("utf-8")
    if not presented:
        return None
    tokens = parse_api_tokens(current_app.config.get("API_TOKENS") or "")
    for tok, (username, role) in tokens.items():
        if hmac.compare_digest(tok.encode("utf-8"), presented):
            return User(username, role)
    return None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "authentication required"}), 401


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if not getattr(current_user, "is_admin", False):
            FORBIDDEN_REQUESTS.inc()
            audit(
                "auth.forbidden",
                target_type="user", target_id=(getattr(current_user, "username", "") or "anonymous"),
                outcome="failure", status=403,
                extra={"reason": "not_admin"}
            )
            return jsonify({"error": "admin only"}), 403
        return f(*args, **kwargs)
    return wrapper


def can_access(owner: str | None) -> bool:
    """Admins see everything; everyone else only what they own."""
    return bool(current_user.is_admin or (owner and owner == current_user.username))
