from flask import Blueprint, current_app, request, session
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import select, text
from werkzeug.security import check_password_hash

from .. import db, csrf_required, issue_csrf_token, limiter
from ..api_utils import api_success, api_error
from ..models import User

main_bp = Blueprint("main", __name__)


def _user_to_dict(user):
    return {
        "user_id": user.user_id,
        "username": user.username,
        "full_name": user.full_name,
        "role": user.role_key,
        "is_root": bool(user.is_root),
        "program_id": user.program_id_fk,
    }


@main_bp.route("/health", methods=["GET"])
def health():
    db.session.execute(text("SELECT 1"))
    return api_success({"status": "ok"})


# Authentication routes
@main_bp.route("/auth/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    data = request.get_json(silent=True) or {}
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    if not username or not password:
        return api_error("validation_error", "Username and password are required.", 400)
    user = db.session.execute(select(User).filter_by(username=username)).scalars().first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        current_app.logger.info("Failed login for username=%s", username)
        return api_error("invalid_credentials", "Invalid credentials.", 401)
    if not user.is_active:
        return api_error("account_disabled", "Account is disabled.", 403)
    session.permanent = True
    login_user(user)
    token = issue_csrf_token()
    current_app.logger.info("User %s logged in (role=%s, root=%s)", user.user_id, user.role_key, bool(user.is_root))
    return api_success({"user": _user_to_dict(user), "csrf_token": token})


@main_bp.route("/auth/logout", methods=["POST"])
@login_required
@csrf_required
def logout():
    logout_user()
    session.pop("csrf_token", None)
    session.pop("csrf_token_issued_at", None)
    return api_success({"logged_out": True})


@main_bp.route("/auth/me", methods=["GET"])
@login_required
def me():
    token = session.get("csrf_token") or issue_csrf_token()
    return api_success({"user": _user_to_dict(current_user), "csrf_token": token})
