import os
import secrets
import time
from datetime import timedelta
from functools import wraps

from flask import Flask, session, request
from flask_caching import Cache
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()


def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "local")
        token = (session.get("rlid") or "")
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{token}|{path}"
    except Exception:
        return "local"


limiter = Limiter(key_func=_rate_key)
cache = Cache()


def create_app():
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(minutes=int(os.environ.get("SESSION_MINUTES", "30")))

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"

    # CSRF token TTL (seconds); 0 disables expiry
    app.config["CSRF_TOKEN_TTL"] = int(os.environ.get("CSRF_TOKEN_TTL", "7200"))
    app.config["DASHBOARD_CACHE_TIMEOUT"] = int(os.environ.get("DASHBOARD_CACHE_TIMEOUT", "60"))
    app.config["AUDIT_LOG_PAGE_SIZE"] = int(os.environ.get("AUDIT_LOG_PAGE_SIZE", "100"))

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        db_path = os.path.join(os.path.dirname(__file__), "..", "campus.db")
        database_url = f"sqlite:///{os.path.abspath(db_path)}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["JSON_SORT_KEYS"] = False

    log_level = (os.environ.get("LOG_LEVEL") or "").strip().upper()
    if log_level:
        app.logger.setLevel(log_level)

    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)

    # Auth: Flask-Login supplies the caller identity (role + root flag)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        from .models import User
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        from .api_utils import api_error
        return api_error("unauthenticated", "Authentication required", 401)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401

    # Blueprints
    from .main.routes import main_bp
    app.register_blueprint(main_bp)

    from .finance import finance_bp
    app.register_blueprint(finance_bp, url_prefix="/admin/finance")

    from .library import library_bp
    app.register_blueprint(library_bp, url_prefix="/admin/library")

    from .portal import portal_bp
    app.register_blueprint(portal_bp)

    from .errors import CampusError
    from .api_utils import api_error, campus_error_response

    @app.errorhandler(CampusError)
    def handle_campus_error(e):
        db.session.rollback()
        return campus_error_response(e)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return api_error(str(e.code), e.description or "", e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error("internal_error", str(e) or "Internal server error", 500)

    # Create tables on first run (dev convenience; use Flask-Migrate in production)
    with app.app_context():
        db.create_all()

    return app


def issue_csrf_token():
    """Issue a fresh session CSRF token and return it."""
    tok = secrets.token_urlsafe(16)
    session["csrf_token"] = tok
    session["csrf_token_issued_at"] = int(time.time())
    return tok


def csrf_required(view_func):
    @wraps(view_func)
    def _wrapped(*args, **kwargs):
        from flask import current_app
        from .api_utils import api_error
        method = (request.method or "GET").upper()
        if method in ("POST", "PUT", "PATCH", "DELETE"):
            token = (request.headers.get("X-CSRF-Token") or "").strip()
            sess_token = (session.get("csrf_token") or "")
            issued_at = session.get("csrf_token_issued_at")
            ttl = current_app.config.get("CSRF_TOKEN_TTL", 7200)
            now = int(time.time())
            # Expired token
            if not issued_at or (ttl > 0 and (now - int(issued_at)) > ttl):
                return api_error("csrf_expired", "Session token expired. Login again", 400)
            # Missing token or mismatch
            if not token or not secrets.compare_digest(token, sess_token):
                return api_error("csrf_invalid", "Missing or invalid X-CSRF-Token header", 400)
        return view_func(*args, **kwargs)
    return _wrapped
