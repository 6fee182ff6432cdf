# scanverify/app.py: Scan Verify Station
# =======================================
#  • Login against the scan-data REST API; token + user live in the session
#  • Camera barcode scanner with match / not-match judgment
#  • Admin: history, users, weekly/monthly reports, Excel export
#  • LAN-only Flask server on :5160

import os, sys, logging, traceback, importlib, atexit
from datetime import datetime

import requests
from flask import Flask, jsonify, redirect, url_for
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import STATE_RUNNING

# ──────────────────────────────────────────────────────────────────────────────
# Logging
logger = logging.getLogger(__name__)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s:%(name)s: %(message)s",
        stream=sys.stdout,
    )

# ──────────────────────────────────────────────────────────────────────────────
# Configuration (env → app.config; tests override app.config directly)
DEFAULT_API_BASE = "http://localhost:8080/api"
DEFAULT_PORT = 5160


def _env_float(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s=%r", name, os.getenv(name))
        return float(default)


API_BASE      = (os.getenv("SCANVERIFY_API_BASE", "") or DEFAULT_API_BASE).rstrip("/")
API_TIMEOUT   = _env_float("SCANVERIFY_API_TIMEOUT", 10)
CAMERA_DEVICE = int(_env_float("SCANVERIFY_CAMERA_DEVICE", 0))
CAMERA_FPS    = int(_env_float("SCANVERIFY_CAMERA_FPS", 10))
RESCAN_DELAY  = _env_float("SCANVERIFY_RESCAN_DELAY", 1.5)

# Secrets (docker secret → env → dev fallback)
secret = None
secret_file = "/run/secrets/flask_secret"
if os.path.exists(secret_file):
    with open(secret_file) as f:
        secret = f.read().strip()
if not secret:
    secret = os.environ.get("FLASK_SECRET")
if not secret:
    secret = "dev-secret-please-change"
    logger.warning("FLASK_SECRET not set; using the development fallback key")

# ──────────────────────────────────────────────────────────────────────────────
# Flask app + CSRF + Rate limits
app = Flask(__name__)

app.config.update(
    DEBUG=False,
    SECRET_KEY=secret,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    API_BASE=API_BASE,
    API_TIMEOUT=API_TIMEOUT,
    CAMERA_DEVICE=CAMERA_DEVICE,
    CAMERA_FPS=CAMERA_FPS,
    RESCAN_DELAY=RESCAN_DELAY,
)

csrf = CSRFProtect(app)
limiter = Limiter(get_remote_address, app=app, default_limits=["1000 per hour"])

# Background scheduler (delayed scanner restart); started on first job
scheduler = BackgroundScheduler()
app.extensions["scheduler"] = scheduler

# One HTTP connection pool for every API call this process makes
app.extensions["api_session"] = requests.Session()

# One scanning session per station; the reader is created lazily on first start
from scanverify.services.camera import CameraReader, ScannerSession


def _make_reader():
    return CameraReader(
        device_id=app.config["CAMERA_DEVICE"],
        fps=app.config["CAMERA_FPS"],
    )


app.extensions["scanner"] = ScannerSession(_make_reader)

# ──────────────────────────────────────────────────────────────────────────────
# Shared helpers → Jinja
from scanverify.utils.common import (
    require_login,
    handle_csrf_error,
    current_user,
    is_admin,
    format_datetime,
    dash,
    role_label,
    avatar_initial,
    match_badge,
    role_badge,
)

app.jinja_env.filters["datetime"] = format_datetime
app.jinja_env.filters["dash"] = dash
app.jinja_env.filters["role_label"] = role_label
app.jinja_env.filters["initial"] = avatar_initial
app.jinja_env.filters["match_badge"] = match_badge
app.jinja_env.filters["role_badge"] = role_badge

app.register_error_handler(CSRFError, handle_csrf_error)


@app.context_processor
def _inject_user_nav():
    """Header user block + admin menu flag for every render."""
    return {
        "current_user": current_user(),
        "is_admin": is_admin(),
        "current_year": datetime.now().year,
    }


@app.before_request
def _global_before_request():
    # auth gate (may return a redirect)
    rv = require_login()
    if rv:
        return rv

# ──────────────────────────────────────────────────────────────────────────────
# Safe imports + blueprint registration with clear diagnostics

def _safe_import(modpath: str):
    try:
        m = importlib.import_module(modpath)
        logger.info("Imported %s", modpath)
        return m
    except Exception:
        logger.error("FAILED importing %s\n%s", modpath, traceback.format_exc().rstrip())
        return None

def _get_bp(modpath: str, attr: str = "bp"):
    m = _safe_import(modpath)
    return getattr(m, attr, None) if m else None

def _reg(bp, *, name: str):
    if not bp:
        logger.warning("Skipping blueprint '%s' (missing or failed import)", name)
        return
    app.register_blueprint(bp, name=name)
    logger.info("Registered blueprint name=%s url_prefix=%s", name, getattr(bp, "url_prefix", None))

errors_bp  = _get_bp("scanverify.routes.errors")
auth_bp    = _get_bp("scanverify.routes.auth")
scanner_bp = _get_bp("scanverify.routes.scanner")
history_bp = _get_bp("scanverify.routes.history")
users_bp   = _get_bp("scanverify.routes.users")
reports_bp = _get_bp("scanverify.routes.reports")

_reg(errors_bp,  name="errors")
_reg(auth_bp,    name="auth")
_reg(scanner_bp, name="scanner")
_reg(history_bp, name="history")
_reg(users_bp,   name="users")
_reg(reports_bp, name="reports")

# Login is the only unauthenticated form; keep brute force slow
if auth_bp is not None:
    limiter.limit("20 per minute", methods=["POST"])(app.view_functions["auth.login"])


def _shutdown():
    scanner = app.extensions.get("scanner")
    if scanner is not None:
        scanner.stop()
    if scheduler.state == STATE_RUNNING:
        scheduler.shutdown(wait=False)

atexit.register(_shutdown)

# ──────────────────────────────────────────────────────────────────────────────
# Diagnostics + landing

for r in app.url_map.iter_rules():
    logger.debug("ROUTE %-35s -> %s", r.rule, r.endpoint)

@app.get("/__ping__")
def __ping__():
    return jsonify(ok=True, now=datetime.utcnow().isoformat() + "Z")

@app.get("/health")
def health():
    return jsonify(status="ok", service="scanverify", api_base=app.config["API_BASE"])

@app.route("/")
def _root():
    # scanner is the main page after login
    return redirect(url_for("scanner.scanner"), code=302)


def main():
    port = int(_env_float("PORT", DEFAULT_PORT))
    app.run(host="0.0.0.0", port=port)


# ──────────────────────────────────────────────────────────────────────────────
# Dev server
if __name__ == "__main__":
    main()
