# scanverify/utils/common.py
# Request-cycle helpers shared by every blueprint: session auth, navigation
# tracking, API client construction, formatting filters.

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from functools import wraps

from flask import current_app, flash, jsonify, redirect, request, session, url_for
from markupsafe import Markup, escape

from scanverify.services.api_client import ApiClient, ApiError, ApiUnauthorized

logger = logging.getLogger(__name__)

# endpoints reachable without a session
_PUBLIC_ENDPOINTS = {
    "auth.login",
    "auth.logout",
    "__ping__",
    "health",
}


# ─────────────────────────────────────────────────────────────────────────────
# Session state (token/user are the station's equivalent of local storage)
# ─────────────────────────────────────────────────────────────────────────────
def current_user() -> dict | None:
    return session.get("user")


def current_token() -> str | None:
    return session.get("token")


def is_admin() -> bool:
    u = current_user() or {}
    return u.get("role") == "admin"


def store_auth(token: str, user: dict) -> None:
    session["token"] = token
    session["user"] = user


def clear_auth() -> None:
    for key in ("token", "user", "current_page"):
        session.pop(key, None)


def get_scanner():
    return current_app.extensions["scanner"]


def get_api() -> ApiClient:
    """Client bound to this request's token and the app-wide HTTP session."""
    cfg = current_app.config
    return ApiClient(
        cfg["API_BASE"],
        token=current_token(),
        session=current_app.extensions["api_session"],
        timeout=cfg.get("API_TIMEOUT", 10),
    )


def best_effort(fn, default, what: str):
    """
    Run a read-only API call for a page section.  Failures are logged and the
    section renders `default`; a 401 still propagates and forces logout.
    """
    try:
        return fn()
    except ApiUnauthorized:
        raise
    except ApiError as e:
        current_app.logger.error("Error loading %s: %s", what, e.message)
    except (KeyError, TypeError, ValueError) as e:
        current_app.logger.error("Malformed %s payload: %s", what, e)
    return default


def perform_logout() -> None:
    """Drop credentials, stop the camera and forget the pending barcode."""
    clear_auth()
    scanner = get_scanner()
    scanner.cancel_restart()
    scanner.stop()
    scanner.clear_result()


def wants_json() -> bool:
    if request.headers.get("X-Requested-With") == "XMLHttpRequest":
        return True
    return request.accept_mimetypes.best == "application/json"


# ─────────────────────────────────────────────────────────────────────────────
# Gates
# ─────────────────────────────────────────────────────────────────────────────
def require_login():
    """
    Gate everything behind a stored token + user except static files, the
    login/logout endpoints and the health probes.
    """
    ep = request.endpoint or ""
    if ep.startswith("static") or ep in _PUBLIC_ENDPOINTS:
        return None

    if current_token() and current_user():
        return None

    clear_auth()
    if wants_json():
        resp = jsonify(error="Unauthorized")
        resp.status_code = 401
        return resp
    nxt = request.full_path if request.query_string else request.path
    return redirect(url_for("auth.login", next=nxt))


def admin_required(view):
    @wraps(view)
    def _wrapped(*args, **kwargs):
        if not is_admin():
            flash("Administrator access required.", "error")
            return redirect(url_for("scanner.scanner"))
        return view(*args, **kwargs)
    return _wrapped


def navigate_to(page: str) -> None:
    """
    Record the page being shown.  Leaving the scanner page stops the camera
    before the next page loads.
    """
    prev = session.get("current_page")
    if prev == "scanner" and page != "scanner":
        logger.debug("Leaving scanner for %s; stopping camera", page)
        scanner = get_scanner()
        scanner.cancel_restart()
        scanner.stop()
    session["current_page"] = page


def handle_csrf_error(e):
    """
    CSRF failures: AJAX gets 401+JSON so the page script can reload; form
    posts get a toast and a redirect back to the same path.
    """
    if request.headers.get("X-Requested-With") == "XMLHttpRequest":
        resp = jsonify({
            "csrf_expired": True,
            "message": e.description or "Session expired; please reload.",
        })
        resp.status_code = 401
        return resp

    flash("Your session has expired. Please reload this page.", "error")
    return redirect(request.path)


# ─────────────────────────────────────────────────────────────────────────────
# Formatting (also registered as Jinja filters)
# ─────────────────────────────────────────────────────────────────────────────
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value) -> datetime | None:
    """ISO-8601 / RFC 3339 (nanosecond fractions allowed) → aware datetime."""
    if isinstance(value, datetime):
        return value
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    s = _FRACTION_RE.sub(r"\1", s)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value) -> str:
    """DD/MM/YYYY HH:MM in station local time; '-' for empty values."""
    if value in (None, ""):
        return "-"
    dt = parse_timestamp(value)
    if dt is None:
        return str(value)
    return dt.astimezone().strftime("%d/%m/%Y %H:%M")


def dash(value) -> str:
    if value is None:
        return "-"
    s = str(value).strip()
    return s if s else "-"


def role_label(role) -> str:
    return "Administrator" if role == "admin" else "User"


def avatar_initial(name) -> str:
    s = str(name or "").strip()
    return s[:1].upper() if s else "?"


def match_badge(is_match) -> Markup:
    if is_match:
        return Markup('<span class="badge badge-success">Match</span>')
    return Markup('<span class="badge badge-danger">Not Match</span>')


def role_badge(role) -> Markup:
    cls = "badge-primary" if role == "admin" else "badge-success"
    label = "Admin" if role == "admin" else "User"
    return Markup('<span class="badge {}">{}</span>').format(cls, escape(label))


def counts(block) -> dict:
    """Normalise a {total, match, not_match} block; missing values are 0."""
    block = block if isinstance(block, dict) else {}
    return {
        "total": block.get("total") or 0,
        "match": block.get("match") or 0,
        "not_match": block.get("not_match") or 0,
    }
