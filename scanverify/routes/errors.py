from flask import Blueprint, current_app
from flask import flash, jsonify, redirect, render_template, request, url_for

from scanverify.services.api_client import ApiUnauthorized, ApiUnavailable
from scanverify.utils.common import perform_logout, wants_json
bp = Blueprint(__name__.rsplit('.', 1)[-1], __name__)


@bp.app_errorhandler(ApiUnauthorized)
def _forced_logout(e):
    """A 401 from the API anywhere in a request ends the session."""
    current_app.logger.info("API rejected token on %s; forcing logout", request.path)
    perform_logout()
    if wants_json():
        return jsonify(error="Unauthorized"), 401
    flash("Your session has expired. Please log in again.", "error")
    return redirect(url_for('auth.login'))


@bp.app_errorhandler(ApiUnavailable)
def _api_unavailable(e):
    current_app.logger.warning("API unavailable on %s", request.path)
    if wants_json():
        return jsonify(error=e.message), 502
    flash(e.message, "error")
    # fall back to the main page, unless that is what just failed
    if request.endpoint == 'scanner.scanner' or request.method != 'GET':
        return render_template('error.html', code=502, message=e.message), 502
    return redirect(url_for('scanner.scanner'))


@bp.app_errorhandler(404)
def _not_found(e):
    if wants_json():
        return jsonify(error="Not found"), 404
    return render_template('error.html', code=404, message="Page not found."), 404


@bp.app_errorhandler(429)
def _rate_limited(e):
    if wants_json():
        return jsonify(error="Too many requests"), 429
    return render_template('error.html', code=429,
                           message="Too many attempts. Wait a minute and try again."), 429


@bp.app_errorhandler(500)
def _server_error(e):
    current_app.logger.error("Unhandled error on %s: %s", request.path, e)
    if wants_json():
        return jsonify(error="Internal server error"), 500
    return render_template('error.html', code=500,
                           message="The station hit an internal error."), 500
