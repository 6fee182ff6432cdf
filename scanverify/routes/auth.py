from flask import Blueprint, current_app
from flask import flash, redirect, render_template, request, session, url_for

from scanverify.services.api_client import ApiClient, ApiError, ApiUnauthorized, ApiUnavailable
from scanverify.utils.common import (
    best_effort, current_token, current_user, get_api, navigate_to, perform_logout,
    store_auth,
)
bp = Blueprint(__name__.rsplit('.', 1)[-1], __name__)

MIN_PASSWORD = 6


def _safe_next(nxt: str) -> str | None:
    # only same-site relative paths
    if nxt and nxt.startswith('/') and not nxt.startswith('//'):
        return nxt
    return None


@bp.route('/login', methods=['GET', 'POST'])
def login():
    if current_token() and current_user():
        return redirect(url_for('scanner.scanner'))

    error = ''
    username = ''
    if request.method == 'POST':
        username = (request.form.get('username') or '').strip()
        password = request.form.get('password') or ''
        # login carries no bearer token
        api = ApiClient(
            current_app.config['API_BASE'],
            session=current_app.extensions['api_session'],
            timeout=current_app.config.get('API_TIMEOUT', 10),
        )
        try:
            token, user = api.login(username, password)
        except ApiUnavailable:
            error = 'Cannot connect to server'
        except ApiError as e:
            error = e.message or 'Login failed'
        except (KeyError, TypeError, ValueError):
            current_app.logger.warning("Malformed login response for %s", username)
            error = 'Login failed'
        else:
            session.clear()
            store_auth(token, user)
            current_app.logger.info("User %s logged in", user.get('username', username))
            nxt = _safe_next(request.args.get('next', ''))
            return redirect(nxt or url_for('scanner.scanner'))

    return render_template('login.html', error=error, username=username), (401 if error else 200)


@bp.route('/logout', methods=['GET', 'POST'])
def logout():
    user = current_user() or {}
    perform_logout()
    if user:
        current_app.logger.info("User %s logged out", user.get('username'))
    return redirect(url_for('auth.login'))


@bp.route('/account', methods=['GET', 'POST'])
def account():
    """Signed-in user's profile (refreshed from /auth/me) + password change."""
    navigate_to('account')
    api = get_api()
    errors = {}

    if request.method == 'POST':
        old = request.form.get('old_password') or ''
        new = request.form.get('new_password') or ''
        confirm = request.form.get('confirm_password') or ''
        if not old:
            errors['old_password'] = 'Current password is required.'
        if len(new) < MIN_PASSWORD:
            errors['new_password'] = f'New password must be at least {MIN_PASSWORD} characters.'
        elif new != confirm:
            errors['confirm_password'] = 'Passwords must match.'
        if not errors:
            try:
                api.change_password(old, new)
            except (ApiUnauthorized, ApiUnavailable):
                raise
            except ApiError as e:
                flash(e.message, 'error')
            else:
                flash('Password changed.', 'success')
                return redirect(url_for('auth.account'))

    me = best_effort(api.me, None, "account profile")
    if not me:
        flash("Could not refresh your profile.", "error")
        me = current_user()
    # keep the header in sync with server-side edits
    session['user'] = me
    return render_template('account.html', active='account', me=me, errors=errors)
