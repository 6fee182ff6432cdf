from flask import Blueprint, current_app
from flask import flash, redirect, render_template, request, url_for

from scanverify.services.api_client import ApiError, ApiUnauthorized
from scanverify.utils.common import admin_required, best_effort, get_api, navigate_to
bp = Blueprint(__name__.rsplit('.', 1)[-1], __name__)

ROLES = ('user', 'admin')
MIN_PASSWORD = 6


def user_form_data(form, *, creating: bool):
    """
    Pull the user form into an API payload plus inline errors.
    On edit an empty password is left out so the server keeps the old one.
    """
    data = {
        'name': (form.get('name') or '').strip(),
        'role': (form.get('role') or 'user').strip(),
        'password': form.get('password') or '',
    }
    if creating:
        data['username'] = (form.get('username') or '').strip()

    errors = {}
    if creating and not data['username']:
        errors['username'] = 'Username is required.'
    if not data['name']:
        errors['name'] = 'Name is required.'
    if data['role'] not in ROLES:
        errors['role'] = 'Role must be user or admin.'
    if creating and not data['password']:
        errors['password'] = 'Password is required.'
    elif data['password'] and len(data['password']) < MIN_PASSWORD:
        errors['password'] = f'Password must be at least {MIN_PASSWORD} characters.'

    if not data['password']:
        data.pop('password')
    return data, errors


@bp.get('/users')
@admin_required
def users():
    navigate_to('users')
    rows = best_effort(lambda: get_api().list_users(), [], "users")
    return render_template('users.html', active='users', users=rows)


@bp.route('/users/new', methods=['GET', 'POST'])
@admin_required
def user_new():
    navigate_to('users')
    errors, values = {}, {'role': 'user'}
    if request.method == 'POST':
        data, errors = user_form_data(request.form, creating=True)
        values = {k: v for k, v in data.items() if k != 'password'}
        if not errors:
            try:
                get_api().create_user(data)
            except ApiUnauthorized:
                raise
            except ApiError as e:
                flash(e.message if e.status else 'Error', 'error')
            else:
                current_app.logger.info("Created user %s", data['username'])
                flash('User added', 'success')
                return redirect(url_for('users.users'))
    return render_template('user_form.html', active='users', creating=True,
                           values=values, errors=errors)


@bp.route('/users/<int:user_id>/edit', methods=['GET', 'POST'])
@admin_required
def user_edit(user_id):
    navigate_to('users')
    api = get_api()
    try:
        user = api.get_user(user_id)
    except ApiUnauthorized:
        raise
    except ApiError as e:
        flash(e.message if e.status else 'Error', 'error')
        return redirect(url_for('users.users'))

    errors, values = {}, {'name': user.get('name', ''), 'role': user.get('role', 'user')}
    if request.method == 'POST':
        data, errors = user_form_data(request.form, creating=False)
        values = {k: v for k, v in data.items() if k != 'password'}
        if not errors:
            try:
                api.update_user(user_id, data)
            except ApiUnauthorized:
                raise
            except ApiError as e:
                flash(e.message if e.status else 'Error', 'error')
            else:
                current_app.logger.info("Updated user %s", user_id)
                flash('User updated', 'success')
                return redirect(url_for('users.users'))
    return render_template('user_form.html', active='users', creating=False,
                           user=user, values=values, errors=errors)


@bp.post('/users/<int:user_id>/delete')
@admin_required
def user_delete(user_id):
    try:
        get_api().delete_user(user_id)
    except ApiUnauthorized:
        raise
    except ApiError as e:
        flash(e.message if e.status else 'Error', 'error')
    else:
        current_app.logger.info("Deleted user %s", user_id)
        flash('User deleted', 'success')
    return redirect(url_for('users.users'))
