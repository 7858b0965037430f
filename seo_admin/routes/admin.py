from flask import Blueprint, abort, current_app, flash, jsonify, redirect, render_template, request, url_for
from flask_login import current_user, login_required

from ..auth import current_session
from ..backend import BackendError, BackendValidationError, get_backend, pagination_of, payload_of, rows_of
from ..cookies import clear_session, write_session
from ..forms import (
    META_FIELDS,
    PAGE_CONTENT_SLOTS,
    FilterForm,
    PageForm,
    PasswordForm,
    SignInForm,
    UserForm,
    build_page_payload,
    meta_input_name,
    meta_values_from_form,
    meta_values_from_page,
    page_form_data,
)
from ..normalizer import page_from_response
from ..sections import PAGE_TYPE_MANAGEMENT, PAGE_TYPE_SEO
from ..utils import is_local_path, pagination_window, parse_int, split_keywords

admin_bp = Blueprint('admin', __name__)

PAGE_KINDS = {
    'seo-pages': PAGE_TYPE_SEO,
    'management-services': PAGE_TYPE_MANAGEMENT,
}
PAGE_KIND_LABELS = {
    'seo-pages': 'SEO Pages',
    'management-services': 'Management Services',
}
GENERIC_ERROR = 'Something went wrong. Please try again.'


def page_type_for(kind):
    page_type = PAGE_KINDS.get(kind)
    if page_type is None:
        abort(404)
    return page_type


def wants_json():
    if request.headers.get('X-Requested-With') == 'XMLHttpRequest':
        return True
    return request.accept_mimetypes.best == 'application/json'


def dashboard_summary(body):
    data = payload_of(body)
    data = data if isinstance(data, dict) else {}
    recent = data.get('recent_seo_pages')
    return {
        'user_count': parse_int(data.get('user_count'), default=0, min_value=0),
        'seo_page_count': parse_int(data.get('seo_page_count'), default=0, min_value=0),
        'recent_seo_pages': [row for row in recent if isinstance(row, dict)] if isinstance(recent, list) else [],
    }


def parent_options_from_rows(rows, known=None):
    """Distinct ``parent`` objects seen in the listing, merged into ``known`` in first-seen order."""
    options = list(known or [])
    seen = {str(option['id']) for option in options}
    for row in rows:
        parent = row.get('parent') if isinstance(row, dict) else None
        if not isinstance(parent, dict) or not parent.get('id'):
            continue
        if str(parent['id']) in seen:
            continue
        seen.add(str(parent['id']))
        options.append({'id': parent['id'], 'title': parent.get('title') or str(parent['id'])})
    return options


def page_after_delete(current_page, rows_on_page, total, per_page):
    """Listing page to land on once a row is gone."""
    new_total = max(0, total - 1)
    last_page = max(1, -(-new_total // max(1, per_page)))
    if new_total == 0:
        return 1
    if rows_on_page <= 1 and current_page > 1:
        return last_page if current_page > last_page else current_page - 1
    return min(current_page, last_page)


def _login_token(body):
    for candidate in (body, payload_of(body)):
        if isinstance(candidate, dict) and candidate.get('access_token'):
            return candidate
    return None


def _flash_backend_error(exc, fallback=GENERIC_ERROR):
    flash(exc.message or fallback, 'danger')


# Auth
@admin_bp.route('/signin', methods=['GET', 'POST'])
def signin():
    if current_user.is_authenticated:
        return redirect(url_for('admin.dashboard'))
    form = SignInForm()
    login_error = None
    if form.validate_on_submit():
        try:
            body = get_backend().login(form.email.data.strip(), form.password.data)
        except BackendError as exc:
            current_app.logger.warning('Sign-in rejected for %s: %s', form.email.data, exc.message)
            body = None
        session_data = _login_token(body)
        if session_data:
            target = request.args.get('next') or ''
            response = redirect(target if is_local_path(target) else url_for('admin.dashboard'))
            return write_session(response, session_data['access_token'], user=session_data.get('user'))
        message = body.get('message') if isinstance(body, dict) else None
        login_error = message if isinstance(message, str) and message else 'Invalid email or password'
    return render_template('auth/signin.html', form=form, login_error=login_error)


@admin_bp.route('/signout', methods=['POST'])
def signout():
    response = redirect(url_for('admin.signin'))
    return clear_session(response)


# Dashboard
@admin_bp.route('/')
@login_required
def dashboard():
    try:
        summary = dashboard_summary(get_backend().dashboard_data(current_session()))
    except BackendError as exc:
        current_app.logger.error('Dashboard data failed to load: %s', exc.message)
        summary = dashboard_summary(None)
    return render_template('dashboard.html', summary=summary)


# Pages
def _page_list_url(kind, page=1, filters=None):
    params = {key: value for key, value in (filters or {}).items() if value}
    if page > 1:
        params['page'] = page
    return url_for('admin.page_list', kind=kind, **params)


@admin_bp.route('/<kind>')
@login_required
def page_list(kind):
    page_type = page_type_for(kind)
    current_page = parse_int(request.args.get('page'), default=1, min_value=1)
    filter_form = FilterForm(request.args)
    filters = filter_form.filters()
    rows, pagination, load_error = [], pagination_of(None, fallback_page=current_page), None
    try:
        body = get_backend().list_pages(current_session(), page=current_page, page_type=page_type, **filters)
        rows = [row for row in rows_of(body) if isinstance(row, dict) and row.get('id') is not None]
        pagination = pagination_of(
            body,
            fallback_page=current_page,
            fallback_per_page=current_app.config.get('PAGES_PER_PAGE', 15),
        )
    except BackendError as exc:
        current_app.logger.error('Page list failed to load: %s', exc.message)
        load_error = 'Failed to load pages.'
    parents = parent_options_from_rows(rows)
    filter_form.parent_id.choices = [('', 'All')] + [(str(p['id']), p['title']) for p in parents]
    return render_template(
        'pages/list.html',
        kind=kind,
        kind_label=PAGE_KIND_LABELS[kind],
        page_type=page_type,
        rows=rows,
        pagination=pagination,
        page_numbers=pagination_window(pagination['current_page'], pagination['last_page']),
        filter_form=filter_form,
        filter_count=filter_form.active_count(),
        page_url=lambda number: _page_list_url(kind, number, filters),
        load_error=load_error,
    )


def _parent_rows(ctx, page_type):
    try:
        return rows_of(get_backend().parent_pages(ctx, page_type=page_type))
    except BackendError as exc:
        current_app.logger.warning('Parent pages failed to load: %s', exc.message)
        return []


def _render_page_form(kind, form, meta_values, page_id=None, field_errors=None):
    return render_template(
        'pages/form.html',
        kind=kind,
        kind_label=PAGE_KIND_LABELS[kind],
        form=form,
        page_id=page_id,
        meta_fields=META_FIELDS,
        content_slots=PAGE_CONTENT_SLOTS,
        meta_values=meta_values,
        meta_input_name=meta_input_name,
        keyword_tags=split_keywords(meta_values.get('meta_keywords')),
        field_errors=field_errors or {},
    )


def _save_page(kind, page_type, page_id=None):
    ctx = current_session()
    page = {}
    if page_id is not None and request.method == 'GET':
        try:
            page = page_from_response(get_backend().get_page(ctx, page_id))
        except BackendError as exc:
            if exc.status_code == 404:
                abort(404)
            _flash_backend_error(exc, 'Failed to load page.')
            return redirect(_page_list_url(kind))
    form = PageForm(data=page_form_data(page)) if page else PageForm()
    form.set_parent_choices(_parent_rows(ctx, page_type), exclude_id=page_id)
    meta_values = meta_values_from_page(page)

    if request.method == 'POST':
        meta_values = meta_values_from_form(request.form)
        if not form.validate():
            flash('Please correct the highlighted fields.', 'danger')
            return _render_page_form(kind, form, meta_values, page_id), 400
        payload = build_page_payload(form, meta_values, page_type)
        try:
            if page_id is None:
                get_backend().create_page(ctx, payload)
            else:
                get_backend().update_page(ctx, page_id, payload)
        except BackendValidationError as exc:
            flash(exc.message or 'Please correct the highlighted fields.', 'danger')
            return _render_page_form(kind, form, meta_values, page_id, exc.field_errors), 422
        except BackendError as exc:
            _flash_backend_error(exc)
            return _render_page_form(kind, form, meta_values, page_id), 502
        flash('Page saved successfully.' if page_id else 'Page created successfully.', 'success')
        return redirect(_page_list_url(kind))

    return _render_page_form(kind, form, meta_values, page_id)


@admin_bp.route('/<kind>/add', methods=['GET', 'POST'])
@login_required
def page_add(kind):
    return _save_page(kind, page_type_for(kind))


@admin_bp.route('/<kind>/<int:page_id>/edit', methods=['GET', 'POST'])
@login_required
def page_edit(kind, page_id):
    return _save_page(kind, page_type_for(kind), page_id)


@admin_bp.route('/<kind>/<int:page_id>/delete', methods=['POST'])
@login_required
def page_delete(kind, page_id):
    page_type = page_type_for(kind)
    current_page = parse_int(request.form.get('page'), default=1, min_value=1)
    try:
        get_backend().delete_page(current_session(), page_id, page_type=page_type)
    except BackendError as exc:
        current_app.logger.error('Failed to delete page %s: %s', page_id, exc.message)
        flash('Failed to delete the page.', 'danger')
        return redirect(_page_list_url(kind, current_page))
    target = page_after_delete(
        current_page,
        rows_on_page=parse_int(request.form.get('rows_on_page'), default=1, min_value=0),
        total=parse_int(request.form.get('total'), default=1, min_value=0),
        per_page=parse_int(request.form.get('per_page'), default=current_app.config.get('PAGES_PER_PAGE', 15), min_value=1),
    )
    flash('Page deleted successfully.', 'success')
    return redirect(_page_list_url(kind, target))


@admin_bp.route('/<kind>/<int:page_id>/status', methods=['POST'])
@login_required
def page_status(kind, page_id):
    page_type_for(kind)
    seo_status = request.form.get('seo_status', '') in {'1', 'true', 'on'}
    try:
        get_backend().change_page_status(current_session(), page_id, seo_status)
    except BackendError as exc:
        current_app.logger.error('Failed to change SEO status of page %s: %s', page_id, exc.message)
        if wants_json():
            return jsonify({'ok': False, 'message': exc.message or 'Failed to update status.'}), exc.status_code or 502
        flash('Failed to update status.', 'danger')
        return redirect(_page_list_url(kind))
    if wants_json():
        return jsonify({'ok': True, 'id': page_id, 'seo_status': 1 if seo_status else 0})
    flash('Status updated.', 'success')
    return redirect(_page_list_url(kind))


# Users
def _role_names(user):
    names = []
    for role in user.get('roles') or []:
        if isinstance(role, dict):
            role = role.get('name')
        if isinstance(role, str) and role.strip():
            names.append(role.strip())
    return names


@admin_bp.route('/users')
@login_required
def users():
    rows, load_error = [], None
    try:
        rows = [row for row in rows_of(get_backend().list_users(current_session())) if isinstance(row, dict)]
    except BackendError as exc:
        current_app.logger.error('User list failed to load: %s', exc.message)
        load_error = 'Failed to load users.'
    return render_template('users/list.html', rows=rows, role_names=_role_names, load_error=load_error)


def _save_user(user_id=None):
    ctx = current_session()
    user = {}
    if user_id is not None and request.method == 'GET':
        try:
            user = payload_of(get_backend().get_user(ctx, user_id))
        except BackendError as exc:
            if exc.status_code == 404:
                abort(404)
            _flash_backend_error(exc, 'Failed to load user.')
            return redirect(url_for('admin.users'))
        user = user if isinstance(user, dict) else {}
    form = UserForm(data={
        'name': user.get('name') or '',
        'email': user.get('email') or '',
        'roles': ', '.join(_role_names(user)),
    }) if user else UserForm()

    if request.method == 'POST':
        if not form.validate():
            return render_template('users/form.html', form=form, user_id=user_id), 400
        payload = form.profile_payload()
        try:
            if user_id is None:
                if not form.password.data:
                    form.password.errors = list(form.password.errors) + ['Password is required.']
                    return render_template('users/form.html', form=form, user_id=user_id), 400
                payload['password'] = form.password.data
                payload['password_confirmation'] = form.password_confirmation.data
                get_backend().create_user(ctx, payload)
            else:
                get_backend().update_user(ctx, user_id, payload)
        except BackendValidationError as exc:
            flash(exc.message or 'Please correct the highlighted fields.', 'danger')
            return render_template('users/form.html', form=form, user_id=user_id, field_errors=exc.field_errors), 422
        except BackendError as exc:
            _flash_backend_error(exc)
            return render_template('users/form.html', form=form, user_id=user_id), 502
        flash('User saved successfully.' if user_id else 'User created successfully.', 'success')
        return redirect(url_for('admin.users'))

    return render_template('users/form.html', form=form, user_id=user_id)


@admin_bp.route('/users/add', methods=['GET', 'POST'])
@login_required
def user_add():
    return _save_user()


@admin_bp.route('/users/<int:user_id>/edit', methods=['GET', 'POST'])
@login_required
def user_edit(user_id):
    return _save_user(user_id)


@admin_bp.route('/users/<int:user_id>/password', methods=['GET', 'POST'])
@login_required
def user_password(user_id):
    form = PasswordForm()
    if form.validate_on_submit():
        try:
            get_backend().change_user_password(
                current_session(),
                user_id,
                form.password.data,
                form.password_confirmation.data,
            )
        except BackendValidationError as exc:
            flash(exc.message or 'Please correct the highlighted fields.', 'danger')
            return render_template('users/password.html', form=form, user_id=user_id, field_errors=exc.field_errors), 422
        except BackendError as exc:
            current_app.logger.error('Error updating password for user %s: %s', user_id, exc.message)
            _flash_backend_error(exc)
            return render_template('users/password.html', form=form, user_id=user_id), 502
        flash('Password updated successfully.', 'success')
        return redirect(url_for('admin.users'))
    return render_template('users/password.html', form=form, user_id=user_id)


@admin_bp.route('/users/<int:user_id>/delete', methods=['POST'])
@login_required
def user_delete(user_id):
    try:
        get_backend().delete_user(current_session(), user_id)
    except BackendError as exc:
        current_app.logger.error('Failed to delete user %s: %s', user_id, exc.message)
        flash('Failed to delete the user.', 'danger')
    else:
        flash('User deleted successfully.', 'success')
    return redirect(url_for('admin.users'))

