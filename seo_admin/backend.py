"""Client for the external REST backend.

One wrapper per backend operation. Each wrapper returns the decoded JSON body
on a 2xx answer and raises :class:`BackendError` otherwise; nothing here
retries or caches.
"""
import json
import logging
import threading

import requests
from flask import current_app, g, has_request_context

logger = logging.getLogger(__name__)

API_ROUTES = {
    'login': '/auth/login',
    'dashboard_data': '/dashboard-data',
    'users': '/users',
    'user': '/users/{user_id}',
    'user_password': '/users/{user_id}/password',
    'pages': '/seo-pages',
    'page': '/seo-pages/{page_id}',
    'page_status': '/seo-pages/{page_id}/change-status',
    'parent_pages': '/seo-pages-parent',
    'section': '/components/{slug}/page/{page_id}',
}
PAGE_LIST_FILTERS = ('page_type', 'title', 'slug', 'is_active', 'seo_status', 'parent_id')


class BackendError(Exception):
    def __init__(self, message, status_code=500, payload=None, method='', url=''):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload if payload is not None else {'message': message}
        self.method = method
        self.url = url


class BackendValidationError(BackendError):
    """Field-level validation failure, keyed the way the forms name fields."""

    def __init__(self, message, field_errors, **kwargs):
        super().__init__(message, **kwargs)
        self.field_errors = field_errors

    @property
    def first_field(self):
        return next(iter(self.field_errors), None)


def form_field_name(backend_key):
    """Map a dotted backend key (``meta.canonical_url``) to a form name (``meta[canonical_url]``)."""
    parts = [part for part in str(backend_key or '').split('.') if part]
    if not parts:
        return ''
    return parts[0] + ''.join(f'[{part}]' for part in parts[1:])


def map_field_errors(errors):
    mapped = {}
    if not isinstance(errors, dict):
        return mapped
    for key, messages in errors.items():
        if isinstance(messages, str):
            messages = [messages]
        if not isinstance(messages, (list, tuple)):
            continue
        messages = [str(message) for message in messages if message]
        name = form_field_name(key)
        if name and messages:
            mapped[name] = messages
    return mapped


def payload_of(body):
    """Strip one ``{status, data}`` envelope level."""
    if isinstance(body, dict) and 'data' in body:
        return body['data']
    return body


def rows_of(body):
    """Rows of a paginated (``data.data``) or plain list response."""
    data = payload_of(body)
    if isinstance(data, dict) and isinstance(data.get('data'), list):
        return data['data']
    if isinstance(data, list):
        return data
    return []


def pagination_of(body, fallback_page=1, fallback_per_page=15):
    data = payload_of(body)
    data = data if isinstance(data, dict) else {}
    rows = rows_of(body)
    return {
        'current_page': data.get('current_page') or fallback_page,
        'last_page': data.get('last_page') or 1,
        'per_page': data.get('per_page') or len(rows) or fallback_per_page,
        'total': data.get('total') or len(rows),
    }


def section_path(slug, page_id, section_id=None):
    path = API_ROUTES['section'].format(slug=slug, page_id=page_id)
    if section_id:
        path = f'{path}/{section_id}'
    return path


def _decode_body(response):
    text = response.text or ''
    if not text.strip():
        return {}
    try:
        return response.json()
    except ValueError:
        return {'message': text[:500]}


def _form_fields(payload):
    fields = {}
    for key, value in (payload or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            fields[key] = '1' if value else '0'
        elif isinstance(value, (dict, list)):
            fields[key] = json.dumps(value, ensure_ascii=False)
        else:
            fields[key] = str(value)
    return fields


def _file_tuples(files):
    prepared = {}
    for name, storage in (files or {}).items():
        if storage is None:
            continue
        stream = getattr(storage, 'stream', storage)
        stream.seek(0)
        prepared[name] = (
            getattr(storage, 'filename', None) or name,
            stream,
            getattr(storage, 'mimetype', None) or 'application/octet-stream',
        )
    return prepared


class BackendClient:
    def __init__(self, base_url, domain_key='', timeout=30.0, session=None, log=None):
        self.base_url = (base_url or '').rstrip('/')
        self.domain_key = domain_key or ''
        self.timeout = timeout
        self._session = session
        self._local = threading.local()
        self.log = log or logger

    @property
    def session(self):
        """An injected session, or one ``requests.Session`` per thread."""
        if self._session is not None:
            return self._session
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def url_for(self, path):
        if path.startswith(('http://', 'https://')):
            return path
        if not path.startswith('/'):
            path = f'/{path}'
        return f'{self.base_url}{path}'

    def headers(self, ctx=None, extra=None):
        headers = {'Accept': 'application/json', 'domainkey': self.domain_key}
        token = getattr(ctx, 'token', '') if ctx is not None else ''
        if token:
            headers['Authorization'] = f'Bearer {token}'
        # Worker threads have no request context, so the id rides on ctx.
        request_id = getattr(ctx, 'request_id', '') if ctx is not None else ''
        if not request_id and has_request_context():
            request_id = getattr(g, 'request_id', '')
        if request_id:
            headers['X-Request-ID'] = request_id
        if extra:
            headers.update(extra)
        return headers

    def request(self, method, path, ctx=None, json_body=None, params=None, data=None, files=None):
        url = self.url_for(path)
        try:
            response = self.session.request(
                method,
                url,
                headers=self.headers(ctx),
                json=json_body,
                params=params,
                data=data,
                files=files,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.log.error('Backend request failed: %s %s (%s)', method, url, exc)
            raise BackendError(str(exc) or 'Backend unreachable', status_code=502, method=method, url=url) from exc

        body = _decode_body(response)
        if 200 <= response.status_code < 300:
            return body

        self.log.error(
            'Backend error: %s %s -> %s %s',
            method,
            url,
            response.status_code,
            json.dumps(body, ensure_ascii=False)[:2000],
        )
        message = body.get('message') if isinstance(body, dict) else None
        message = message if isinstance(message, str) and message else f'Backend returned {response.status_code}'
        errors = body.get('errors') if isinstance(body, dict) else None
        if isinstance(errors, dict) and errors:
            raise BackendValidationError(
                message,
                map_field_errors(errors),
                status_code=response.status_code,
                payload=body,
                method=method,
                url=url,
            )
        raise BackendError(message, status_code=response.status_code, payload=body, method=method, url=url)

    # Auth & dashboard
    def login(self, email, password):
        return self.request('POST', API_ROUTES['login'], json_body={'email': email, 'password': password})

    def dashboard_data(self, ctx):
        return self.request('GET', API_ROUTES['dashboard_data'], ctx)

    # Users
    def list_users(self, ctx):
        return self.request('GET', API_ROUTES['users'], ctx)

    def get_user(self, ctx, user_id):
        return self.request('GET', API_ROUTES['user'].format(user_id=user_id), ctx)

    def create_user(self, ctx, payload):
        return self.request('POST', API_ROUTES['users'], ctx, json_body=payload)

    def update_user(self, ctx, user_id, payload):
        return self.request('PUT', API_ROUTES['user'].format(user_id=user_id), ctx, json_body=payload)

    def change_user_password(self, ctx, user_id, password, password_confirmation):
        return self.request(
            'PUT',
            API_ROUTES['user_password'].format(user_id=user_id),
            ctx,
            json_body={'password': password, 'password_confirmation': password_confirmation},
        )

    def delete_user(self, ctx, user_id):
        return self.request('DELETE', API_ROUTES['user'].format(user_id=user_id), ctx)

    # Pages
    def list_pages(self, ctx, page=1, **filters):
        # The backend expects every filter key, even when empty.
        params = {'page': page}
        for key in PAGE_LIST_FILTERS:
            value = filters.get(key)
            params[key] = '' if value is None else str(value)
        return self.request('GET', API_ROUTES['pages'], ctx, params=params)

    def get_page(self, ctx, page_id):
        return self.request('GET', API_ROUTES['page'].format(page_id=page_id), ctx)

    def create_page(self, ctx, payload):
        return self.request('POST', API_ROUTES['pages'], ctx, json_body=payload)

    def update_page(self, ctx, page_id, payload):
        return self.request('PUT', API_ROUTES['page'].format(page_id=page_id), ctx, json_body=payload)

    def delete_page(self, ctx, page_id, page_type=None):
        params = {'page_type': page_type} if page_type is not None else None
        return self.request('DELETE', API_ROUTES['page'].format(page_id=page_id), ctx, params=params)

    def change_page_status(self, ctx, page_id, seo_status):
        return self.request(
            'PUT',
            API_ROUTES['page_status'].format(page_id=page_id),
            ctx,
            json_body={'seo_status': 1 if seo_status else 0},
        )

    def parent_pages(self, ctx, page_type=2):
        return self.request('GET', API_ROUTES['parent_pages'], ctx, params={'page_type': page_type})

    # Content sections
    def get_section(self, ctx, slug, page_id):
        return self.request('GET', section_path(slug, page_id), ctx)

    def create_section(self, ctx, slug, page_id, payload, files=None):
        if files:
            return self.request(
                'POST',
                section_path(slug, page_id),
                ctx,
                data=_form_fields(payload),
                files=_file_tuples(files),
            )
        return self.request('POST', section_path(slug, page_id), ctx, json_body=payload)

    def update_section(self, ctx, slug, page_id, section_id, payload, files=None):
        if files:
            # Multipart bodies go out as POST with a method override.
            fields = _form_fields(payload)
            fields['_method'] = 'PUT'
            return self.request(
                'POST',
                section_path(slug, page_id, section_id),
                ctx,
                data=fields,
                files=_file_tuples(files),
            )
        return self.request('PUT', section_path(slug, page_id, section_id), ctx, json_body=payload)


def get_backend(app=None):
    app = app or current_app
    client = app.extensions.get('seo_admin.backend')
    if client is None:
        client = BackendClient(
            app.config.get('API_BASE_URL', ''),
            domain_key=app.config.get('DOMAIN_KEY', ''),
            timeout=app.config.get('BACKEND_TIMEOUT_SECONDS', 30.0),
            log=app.logger,
        )
        app.extensions['seo_admin.backend'] = client
    return client
