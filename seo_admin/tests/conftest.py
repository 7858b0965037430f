import json
import re
import threading
from urllib.parse import urlsplit

import pytest

from seo_admin import create_app
from seo_admin.backend import BackendClient
from seo_admin.cookies import AUTH_TOKEN_COOKIE, AUTH_TOKEN_VALIDITY_COOKIE, USER_ID_COOKIE, USER_NAME_COOKIE, now_ms

BACKEND_URL = 'https://backend.test/api'
DOMAIN_KEY = 'test-domain-key'
CSRF_TOKEN_RE = re.compile(r'name="_csrf_token" value="([^"]+)"')


def extract_csrf_token(html):
    match = CSRF_TOKEN_RE.search(html or "")
    return match.group(1) if match else None


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None, reason='OK'):
        self.status_code = status_code
        if isinstance(body, bytes):
            self.content = body
        elif isinstance(body, str):
            self.content = body.encode('utf-8')
        elif body is None:
            self.content = b''
        else:
            self.content = json.dumps(body).encode('utf-8')
        self.headers = headers if headers is not None else {'Content-Type': 'application/json'}
        self.reason = reason

    @property
    def text(self):
        return self.content.decode('utf-8')

    def json(self):
        return json.loads(self.text)


class Call:
    def __init__(self, method, url, kwargs):
        self.method = method
        self.url = url
        self.kwargs = kwargs

    @property
    def path(self):
        return urlsplit(self.url).path[len(urlsplit(BACKEND_URL).path):]

    @property
    def headers(self):
        return self.kwargs.get('headers') or {}

    @property
    def json(self):
        return self.kwargs.get('json')

    def __repr__(self):
        return f'Call({self.method} {self.url})'


class FakeSession:
    """Stands in for ``requests.Session``: canned answers per (method, path), every call recorded."""

    def __init__(self):
        self.calls = []
        self.routes = []
        self._lock = threading.Lock()

    def add(self, method, path, body=None, status=200, error=None, headers=None):
        self.routes.insert(0, (method.upper(), path, body, status, error, headers))
        return self

    def request(self, method, url, **kwargs):
        call = Call(method.upper(), url, kwargs)
        if isinstance(kwargs.get('data'), (bytes, str)) or hasattr(kwargs.get('data'), 'read'):
            data = kwargs['data']
            call.kwargs['data'] = data.read() if hasattr(data, 'read') else data
        with self._lock:
            self.calls.append(call)
        for route_method, path, body, status, error, headers in self.routes:
            if route_method == call.method and call.path == path:
                if error is not None:
                    raise error
                if callable(body):
                    body = body(call)
                return FakeResponse(status, body, headers=headers)
        return FakeResponse(404, {'message': 'Not found'})

    def calls_to(self, method, path):
        return [call for call in self.calls if call.method == method.upper() and call.path == path]


def build_test_app(monkeypatch, overrides=None, session=None):
    monkeypatch.setenv('API_BASE_URL', BACKEND_URL)
    monkeypatch.setenv('DOMAIN_KEY', DOMAIN_KEY)

    config = {
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
        'API_BASE_URL': BACKEND_URL,
        'DOMAIN_KEY': DOMAIN_KEY,
        'LOG_JSON': False,
    }
    if overrides:
        config.update(overrides)

    app = create_app(config)
    app.extensions['seo_admin.backend'] = BackendClient(
        BACKEND_URL,
        domain_key=DOMAIN_KEY,
        timeout=5,
        session=session or FakeSession(),
        log=app.logger,
    )
    return app


@pytest.fixture()
def backend():
    return FakeSession()


@pytest.fixture()
def app(monkeypatch, backend):
    return build_test_app(monkeypatch, session=backend)


@pytest.fixture()
def client(app):
    return app.test_client()


def sign_in_cookies(client, token='token-123', issued_at=None, name='Admin User', user_id='1'):
    client.set_cookie(AUTH_TOKEN_COOKIE, token)
    client.set_cookie(AUTH_TOKEN_VALIDITY_COOKIE, str(issued_at if issued_at is not None else now_ms()))
    client.set_cookie(USER_NAME_COOKIE, name)
    client.set_cookie(USER_ID_COOKIE, user_id)


def csrf_for(client):
    with client.session_transaction() as sess:
        sess['_csrf_token'] = 'test-csrf-token'
    return 'test-csrf-token'


@pytest.fixture()
def auth_client(client):
    sign_in_cookies(client)
    return client
