"""Cookie-backed session state.

The auth token and a few identity values live in cookies; nothing else is
persisted on the client. Views read them once into a :class:`SessionContext`
and hand that value to every backend call.
"""
import time
from dataclasses import dataclass, replace
from urllib.parse import unquote

from flask import current_app

AUTH_TOKEN_COOKIE = 'auth_token'
AUTH_TOKEN_VALIDITY_COOKIE = 'auth_token_validity'
USER_NAME_COOKIE = 'user_name'
USER_ID_COOKIE = 'user_token'
SESSION_COOKIES = (AUTH_TOKEN_COOKIE, AUTH_TOKEN_VALIDITY_COOKIE, USER_NAME_COOKIE, USER_ID_COOKIE)


def now_ms():
    return int(time.time() * 1000)


@dataclass(frozen=True)
class SessionContext:
    token: str = ''
    issued_at_ms: int = 0
    user_name: str = ''
    user_id: str = ''
    request_id: str = ''

    def is_valid(self, now=None, ttl_seconds=86400):
        if not self.token or not self.issued_at_ms:
            return False
        now = now_ms() if now is None else now
        return self.issued_at_ms > now - ttl_seconds * 1000

    def with_request_id(self, request_id):
        return replace(self, request_id=request_id or '')


def read_session(req):
    cookies = req.cookies
    token = unquote(cookies.get(AUTH_TOKEN_COOKIE) or '').strip()
    try:
        issued_at_ms = int(cookies.get(AUTH_TOKEN_VALIDITY_COOKIE) or 0)
    except (TypeError, ValueError):
        issued_at_ms = 0
    return SessionContext(
        token=token,
        issued_at_ms=issued_at_ms,
        user_name=unquote(cookies.get(USER_NAME_COOKIE) or ''),
        user_id=unquote(cookies.get(USER_ID_COOKIE) or ''),
    )


def _cookie_options():
    config = current_app.config
    return {
        'max_age': int(config.get('AUTH_TOKEN_TTL_SECONDS', 86400)),
        'path': '/',
        'secure': bool(config.get('SESSION_COOKIE_SECURE')),
        'samesite': 'Lax',
    }


def write_session(response, token, user=None, issued_at=None):
    user = user or {}
    options = _cookie_options()
    response.set_cookie(AUTH_TOKEN_COOKIE, token, httponly=True, **options)
    response.set_cookie(AUTH_TOKEN_VALIDITY_COOKIE, str(issued_at or now_ms()), httponly=True, **options)
    response.set_cookie(USER_NAME_COOKIE, str(user.get('name') or ''), **options)
    response.set_cookie(USER_ID_COOKIE, str(user.get('id') or ''), **options)
    return response


def clear_session(response):
    for name in SESSION_COOKIES:
        response.delete_cookie(name, path='/')
    return response
