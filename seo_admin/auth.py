"""Flask-Login wiring over the backend's cookie token."""
from flask import current_app, g, request
from flask_login import LoginManager, UserMixin, current_user

from .cookies import SessionContext, read_session

login_manager = LoginManager()
login_manager.login_view = 'admin.signin'
login_manager.login_message = 'Please sign in to continue.'
login_manager.login_message_category = 'warning'


class AdminUser(UserMixin):
    def __init__(self, ctx):
        self.ctx = ctx

    def get_id(self):
        return self.ctx.user_id or None

    @property
    def name(self):
        return self.ctx.user_name or 'Admin'


@login_manager.user_loader
def load_user(user_id):
    # Identity always comes from the auth cookie, never from the Flask session.
    return None


@login_manager.request_loader
def load_user_from_request(req):
    ctx = read_session(req)
    ttl = current_app.config.get('AUTH_TOKEN_TTL_SECONDS', 86400)
    if not ctx.is_valid(ttl_seconds=ttl):
        return None
    return AdminUser(ctx.with_request_id(getattr(g, 'request_id', '')))


def current_session():
    """Session context for backend calls made on behalf of this request."""
    if current_user.is_authenticated:
        return current_user.ctx
    return read_session(request).with_request_id(getattr(g, 'request_id', ''))


__all__ = ['AdminUser', 'SessionContext', 'current_session', 'login_manager']
