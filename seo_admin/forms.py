"""Flask-WTF forms for sign-in, pages and users.

CSRF is enforced globally in ``app.before_request``, so the forms opt out of
their own token.
"""
from flask_wtf import FlaskForm
from slugify import slugify
from wtforms import BooleanField, IntegerField, PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, EqualTo, Length, NumberRange, Optional, Regexp

from .utils import EMAIL_RE, join_keywords, split_keywords

META_FIELDS = (
    ('h1_tag', 'H1 Tag', 'text'),
    ('meta_title', 'Meta Title', 'text'),
    ('meta_description', 'Meta Description', 'textarea'),
    ('meta_keywords', 'Meta Keywords', 'tags'),
    ('canonical_url', 'Canonical URL', 'text'),
    ('schema_markup', 'Schema Markup', 'textarea'),
    ('schema_markup_faq', 'FAQ Markup', 'textarea'),
    ('og_title', 'OG Title', 'text'),
    ('og_description', 'OG Description', 'textarea'),
    ('og_image', 'OG Image', 'text'),
    ('twitter_card', 'Twitter Card', 'text'),
    ('language', 'Language', 'text'),
)
PAGE_CONTENT_SLOTS = tuple(f'page_content_{index}' for index in range(1, 6))


def meta_input_name(key):
    return f'meta[{key}]'


class _BaseForm(FlaskForm):
    class Meta:
        csrf = False


_slug_validator = Regexp(
    r"^[a-z0-9-]*$",
    message="Slug can only contain lowercase letters, numbers, and hyphens.",
)
_email_validator = Regexp(EMAIL_RE, message="Please provide a valid email address.")


class SignInForm(_BaseForm):
    email = StringField('Email', validators=[DataRequired(message='Email is required'), _email_validator, Length(max=254)])
    password = PasswordField('Password', validators=[DataRequired(message='Password is required')])


class PageForm(_BaseForm):
    title = StringField('Title', validators=[DataRequired(), Length(max=255)])
    slug = StringField('Slug', validators=[Optional(), Length(max=255), _slug_validator])
    parent_id = SelectField('Parent Page', choices=[('', 'No Parent')], default='', validate_choice=False)
    menu_order = IntegerField('Menu Order', validators=[Optional(), NumberRange(min=0)])
    is_active = BooleanField('Is Active')
    seo_status = BooleanField('SEO Status')

    def set_parent_choices(self, parents, exclude_id=None):
        choices = [('', 'No Parent')]
        for parent in parents:
            if not isinstance(parent, dict) or parent.get('id') is None:
                continue
            if exclude_id is not None and str(parent['id']) == str(exclude_id):
                continue
            choices.append((str(parent['id']), str(parent.get('title') or parent['id'])))
        self.parent_id.choices = choices


def meta_values_from_form(form_data):
    values = {}
    for key, _label, _kind in META_FIELDS:
        values[key] = (form_data.get(meta_input_name(key)) or '').strip()
    for key in PAGE_CONTENT_SLOTS:
        values[key] = form_data.get(meta_input_name(key)) or ''
    values['meta_keywords'] = join_keywords(split_keywords(values['meta_keywords']))
    return values


def meta_values_from_page(page):
    meta = page.get('meta') if isinstance(page, dict) else None
    meta = meta if isinstance(meta, dict) else {}
    values = {}
    for key, _label, _kind in META_FIELDS:
        values[key] = meta.get(key) or ''
    for key in PAGE_CONTENT_SLOTS:
        values[key] = meta.get(key) or ''
    return values


def build_page_payload(form, meta_values, page_type):
    title = (form.title.data or '').strip()
    slug = (form.slug.data or '').strip() or slugify(title)
    parent_id = form.parent_id.data
    return {
        'title': title,
        'slug': slug,
        'parent_id': int(parent_id) if parent_id and str(parent_id).isdigit() else None,
        'menu_order': form.menu_order.data if form.menu_order.data is not None else None,
        'is_active': 1 if form.is_active.data else 0,
        'seo_status': 1 if form.seo_status.data else 0,
        'page_type': page_type,
        'meta': dict(meta_values),
    }


def page_form_data(page):
    """Flatten a backend page record into form defaults."""
    page = page if isinstance(page, dict) else {}
    parent_id = page.get('parent_id')
    return {
        'title': page.get('title') or '',
        'slug': page.get('slug') or '',
        'parent_id': str(parent_id) if parent_id is not None else '',
        'menu_order': page.get('menu_order'),
        'is_active': bool(page.get('is_active')),
        'seo_status': bool(page.get('seo_status')),
    }


class UserForm(_BaseForm):
    name = StringField('Name', validators=[DataRequired(), Length(max=120)])
    email = StringField('Email', validators=[DataRequired(), _email_validator, Length(max=254)])
    roles = StringField('Roles', validators=[Optional(), Length(max=255)])
    password = PasswordField('Password', validators=[Optional(), Length(min=8, max=128)])
    password_confirmation = PasswordField(
        'Confirm Password',
        validators=[Optional(), EqualTo('password', message='Passwords must match.')],
    )

    def profile_payload(self):
        return {
            'name': (self.name.data or '').strip(),
            'email': (self.email.data or '').strip(),
            'roles': split_keywords(self.roles.data),
        }


class PasswordForm(_BaseForm):
    password = PasswordField('Password', validators=[DataRequired(), Length(min=8, max=128)])
    password_confirmation = PasswordField(
        'Confirm Password',
        validators=[DataRequired(), EqualTo('password', message='Passwords must match.')],
    )


class FilterForm(_BaseForm):
    title = StringField('Title', validators=[Optional(), Length(max=255)])
    slug = StringField('Slug', validators=[Optional(), Length(max=255)])
    is_active = SelectField('Active', choices=[('', 'All'), ('1', 'Active'), ('0', 'Inactive')], default='')
    seo_status = SelectField('SEO Status', choices=[('', 'All'), ('1', 'On'), ('0', 'Off')], default='')
    parent_id = SelectField('Parent', choices=[('', 'All')], default='', validate_choice=False)

    def filters(self):
        return {
            'title': (self.title.data or '').strip(),
            'slug': (self.slug.data or '').strip(),
            'is_active': self.is_active.data or '',
            'seo_status': self.seo_status.data or '',
            'parent_id': self.parent_id.data or '',
        }

    def active_count(self):
        return sum(1 for value in self.filters().values() if value)
