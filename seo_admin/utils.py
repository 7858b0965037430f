"""Shared utility functions used across route modules."""
import re
from urllib.parse import urlparse

import bleach
from flask import current_app, request
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PAGINATION_WINDOW = 3
ALLOWED_RICH_TEXT_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u', 's', 'blockquote', 'code', 'pre',
    'ul', 'ol', 'li', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'a', 'img', 'figure', 'figcaption', 'table', 'thead', 'tbody', 'tr', 'th', 'td', 'hr', 'div', 'span'
]
ALLOWED_RICH_TEXT_ATTRIBUTES = {
    '*': ['class'],
    'a': ['href', 'title', 'target', 'rel'],
    'img': ['src', 'alt', 'title', 'width', 'height'],
}
ALLOWED_RICH_TEXT_PROTOCOLS = ['http', 'https', 'mailto']
ALLOWED_EMBED_TAGS = ['iframe']
ALLOWED_EMBED_ATTRIBUTES = {
    'iframe': ['src', 'width', 'height', 'allowfullscreen', 'loading', 'referrerpolicy', 'title', 'frameborder'],
}


def clean_text(value, max_length=255):
    return (value or '').strip()[:max_length]


def parse_int(value, default=0, min_value=None, max_value=None):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if min_value is not None and parsed < min_value:
        return min_value
    if max_value is not None and parsed > max_value:
        return max_value
    return parsed


def parse_positive_int(value):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if parsed <= 0:
        return None
    return parsed


def sanitize_html(value, max_length=100000):
    html = (value or '').strip()
    cleaned = bleach.clean(
        html,
        tags=ALLOWED_RICH_TEXT_TAGS,
        attributes=ALLOWED_RICH_TEXT_ATTRIBUTES,
        protocols=ALLOWED_RICH_TEXT_PROTOCOLS,
        strip=True,
    )
    return cleaned[:max_length]


def sanitize_embed(value, max_length=10000):
    """Keep a pasted map ``<iframe>`` and drop everything else."""
    html = (value or '').strip()
    cleaned = bleach.clean(
        html,
        tags=ALLOWED_EMBED_TAGS,
        attributes=ALLOWED_EMBED_ATTRIBUTES,
        protocols=['https'],
        strip=True,
    )
    return cleaned[:max_length]


def split_keywords(value):
    return [tag.strip() for tag in (value or '').split(',') if tag.strip()]


def join_keywords(tags):
    return ','.join(tag.strip() for tag in tags if tag and tag.strip())


def pagination_window(current_page, last_page, size=PAGINATION_WINDOW):
    """Page numbers shown around the current one (current - 1 .. current + 1, clamped)."""
    if last_page <= 1:
        return []
    start = max(1, current_page - 1)
    end = start + size - 1
    if end > last_page:
        end = last_page
        start = max(1, end - size + 1)
    return list(range(start, end + 1))


def is_local_path(target):
    if not target:
        return False
    parsed = urlparse(target)
    return not parsed.scheme and not parsed.netloc and target.startswith('/') and not target.startswith('//')


def safe_referrer_path(fallback):
    raw_referrer = (request.referrer or '').strip()
    if not raw_referrer:
        return fallback

    parsed = urlparse(raw_referrer)
    if parsed.scheme and parsed.scheme not in {'http', 'https'}:
        return fallback
    if parsed.netloc and parsed.netloc != request.host:
        return fallback

    path = parsed.path or '/'
    if not path.startswith('/'):
        return fallback

    target = path
    if parsed.query:
        target = f"{target}?{parsed.query}"
    return target


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in current_app.config['ALLOWED_EXTENSIONS']


def validate_uploaded_image(file):
    if not file or not file.filename:
        return False

    filename = secure_filename(file.filename)
    if not filename or len(filename) > 180 or not allowed_file(filename):
        return False

    extension = filename.rsplit('.', 1)[1].lower()
    mime_type = (file.mimetype or '').split(';', 1)[0].lower()
    allowed_mimes = current_app.config.get('ALLOWED_UPLOAD_MIME_TYPES', set())
    extension_allowed_mimes = {
        'png': {'image/png'},
        'jpg': {'image/jpeg'},
        'jpeg': {'image/jpeg'},
        'gif': {'image/gif'},
        'webp': {'image/webp'},
    }
    if (
        mime_type not in allowed_mimes
        or extension not in extension_allowed_mimes
        or mime_type not in extension_allowed_mimes[extension]
    ):
        return False

    max_pixels = max(1, int(current_app.config.get('MAX_UPLOAD_IMAGE_PIXELS', 40_000_000)))
    file.stream.seek(0)
    try:
        with Image.open(file.stream) as image:
            width, height = image.size
            if width < 1 or height < 1 or (width * height) > max_pixels:
                return False
            image.verify()
        return True
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return False
    finally:
        file.stream.seek(0)
