"""Normalisation of content-section payloads returned by the backend.

Section endpoints answer in several shapes depending on their age: a direct
object, an array, a JSON-encoded string of either, wrapped once in
``{"data": ...}`` and sometimes again in ``{"content": ...}``. Everything in
here turns those into one canonical structure per section type plus the
numeric section id used for later updates. Nothing in this module raises on
malformed input; a field of the wrong type falls back to its empty default.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

WHY_CHOOSE = 'whychoose'
ABOUT_US = 'aboutus'
SERVICES = 'services'
FAQ = 'faq'
HERO_SECTION = 'herosection'
SERVICES_BACKGROUND = 'servicesbg'
TRANSPARENT_PRICING = 'transparentpricing'

SERVICE_ROW_FIELDS = ('title', 'description')
FAQ_ROW_FIELDS = ('question', 'answer')


def _js_truthy(value):
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ''
    return True


def unwrap(raw):
    """Strip at most one ``data`` and one ``content`` envelope, then decode JSON strings.

    A string that is not valid JSON is returned as-is (a bare description,
    for example). Applying this to its own result never fails.
    """
    if raw is None:
        return None
    candidate = raw
    if isinstance(candidate, dict):
        if _js_truthy(candidate.get('data')):
            candidate = candidate['data']
        if isinstance(candidate, dict) and _js_truthy(candidate.get('content')):
            candidate = candidate['content']
    if isinstance(candidate, str):
        try:
            return json.loads(candidate)
        except (ValueError, RecursionError):
            return candidate
    return candidate


@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class Single:
    entry: Any


@dataclass(frozen=True)
class Many:
    entries: Tuple[Any, ...]


ABSENT = Absent()


def resolve_shape(value):
    """Classify an unwrapped value as ``Absent``, ``Single`` or ``Many``."""
    if value is None:
        return ABSENT
    if isinstance(value, str):
        if not value.strip():
            return ABSENT
        try:
            parsed = json.loads(value)
        except (ValueError, RecursionError):
            return Single(value)
        if isinstance(parsed, (dict, list)):
            return resolve_shape(parsed)
        return Single(value)
    if isinstance(value, list):
        return Many(tuple(value)) if value else ABSENT
    if isinstance(value, dict):
        nested = value.get('data')
        if isinstance(nested, list):
            return Many(tuple(nested)) if nested else ABSENT
        return Single(value)
    return ABSENT


def first_entry(shape):
    # The first element is authoritative for single-entry sections.
    if isinstance(shape, Single):
        return shape.entry
    if isinstance(shape, Many):
        return shape.entries[0]
    return None


def section_id_of(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and value > 0:
        return value
    return None


def _text(value):
    return value if isinstance(value, str) else ''


def _row(entry, fields):
    return {name: _text(entry.get(name)) for name in fields}


def _rows(entries, fields):
    return [_row(entry, fields) for entry in entries if isinstance(entry, dict)]


def _point_text(point):
    if isinstance(point, str):
        return point
    if isinstance(point, dict) and isinstance(point.get('point'), str):
        return point['point']
    return None


@dataclass
class NormalizedSection:
    kind: str
    section_id: Optional[int] = None
    content: dict = field(default_factory=dict)

    @property
    def exists(self):
        return self.section_id is not None

    def as_raw(self):
        """Canonical dict that decodes back to this same section."""
        raw = dict(self.content)
        if self.section_id is not None:
            raw['id'] = self.section_id
        return raw


def decode_why_choose(raw):
    entry = first_entry(resolve_shape(unwrap(raw)))
    if isinstance(entry, str):
        return NormalizedSection(WHY_CHOOSE, None, {'title': entry, 'points': []})
    if not isinstance(entry, dict):
        return NormalizedSection(WHY_CHOOSE, None, {'title': '', 'points': []})
    raw_points = entry.get('points') if isinstance(entry.get('points'), list) else []
    points = [text for text in (_point_text(point) for point in raw_points) if text]
    return NormalizedSection(
        WHY_CHOOSE,
        section_id_of(entry.get('id')),
        {'title': _text(entry.get('title')), 'points': points},
    )


def decode_about_us(raw):
    entry = first_entry(resolve_shape(unwrap(raw)))
    if isinstance(entry, str):
        return NormalizedSection(ABOUT_US, None, {'description': entry, 'map_embed': ''})
    if not isinstance(entry, dict):
        return NormalizedSection(ABOUT_US, None, {'description': '', 'map_embed': ''})
    return NormalizedSection(
        ABOUT_US,
        section_id_of(entry.get('id')),
        {'description': _text(entry.get('description')), 'map_embed': _text(entry.get('map_embed'))},
    )


def _first_row_id(entries):
    for entry in entries:
        if isinstance(entry, dict):
            found = section_id_of(entry.get('id'))
            if found is not None:
                return found
    return None


def _wrapped_rows(entry, keys):
    for key in keys:
        if isinstance(entry.get(key), list):
            return entry[key]
    return None


def decode_services(raw):
    """Services are list-semantic: every row is kept, duplicates included."""
    shape = resolve_shape(unwrap(raw))
    if isinstance(shape, Many):
        return NormalizedSection(
            SERVICES,
            _first_row_id(shape.entries),
            {'items': _rows(shape.entries, SERVICE_ROW_FIELDS)},
        )
    if isinstance(shape, Single):
        entry = shape.entry
        if isinstance(entry, str):
            return NormalizedSection(SERVICES, None, {'items': [{'title': '', 'description': entry}]})
        if isinstance(entry, dict):
            wrapped = _wrapped_rows(entry, ('items', 'services'))
            if wrapped is not None:
                section_id = section_id_of(entry.get('id'))
                if section_id is None:
                    section_id = _first_row_id(wrapped)
                return NormalizedSection(SERVICES, section_id, {'items': _rows(wrapped, SERVICE_ROW_FIELDS)})
            return NormalizedSection(
                SERVICES,
                section_id_of(entry.get('id')),
                {'items': [_row(entry, SERVICE_ROW_FIELDS)]},
            )
    return NormalizedSection(SERVICES, None, {'items': []})


def decode_faq(raw):
    shape = resolve_shape(unwrap(raw))
    if isinstance(shape, Many):
        # Rows of a bare array carry their own ids, not the section's.
        return NormalizedSection(FAQ, None, {'items': _rows(shape.entries, FAQ_ROW_FIELDS)})
    if isinstance(shape, Single):
        entry = shape.entry
        if isinstance(entry, str):
            return NormalizedSection(FAQ, None, {'items': [{'question': '', 'answer': entry}]})
        if isinstance(entry, dict):
            section_id = section_id_of(entry.get('id'))
            wrapped = _wrapped_rows(entry, ('faqs', 'items'))
            if wrapped is not None:
                return NormalizedSection(FAQ, section_id, {'items': _rows(wrapped, FAQ_ROW_FIELDS)})
            row = _row(entry, FAQ_ROW_FIELDS)
            items = [row] if (row['question'] or row['answer']) else []
            return NormalizedSection(FAQ, section_id, {'items': items})
    return NormalizedSection(FAQ, None, {'items': []})


def _decode_flat(kind, fields):
    def decode(raw):
        entry = first_entry(resolve_shape(unwrap(raw)))
        if not isinstance(entry, dict):
            return NormalizedSection(kind, None, {name: '' for name in fields})
        return NormalizedSection(kind, section_id_of(entry.get('id')), _row(entry, fields))

    decode.__name__ = f'decode_{kind}'
    return decode


decode_hero_section = _decode_flat(HERO_SECTION, ('title', 'sub_title', 'image'))
decode_services_background = _decode_flat(SERVICES_BACKGROUND, ('image',))
decode_transparent_pricing = _decode_flat(TRANSPARENT_PRICING, ('title', 'description', 'button_text', 'link'))

DECODERS = {
    WHY_CHOOSE: decode_why_choose,
    ABOUT_US: decode_about_us,
    SERVICES: decode_services,
    FAQ: decode_faq,
    HERO_SECTION: decode_hero_section,
    SERVICES_BACKGROUND: decode_services_background,
    TRANSPARENT_PRICING: decode_transparent_pricing,
}


def normalize(kind, raw):
    return DECODERS[kind](raw)


def renormalize(section):
    return normalize(section.kind, section.as_raw())


def page_from_response(body):
    """Pull the page record out of a page GET (``data``, legacy ``page`` or flat)."""
    if not isinstance(body, dict):
        return {}
    for key in ('data', 'page'):
        candidate = body.get(key)
        if isinstance(candidate, dict):
            return candidate
    return body
