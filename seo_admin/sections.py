"""Content sections: catalogue, create-or-update state and the page editor.

Each section of a page is fetched and saved on its own through
``/components/<slug>/page/<page_id>[/<section_id>]``. The section id is not
known until the first GET (or the first create) reveals it, and at most one
row may exist per page and section type, so every section carries a small
state machine::

    UNKNOWN --fetch--> ABSENT | EXISTING(id)
    ABSENT --save--> EXISTING(id)
    EXISTING(id) --save--> EXISTING(id)
"""
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .backend import BackendError
from .normalizer import (
    ABOUT_US,
    DECODERS,
    FAQ,
    FAQ_ROW_FIELDS,
    HERO_SECTION,
    SERVICE_ROW_FIELDS,
    SERVICES,
    SERVICES_BACKGROUND,
    TRANSPARENT_PRICING,
    WHY_CHOOSE,
    NormalizedSection,
    page_from_response,
)
from .utils import clean_text, parse_positive_int, sanitize_embed, sanitize_html

PAGE_TYPE_SEO = 1
PAGE_TYPE_MANAGEMENT = 2
PAGE_TYPES = (PAGE_TYPE_SEO, PAGE_TYPE_MANAGEMENT)
REGISTRY_SESSION_KEY = 'section_ids'


@dataclass(frozen=True)
class SectionSpec:
    kind: str
    label: str
    description: str
    fields: Tuple[str, ...] = ()
    rich_text: Tuple[str, ...] = ()
    embed_fields: Tuple[str, ...] = ()
    file_field: Optional[str] = None
    points_field: Optional[str] = None
    row_fields: Tuple[str, ...] = ()
    outbound_rows_key: Optional[str] = None

    @property
    def slug(self):
        return self.kind

    @property
    def has_rows(self):
        return bool(self.row_fields)

    def decode(self, raw):
        return DECODERS[self.kind](raw)

    def row_input_name(self, row_field):
        return f'items_{row_field}'


SECTIONS = (
    SectionSpec(
        HERO_SECTION,
        'Hero Section',
        'Title, subtitle and image displayed at the top of the page.',
        fields=('title', 'sub_title'),
        file_field='image',
    ),
    SectionSpec(
        WHY_CHOOSE,
        'Manage Why Choose Us',
        'Content displayed in the Why Choose Us section.',
        fields=('title',),
        points_field='points',
    ),
    SectionSpec(
        ABOUT_US,
        'Manage About Us',
        'Content for the About Us section.',
        fields=('description', 'map_embed'),
        rich_text=('description',),
        embed_fields=('map_embed',),
    ),
    SectionSpec(
        SERVICES_BACKGROUND,
        'Service Background Image',
        'Background image used behind the Services section.',
        file_field='image',
    ),
    SectionSpec(
        SERVICES,
        'Manage Our Services',
        'Details of services offered.',
        rich_text=('description',),
        row_fields=SERVICE_ROW_FIELDS,
        outbound_rows_key='services',
    ),
    SectionSpec(
        TRANSPARENT_PRICING,
        'Manage Transparent Pricing',
        'Title, description, button text and link.',
        fields=('title', 'description', 'button_text', 'link'),
        rich_text=('description',),
    ),
    SectionSpec(
        FAQ,
        'Manage FAQ',
        'Frequently Asked Questions content.',
        rich_text=('answer',),
        row_fields=FAQ_ROW_FIELDS,
        outbound_rows_key='faqs',
    ),
)
SECTIONS_BY_KIND = {spec.kind: spec for spec in SECTIONS}
SECTIONS_BY_PAGE_TYPE = {
    PAGE_TYPE_SEO: tuple(spec.kind for spec in SECTIONS),
    PAGE_TYPE_MANAGEMENT: (WHY_CHOOSE, ABOUT_US, SERVICES, FAQ),
}


def sections_for(page_type):
    return tuple(SECTIONS_BY_KIND[kind] for kind in SECTIONS_BY_PAGE_TYPE.get(page_type, ()))


class UnknownSection(KeyError):
    pass


class NothingToSave(ValueError):
    pass


class SectionState:
    UNKNOWN = 'unknown'
    ABSENT = 'absent'
    EXISTING = 'existing'

    __slots__ = ('status', 'section_id')

    def __init__(self, status=UNKNOWN, section_id=None):
        if status == self.EXISTING and section_id is None:
            raise ValueError('An existing section needs an id.')
        self.status = status
        self.section_id = section_id if status == self.EXISTING else None

    @classmethod
    def existing(cls, section_id):
        return cls(cls.EXISTING, section_id)

    @property
    def is_existing(self):
        return self.status == self.EXISTING

    def discovered(self, section_id):
        """Result of a fetch. A known row is never forgotten in the same session."""
        if section_id is not None:
            return SectionState.existing(section_id)
        if self.is_existing:
            return self
        return SectionState(self.ABSENT)

    def saved(self, section_id=None):
        if self.is_existing:
            return self
        if section_id is not None:
            return SectionState.existing(section_id)
        return SectionState(self.ABSENT)

    def __eq__(self, other):
        return (
            isinstance(other, SectionState)
            and self.status == other.status
            and self.section_id == other.section_id
        )

    def __repr__(self):
        if self.is_existing:
            return f'SectionState(existing, {self.section_id})'
        return f'SectionState({self.status})'


class SectionRegistry:
    """Section ids known to this editing session, kept in a session mapping."""

    def __init__(self, store):
        self.store = store

    def _page_ids(self, page_id):
        return (self.store.get(REGISTRY_SESSION_KEY) or {}).get(str(page_id)) or {}

    def get(self, page_id, kind):
        known = self._page_ids(page_id).get(kind)
        if isinstance(known, int) and known > 0:
            return SectionState.existing(known)
        return SectionState()

    def remember(self, page_id, kind, state):
        if not state.is_existing:
            return
        all_ids = dict(self.store.get(REGISTRY_SESSION_KEY) or {})
        page_ids = dict(all_ids.get(str(page_id)) or {})
        if page_ids.get(kind) == state.section_id:
            return
        page_ids[kind] = state.section_id
        all_ids[str(page_id)] = page_ids
        # Reassign so the session notices the change.
        self.store[REGISTRY_SESSION_KEY] = all_ids


def _blank_row(row, fields):
    return all(not str(row.get(name) or '').strip() for name in fields)


def build_payload(spec, content, page_type):
    """Outbound body for one section save. Blank rows and points never leave."""
    payload = {}
    for name in spec.fields:
        payload[name] = content.get(name) or ''
    if spec.points_field:
        points = content.get(spec.points_field) or []
        payload[spec.points_field] = [point for point in points if isinstance(point, str) and point.strip()]
    if spec.has_rows:
        rows = content.get('items') or []
        payload[spec.outbound_rows_key] = [
            {name: row.get(name) or '' for name in spec.row_fields}
            for row in rows
            if isinstance(row, dict) and not _blank_row(row, spec.row_fields)
        ]
    payload['page_type'] = page_type
    return payload


def _clean_value(spec, name, value, max_length=100000):
    if name in spec.rich_text:
        return sanitize_html(value, max_length=max_length)
    if name in spec.embed_fields:
        return sanitize_embed(value)
    return clean_text(value, 500)


def content_from_form(spec, form):
    content = {}
    for name in spec.fields:
        content[name] = _clean_value(spec, name, form.get(name, ''))
    if spec.points_field:
        content[spec.points_field] = [clean_text(point, 500) for point in form.getlist(spec.points_field)]
    if spec.has_rows:
        columns = [form.getlist(spec.row_input_name(name)) for name in spec.row_fields]
        row_count = max((len(column) for column in columns), default=0)
        rows = []
        for index in range(row_count):
            row = {}
            for name, column in zip(spec.row_fields, columns):
                raw = column[index] if index < len(column) else ''
                row[name] = _clean_value(spec, name, raw)
            rows.append(row)
        content['items'] = rows
    return content


def save_section(client, ctx, page_id, spec, content, page_type, state, upload=None):
    """Create or update one section and return ``(new_state, section_from_response)``.

    ``EXISTING(id)`` updates ``endpoint(page, id)``; anything else creates at
    ``endpoint(page)`` and reads the new id back from the response.
    """
    payload = build_payload(spec, content, page_type)
    files = {spec.file_field: upload} if (spec.file_field and upload is not None) else None
    if state.is_existing:
        body = client.update_section(ctx, spec.slug, page_id, state.section_id, payload, files=files)
        return state, spec.decode(body)
    body = client.create_section(ctx, spec.slug, page_id, payload, files=files)
    created = spec.decode(body)
    return state.saved(created.section_id), created


@dataclass
class SectionView:
    spec: SectionSpec
    section: NormalizedSection
    state: SectionState
    loading: bool = True
    error: Optional[str] = None


@dataclass
class EditorSnapshot:
    page: dict
    sections: list = field(default_factory=list)
    page_error: Optional[str] = None

    @property
    def title(self):
        title = self.page.get('title') if isinstance(self.page, dict) else None
        return title.strip() if isinstance(title, str) else ''

    def section(self, kind):
        for view in self.sections:
            if view.spec.kind == kind:
                return view
        return None


class SectionEditor:
    """Loads every section of one page concurrently and saves them one at a time."""

    def __init__(self, client, ctx, page_id, page_type, registry, max_workers=8, log=None):
        self.client = client
        self.ctx = ctx
        self.page_id = page_id
        self.page_type = page_type
        self.registry = registry
        self.max_workers = max(1, int(max_workers))
        self.log = log or client.log
        self.specs = sections_for(page_type)
        self._snapshot = None
        self._load_lock = threading.Lock()

    def spec_for(self, kind):
        spec = SECTIONS_BY_KIND.get(kind)
        if spec is None or spec not in self.specs:
            raise UnknownSection(kind)
        return spec

    def load(self):
        with self._load_lock:
            if self._snapshot is None:
                self._snapshot = self._fetch_all()
            return self._snapshot

    def _fetch_all(self):
        views = {
            spec.kind: SectionView(spec, spec.decode(None), self.registry.get(self.page_id, spec.kind))
            for spec in self.specs
        }
        page, page_error = {}, None
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(self.specs) + 1)) as pool:
            page_future = pool.submit(self.client.get_page, self.ctx, self.page_id)
            futures = {
                pool.submit(self.client.get_section, self.ctx, spec.slug, self.page_id): spec
                for spec in self.specs
            }
            for future in as_completed(futures):
                view = views[futures[future].kind]
                try:
                    body = future.result()
                except BackendError as exc:
                    view.error = exc.message
                    self.log.warning('Section %s failed to load for page %s: %s', view.spec.kind, self.page_id, exc.message)
                else:
                    view.section = view.spec.decode(body)
                    view.state = view.state.discovered(view.section.section_id)
                    self.registry.remember(self.page_id, view.spec.kind, view.state)
                finally:
                    view.loading = False
            try:
                page = page_from_response(page_future.result())
            except BackendError as exc:
                page_error = exc.message
                self.log.warning('Page %s failed to load: %s', self.page_id, exc.message)
        return EditorSnapshot(page=page, sections=[views[spec.kind] for spec in self.specs], page_error=page_error)

    def state_for(self, kind, known_id=None):
        state = self.registry.get(self.page_id, kind)
        if not state.is_existing:
            form_id = parse_positive_int(known_id)
            if form_id is not None:
                state = SectionState.existing(form_id)
        return state

    def save(self, kind, form, files=None, known_id=None):
        """Save a single section; other sections are not touched."""
        spec = self.spec_for(kind)
        content = content_from_form(spec, form)
        upload = files.get(spec.file_field) if (files is not None and spec.file_field) else None
        if upload is not None and not getattr(upload, 'filename', ''):
            upload = None
        if spec.file_field and upload is None and not spec.fields:
            raise NothingToSave('Choose an image to upload.')
        state = self.state_for(kind, known_id)
        new_state, section = save_section(
            self.client,
            self.ctx,
            self.page_id,
            spec,
            content,
            self.page_type,
            state,
            upload=upload,
        )
        self.registry.remember(self.page_id, kind, new_state)
        return new_state, section

