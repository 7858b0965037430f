from io import BytesIO

import pytest
from conftest import BACKEND_URL, DOMAIN_KEY, FakeSession
from werkzeug.datastructures import FileStorage, MultiDict

from seo_admin.backend import BackendClient, BackendError
from seo_admin.cookies import SessionContext
from seo_admin.normalizer import FAQ, SERVICES, SERVICES_BACKGROUND, WHY_CHOOSE
from seo_admin.sections import (
    PAGE_TYPE_MANAGEMENT,
    PAGE_TYPE_SEO,
    REGISTRY_SESSION_KEY,
    SECTIONS_BY_KIND,
    NothingToSave,
    SectionEditor,
    SectionRegistry,
    SectionState,
    UnknownSection,
    build_payload,
    content_from_form,
    save_section,
    sections_for,
)

CTX = SessionContext(token='token-123', issued_at_ms=1, request_id='req-12345678')


@pytest.fixture()
def fake():
    return FakeSession()


@pytest.fixture()
def client(fake):
    return BackendClient(BACKEND_URL, domain_key=DOMAIN_KEY, session=fake)


def editor(client, page_id=42, page_type=PAGE_TYPE_MANAGEMENT, store=None):
    return SectionEditor(client, CTX, page_id, page_type, SectionRegistry({} if store is None else store))


def test_empty_rows_are_never_sent():
    spec = SECTIONS_BY_KIND[SERVICES]
    payload = build_payload(
        spec,
        {'items': [{'title': '', 'description': ''}, {'title': 'X', 'description': ''}]},
        PAGE_TYPE_MANAGEMENT,
    )
    assert payload == {'services': [{'title': 'X', 'description': ''}], 'page_type': PAGE_TYPE_MANAGEMENT}


def test_blank_points_are_dropped_and_page_type_always_sent():
    spec = SECTIONS_BY_KIND[WHY_CHOOSE]
    payload = build_payload(spec, {'title': 'Why us', 'points': ['Fast', '  ', '', 'Cheap']}, PAGE_TYPE_SEO)
    assert payload == {'title': 'Why us', 'points': ['Fast', 'Cheap'], 'page_type': PAGE_TYPE_SEO}


def test_content_from_form_reads_row_columns_and_sanitizes_rich_text():
    spec = SECTIONS_BY_KIND[FAQ]
    form = MultiDict([
        ('items_question', 'Q1'),
        ('items_answer', '<p>A1</p><script>alert(1)</script>'),
        ('items_question', ''),
        ('items_answer', ''),
    ])
    content = content_from_form(spec, form)
    assert content['items'][0] == {'question': 'Q1', 'answer': '<p>A1</p>alert(1)'}
    assert build_payload(spec, content, PAGE_TYPE_SEO)['faqs'] == [{'question': 'Q1', 'answer': '<p>A1</p>alert(1)'}]


def test_about_us_map_embed_keeps_only_the_iframe():
    spec = SECTIONS_BY_KIND['aboutus']
    form = MultiDict({
        'description': '<p>Hi</p>',
        'map_embed': '<div><iframe src="https://maps.example/embed" onload="x()"></iframe></div>',
    })
    content = content_from_form(spec, form)
    assert content['map_embed'] == '<iframe src="https://maps.example/embed"></iframe>'


def test_state_machine_transitions():
    unknown = SectionState()
    assert unknown.discovered(None) == SectionState(SectionState.ABSENT)
    assert unknown.discovered(5) == SectionState.existing(5)
    assert SectionState(SectionState.ABSENT).saved(8) == SectionState.existing(8)
    assert SectionState.existing(8).saved(99) == SectionState.existing(8)
    # A row seen once is not forgotten because a later fetch came back empty.
    assert SectionState.existing(8).discovered(None) == SectionState.existing(8)
    with pytest.raises(ValueError):
        SectionState(SectionState.EXISTING)


def test_registry_remembers_existing_ids_only():
    store = {}
    registry = SectionRegistry(store)
    registry.remember(42, FAQ, SectionState(SectionState.ABSENT))
    assert store == {}
    registry.remember(42, FAQ, SectionState.existing(7))
    assert store[REGISTRY_SESSION_KEY] == {'42': {FAQ: 7}}
    assert registry.get(42, FAQ) == SectionState.existing(7)
    assert registry.get(43, FAQ) == SectionState()


def test_first_save_creates_then_later_saves_update(client, fake):
    fake.add('POST', '/components/services/page/42', {'status': True, 'data': {'id': 15, 'services': []}})
    fake.add('PUT', '/components/services/page/42/15', {'status': True, 'data': {'id': 15}})
    spec = SECTIONS_BY_KIND[SERVICES]
    content = {'items': [{'title': 'S1', 'description': 'D1'}]}

    state, created = save_section(client, CTX, 42, spec, content, PAGE_TYPE_MANAGEMENT, SectionState())
    assert state == SectionState.existing(15)
    assert created.section_id == 15

    state, _ = save_section(client, CTX, 42, spec, content, PAGE_TYPE_MANAGEMENT, state)
    assert state == SectionState.existing(15)
    assert len(fake.calls_to('POST', '/components/services/page/42')) == 1
    update = fake.calls_to('PUT', '/components/services/page/42/15')
    assert len(update) == 1
    assert update[0].json == {'services': [{'title': 'S1', 'description': 'D1'}], 'page_type': PAGE_TYPE_MANAGEMENT}


def test_editor_never_creates_twice_in_one_session(client, fake):
    fake.add('POST', '/components/faq/page/42', {'status': True, 'data': {'id': 21, 'faqs': []}})
    fake.add('PUT', '/components/faq/page/42/21', {'status': True, 'data': {'id': 21, 'faqs': []}})
    store = {}
    form = MultiDict([('items_question', 'Q'), ('items_answer', 'A')])

    editor(client, store=store).save(FAQ, form)
    # A fresh editor on the same session store, as on the next request.
    state, _ = editor(client, store=store).save(FAQ, form)

    assert state == SectionState.existing(21)
    assert len(fake.calls_to('POST', '/components/faq/page/42')) == 1
    assert len(fake.calls_to('PUT', '/components/faq/page/42/21')) == 1


def test_known_id_from_form_selects_update(client, fake):
    fake.add('PUT', '/components/whychoose/page/42/3', {'status': True, 'data': {'id': 3}})
    editor(client).save(WHY_CHOOSE, MultiDict({'title': 'T', 'points': 'a'}), known_id='3')
    assert [call.method for call in fake.calls] == ['PUT']


def test_failed_save_leaves_state_untouched(client, fake):
    fake.add('POST', '/components/faq/page/42', {'message': 'Server error'}, status=500)
    store = {}
    with pytest.raises(BackendError):
        editor(client, store=store).save(FAQ, MultiDict([('items_question', 'Q'), ('items_answer', 'A')]))
    assert store == {}


def test_unknown_section_for_page_type(client):
    with pytest.raises(UnknownSection):
        editor(client, page_type=PAGE_TYPE_MANAGEMENT).save('herosection', MultiDict())


def test_background_image_without_upload_is_skipped(client, fake):
    with pytest.raises(NothingToSave):
        editor(client, page_type=PAGE_TYPE_SEO).save(SERVICES_BACKGROUND, MultiDict(), files=MultiDict())
    assert fake.calls == []


def test_hero_with_new_image_goes_multipart(client, fake):
    fake.add('POST', '/components/herosection/page/42/8', {'status': True, 'data': {'id': 8}})
    upload = FileStorage(stream=BytesIO(b'png-bytes'), filename='hero.png', content_type='image/png')
    editor(client, page_type=PAGE_TYPE_SEO).save(
        'herosection',
        MultiDict({'title': 'Hero', 'sub_title': 'Sub'}),
        files=MultiDict({'image': upload}),
        known_id='8',
    )
    call = fake.calls[0]
    assert call.method == 'POST'
    assert call.kwargs['data']['_method'] == 'PUT'
    assert call.kwargs['data']['title'] == 'Hero'
    assert call.kwargs['data']['page_type'] == str(PAGE_TYPE_SEO)
    assert call.kwargs['files']['image'][0] == 'hero.png'
    assert call.kwargs['json'] is None


def test_hero_without_new_image_keeps_remote_url(client, fake):
    fake.add('POST', '/components/herosection/page/42', {'status': True, 'data': {'id': 8}})
    empty = FileStorage(stream=BytesIO(b''), filename='', content_type='application/octet-stream')
    editor(client, page_type=PAGE_TYPE_SEO).save(
        'herosection',
        MultiDict({'title': 'Hero', 'sub_title': 'Sub'}),
        files=MultiDict({'image': empty}),
    )
    call = fake.calls[0]
    assert call.json == {'title': 'Hero', 'sub_title': 'Sub', 'page_type': PAGE_TYPE_SEO}
    assert call.kwargs['files'] is None


def test_management_page_load_fans_out_five_gets(client, fake):
    fake.add('GET', '/seo-pages/42', {'status': True, 'data': {'id': 42, 'title': 'Plumbing'}})
    fake.add('GET', '/components/whychoose/page/42', {'status': True, 'data': {'id': 2, 'title': 'Why', 'points': ['a']}})
    fake.add('GET', '/components/aboutus/page/42', {'status': True, 'data': []})
    fake.add('GET', '/components/services/page/42', {
        'status': True,
        'data': [{'id': 9, 'title': 'S1', 'description': 'D1'}, {'id': 9, 'title': 'S1', 'description': 'D1'}],
    })
    fake.add('GET', '/components/faq/page/42', {'status': True, 'data': {'id': 7, 'faqs': [{'question': 'Q1', 'answer': 'A1'}]}})
    store = {}
    page_editor = editor(client, store=store)

    snapshot = page_editor.load()

    assert len(fake.calls) == 5
    assert all(call.method == 'GET' for call in fake.calls)
    assert all(call.headers['Authorization'] == 'Bearer token-123' for call in fake.calls)
    assert all(call.headers['domainkey'] == DOMAIN_KEY for call in fake.calls)
    assert snapshot.title == 'Plumbing'
    assert [view.spec.kind for view in snapshot.sections] == [spec.kind for spec in sections_for(PAGE_TYPE_MANAGEMENT)]
    services = snapshot.section(SERVICES)
    assert services.section.content['items'] == [
        {'title': 'S1', 'description': 'D1'},
        {'title': 'S1', 'description': 'D1'},
    ]
    assert services.state == SectionState.existing(9)
    assert snapshot.section('aboutus').state == SectionState(SectionState.ABSENT)
    assert all(not view.loading for view in snapshot.sections)
    assert store[REGISTRY_SESSION_KEY]['42'] == {WHY_CHOOSE: 2, SERVICES: 9, FAQ: 7}

    assert page_editor.load() is snapshot
    assert len(fake.calls) == 5


def test_one_failed_section_does_not_affect_siblings(client, fake):
    fake.add('GET', '/seo-pages/42', {'status': True, 'data': {'id': 42, 'title': 'Plumbing'}})
    fake.add('GET', '/components/whychoose/page/42', {'status': True, 'data': {'id': 2, 'title': 'Why', 'points': []}})
    fake.add('GET', '/components/aboutus/page/42', {'message': 'Boom'}, status=500)
    fake.add('GET', '/components/services/page/42', {'status': True, 'data': []})
    fake.add('GET', '/components/faq/page/42', {'status': True, 'data': []})

    snapshot = editor(client).load()

    assert snapshot.section('aboutus').error == 'Boom'
    assert snapshot.section('aboutus').loading is False
    assert snapshot.section(WHY_CHOOSE).error is None
    assert snapshot.section(WHY_CHOOSE).state == SectionState.existing(2)
    assert snapshot.page_error is None


def test_seo_page_load_covers_all_seven_sections(client, fake):
    snapshot = editor(client, page_type=PAGE_TYPE_SEO).load()
    assert len(fake.calls) == 8
    assert len(snapshot.sections) == 7
    # Every endpoint answered 404 here; each section reports its own failure.
    assert all(view.error for view in snapshot.sections)
    assert snapshot.page_error
