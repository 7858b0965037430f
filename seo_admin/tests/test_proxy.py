import json

import requests
from conftest import BACKEND_URL, DOMAIN_KEY, build_test_app, sign_in_cookies
from requests.adapters import BaseAdapter


def test_get_forwards_query_and_credentials(client, backend):
    backend.add('GET', '/seo-pages', {'status': True, 'data': {'data': []}})
    sign_in_cookies(client, token='tok-1')

    response = client.get("/api/get/seo-pages'?page=2&title=a")

    assert response.status_code == 200
    assert response.get_json() == {'status': True, 'data': {'data': []}}
    call = backend.calls[0]
    assert call.url == 'https://backend.test/api/seo-pages?page=2&title=a'
    assert call.headers['Authorization'] == 'Bearer tok-1'
    assert call.headers['domainkey'] == DOMAIN_KEY


def test_get_without_cookie_sends_no_bearer(client, backend):
    backend.add('GET', '/dashboard-data', {'status': True})
    client.get('/api/get/dashboard-data')
    assert 'Authorization' not in backend.calls[0].headers


def test_backend_errors_pass_through(client, backend):
    backend.add('GET', '/users/99', {'message': 'User not found'}, status=404)
    response = client.get('/api/get/users/99')
    assert response.status_code == 404
    assert response.get_json() == {'message': 'User not found'}


def test_transport_failure_answers_500(client, backend):
    backend.add('GET', '/users', error=requests.ConnectionError('connection refused'))
    response = client.get('/api/get/users')
    assert response.status_code == 500
    assert 'connection refused' in response.get_json()['message']


def test_post_unwraps_payload_without_csrf(client, backend):
    backend.add('POST', '/seo-pages', {'status': True, 'data': {'id': 3}}, status=201)
    sign_in_cookies(client)

    response = client.post('/api/post/seo-pages', json={'payload': {'title': 'New'}})

    assert response.status_code == 201
    assert backend.calls[0].json == {'title': 'New'}


def test_post_decodes_string_payload(client, backend):
    backend.add('POST', '/users', {'status': True})
    client.post('/api/post/users', json={'payload': json.dumps({'name': 'Jane'})})
    assert backend.calls[0].json == {'name': 'Jane'}


def test_post_rejects_broken_string_payload(client, backend):
    response = client.post('/api/post/users', json={'payload': '{nope'})
    assert response.status_code == 400
    assert backend.calls == []


def test_post_rejects_overly_nested_string_payload(client, backend):
    response = client.post('/api/post/users', json={'payload': '[' * 100000 + ']' * 100000})
    assert response.status_code == 400
    assert backend.calls == []


def test_form_post_streams_body_with_original_content_type(client, backend):
    backend.add('POST', '/components/herosection/page/4', {'status': True, 'data': {'id': 1}})
    body = (
        b'--XyZ\r\n'
        b'Content-Disposition: form-data; name="title"\r\n\r\n'
        b'Hero\r\n'
        b'--XyZ--\r\n'
    )

    response = client.post(
        '/api/formPost/components/herosection/page/4',
        data=body,
        content_type='multipart/form-data; boundary=XyZ',
    )

    assert response.status_code == 200
    call = backend.calls[0]
    assert call.kwargs['data'] == body
    assert call.headers['Content-Type'] == 'multipart/form-data; boundary=XyZ'
    assert 'Content-Length' not in call.headers


class RecordingAdapter(BaseAdapter):
    def __init__(self):
        super().__init__()
        self.sent = []

    def send(self, request, **kwargs):
        body = request.body.read() if hasattr(request.body, 'read') else request.body
        self.sent.append((request, body))
        response = requests.Response()
        response.status_code = 200
        response.headers['Content-Type'] = 'application/json'
        response._content = b'{"status": true}'
        response.request = request
        response.url = request.url
        return response

    def close(self):
        pass


def test_form_post_sends_a_single_length_header(monkeypatch):
    adapter = RecordingAdapter()
    session = requests.Session()
    session.mount(BACKEND_URL, adapter)
    client = build_test_app(monkeypatch, session=session).test_client()
    body = (
        b'--XyZ\r\n'
        b'Content-Disposition: form-data; name="image"; filename="a.png"\r\n'
        b'Content-Type: image/png\r\n\r\n'
        b'\x89PNG\r\n'
        b'--XyZ--\r\n'
    )

    response = client.post(
        '/api/formPost/components/herosection/page/4',
        data=body,
        content_type='multipart/form-data; boundary=XyZ',
    )

    assert response.status_code == 200
    prepared, sent = adapter.sent[0]
    assert prepared.headers['Content-Length'] == str(len(body))
    assert 'Transfer-Encoding' not in prepared.headers
    assert prepared.headers['Content-Type'] == 'multipart/form-data; boundary=XyZ'
    assert sent == body
