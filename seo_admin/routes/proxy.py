"""Same-origin passthrough to the backend for browser scripts.

Status and body come back unchanged, errors included. Nothing is retried or
cached; a transport failure answers 500 with ``{"message": ...}``.
"""
import json

import requests
from flask import Blueprint, Response, current_app, jsonify, request

from ..auth import current_session
from ..backend import get_backend

proxy_bp = Blueprint('proxy', __name__)


def upstream_url(api_path, query_string=b''):
    url = get_backend().url_for('/' + api_path.lstrip('/'))
    if query_string:
        url = f"{url}?{query_string.decode('utf-8', 'replace')}"
    return url.replace("'", '')


def unwrap_payload(body):
    """``{"payload": x}`` becomes ``x``; a string payload is JSON-decoded."""
    payload = body.get('payload') if isinstance(body, dict) else None
    if isinstance(payload, str):
        return json.loads(payload)
    return payload


def _relay(upstream):
    body = upstream.content
    if not body and upstream.status_code >= 400:
        body = json.dumps({'message': upstream.reason or 'Backend error'}).encode('utf-8')
    return Response(
        body,
        status=upstream.status_code,
        content_type=upstream.headers.get('Content-Type') or 'application/json',
    )


def _forward(method, url, **kwargs):
    client = get_backend()
    extra = kwargs.pop('headers', None)
    try:
        upstream = client.session.request(
            method,
            url,
            headers=client.headers(current_session(), extra),
            timeout=client.timeout,
            **kwargs,
        )
    except requests.RequestException as exc:
        current_app.logger.error('Proxy request failed: %s %s (%s)', method, url, exc)
        return jsonify({'message': str(exc) or 'Internal Server Error'}), 500
    if upstream.status_code >= 400:
        current_app.logger.error(
            'Proxy backend error: %s %s -> %s %s',
            method,
            url,
            upstream.status_code,
            upstream.text[:2000],
        )
    return _relay(upstream)


class SizedStream:
    """Request body stream that reports its length, so ``requests`` sends ``Content-Length`` instead of chunking."""

    def __init__(self, stream, length):
        self.stream = stream
        self.length = length

    def __len__(self):
        return self.length

    def read(self, size=-1):
        return self.stream.read(size)

    def __iter__(self):
        return iter(lambda: self.read(8192), b'')


@proxy_bp.route('/get/<path:api_path>', methods=['GET'])
def proxy_get(api_path):
    return _forward('GET', upstream_url(api_path, request.query_string))


@proxy_bp.route('/post/<path:api_path>', methods=['POST'])
def proxy_post(api_path):
    body = request.get_json(silent=True)
    try:
        payload = unwrap_payload(body)
    except (ValueError, RecursionError):
        return jsonify({'message': 'Payload is not valid JSON.'}), 400
    return _forward('POST', upstream_url(api_path), json=payload)


@proxy_bp.route('/formPost/<path:api_path>', methods=['POST'])
def proxy_form_post(api_path):
    headers = {}
    if request.content_type:
        headers['Content-Type'] = request.content_type
    # The multipart body is streamed through untouched; without a known length it goes chunked.
    body = request.stream
    if request.content_length is not None:
        body = SizedStream(body, request.content_length)
    return _forward('POST', upstream_url(api_path), data=body, headers=headers)
