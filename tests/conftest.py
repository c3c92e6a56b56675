import json as _json
from typing import Any, List, Optional

import pytest
import requests


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, text: Optional[str] = None, reason: str = ''):
        self.status_code = status_code
        self._body = body
        if text is None:
            text = '' if body is None else _json.dumps(body)
        self.text = text
        self.content = text.encode('utf-8')
        self.reason = reason

    def json(self):
        if self._body is None:
            raise ValueError('No JSON body')
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} Error', response=self)


class FakeHttp:
    """Records outbound calls; replays queued responses (or raises queued exceptions)."""

    def __init__(self):
        self.calls: List[dict] = []
        self.token_calls: List[dict] = []
        self.responses: List[Any] = []
        self.token_responses: List[Any] = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def queue_token(self, *responses):
        self.token_responses.extend(responses)

    @staticmethod
    def _next(pending: List[Any], fallback):
        item = pending.pop(0) if pending else fallback
        if isinstance(item, Exception):
            raise item
        return item

    def request(self, method, url, params=None, json=None, headers=None, timeout=None, verify=None):
        self.calls.append({
            'method': method, 'url': url, 'params': params, 'json': json,
            'headers': dict(headers or {}), 'timeout': timeout, 'verify': verify,
        })
        return self._next(self.responses, FakeResponse(200, {}))

    def post(self, url, data=None, headers=None, timeout=None, verify=None):
        self.token_calls.append({'url': url, 'data': dict(data or {}), 'headers': dict(headers or {})})
        return self._next(self.token_responses, FakeResponse(200, {'access_token': 'T', 'expires_in': 3600}))


@pytest.fixture()
def fake_http(monkeypatch):
    fake = FakeHttp()
    monkeypatch.setattr(requests, 'request', fake.request)
    monkeypatch.setattr(requests, 'post', fake.post)
    return fake


@pytest.fixture()
def app(monkeypatch):
    # Force fakeredis to simplify unit tests
    monkeypatch.setenv('USE_FAKEREDIS', '1')
    monkeypatch.delenv('FHIR_DEFAULT_SERVER', raising=False)
    monkeypatch.setenv('FHIR_TREE_EXPANDED', '1')
    from fhir_browser import create_app
    app = create_app()
    app.config.update({'TESTING': True})
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def get_csrf(client) -> Optional[str]:
    # Prime session and cookie
    client.get('/healthz')
    cookie = client.get_cookie('csrf_token')
    return cookie.value if cookie is not None else None


@pytest.fixture()
def csrf(client):
    token = get_csrf(client)
    assert token
    return token
