import json

import pytest
import requests

from fasten.gateways.data_gateway import (
    AuthenticationFailed,
    GatewayError,
    MalformedResponse,
    NetworkFailure,
    ServerRejected,
)
from fasten.gateways.factory import get_gateway, resolve_domain
from fasten.gateways.fasten_api_gateway import FastenApiGateway, normalize_domain
from fasten.services.storage import ClientPreferences, MemoryKeyValueStore


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text='', content_type='application/json'):
        self.status_code = status_code
        self._payload = payload
        self.text = text if payload is None else json.dumps(payload)
        self.headers = {'content-type': content_type}

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError('no json')
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = dict(responses)
        self.posts = []
        self.gets = []

    def post(self, url, json=None, headers=None, timeout=None, verify=None, allow_redirects=True):
        self.posts.append({'url': url, 'json': json, 'headers': headers, 'allow_redirects': allow_redirects})
        path = url.split('example.org', 1)[1]
        resp = self.responses.get(path)
        if isinstance(resp, Exception):
            raise resp
        return resp or FakeResponse(404, {'message': 'not found'})

    def get(self, url, headers=None, timeout=None, verify=None):
        self.gets.append({'url': url, 'timeout': timeout, 'verify': verify})
        resp = self.responses.get('GET ' + url)
        if isinstance(resp, Exception):
            raise resp
        return resp or FakeResponse(200, text='<html></html>', content_type='text/html')


def _gateway(responses):
    session = FakeSession(responses)
    return FastenApiGateway('fasten.example.org', session=session, timeout=5, verify=True), session


def test_normalize_domain():
    assert normalize_domain('fasten.example.org/') == 'https://fasten.example.org'
    assert normalize_domain('http://localhost:9090') == 'http://localhost:9090'
    with pytest.raises(GatewayError):
        normalize_domain('   ')


def test_query_body_and_auth_header():
    gw, session = _gateway({'/api/secure/query': FakeResponse(200, {'data': []})})
    resp = gw.query('Observation', 'tok')
    assert resp.ok
    sent = session.posts[0]
    assert sent['url'] == 'https://fasten.example.org/api/secure/query'
    assert sent['json'] == {'from': 'Observation', 'select': ['*'], 'where': {}}
    assert sent['headers']['Authorization'] == 'Bearer tok'
    gw.query('Observation', 'tok', limit=10)
    assert session.posts[1]['json']['limit'] == 10


def test_query_401_and_non_json_bodies():
    gw, _ = _gateway({'/api/secure/query': FakeResponse(401, {'message': 'expired'})})
    assert gw.query('Condition', 'tok').status_code == 401

    gw, _ = _gateway({'/api/secure/query': FakeResponse(200, text='<html>')})
    with pytest.raises(MalformedResponse):
        gw.query('Condition', 'tok')

    gw, _ = _gateway({'/api/secure/query': FakeResponse(502, text='Bad Gateway')})
    resp = gw.query('Condition', 'tok')
    assert resp.status_code == 502
    assert resp.body == {'raw': 'Bad Gateway'}


def test_transport_errors_become_network_failure():
    gw, _ = _gateway({'/api/secure/query': requests.ConnectionError('refused')})
    with pytest.raises(NetworkFailure):
        gw.query('Condition', 'tok')


def test_sign_in_walks_endpoints_until_token():
    gw, session = _gateway({
        '/api/auth/signin': FakeResponse(302, text=''),
        '/api/auth/login': FakeResponse(200, text='<html>login</html>', content_type='text/html'),
        '/auth/login': FakeResponse(200, {'data': 'tok-123'}),
    })
    assert gw.sign_in('jane', 'pw') == 'tok-123'
    assert [p['url'].rsplit('.org', 1)[1] for p in session.posts] == [
        '/api/auth/signin', '/api/auth/login', '/auth/login']
    assert all(p['allow_redirects'] is False for p in session.posts)
    assert session.posts[0]['json'] == {'username': 'jane', 'password': 'pw'}


def test_sign_in_encodes_structured_tokens():
    gw, _ = _gateway({'/api/auth/signin': FakeResponse(200, {'token': {'jwt': 'x'}})})
    assert json.loads(gw.sign_in('jane', 'pw')) == {'jwt': 'x'}


def test_sign_in_failure():
    gw, _ = _gateway({'/api/auth/signin': FakeResponse(401, {'message': 'bad credentials'})})
    with pytest.raises(AuthenticationFailed):
        gw.sign_in('jane', 'wrong')


def test_refresh_token():
    gw, _ = _gateway({'/api/auth/refresh': FakeResponse(200, {'token': 'new'})})
    assert gw.refresh_token('old') == 'new'
    gw, _ = _gateway({'/api/auth/refresh': FakeResponse(401, {'message': 'no'})})
    assert gw.refresh_token('old') is None


def test_register_surfaces_server_message():
    gw, _ = _gateway({'/auth/register': FakeResponse(400, {'message': 'Username taken'})})
    with pytest.raises(ServerRejected, match='Username taken') as exc:
        gw.register('jane', 'pw', 'jane@example.org')
    assert exc.value.status_code == 400


def test_factory_prefers_stored_domain(monkeypatch):
    prefs = ClientPreferences(MemoryKeyValueStore())
    monkeypatch.delenv('FASTEN_DOMAIN', raising=False)
    assert resolve_domain(prefs) is None
    with pytest.raises(GatewayError):
        get_gateway(prefs)
    monkeypatch.setenv('FASTEN_DOMAIN', 'env.example.org')
    assert resolve_domain(prefs) == 'https://env.example.org'
    prefs.change_domain('https://stored.example.org')
    assert get_gateway(prefs).domain == 'https://stored.example.org'


def test_check_reachable_accepts_any_http_answer():
    gw, session = _gateway({'GET https://fasten.example.org': FakeResponse(404, {'message': 'no root'})})
    assert gw.check_reachable() == 404
    assert session.gets == [{'url': 'https://fasten.example.org', 'timeout': 5, 'verify': True}]


def test_check_reachable_raises_on_transport_error():
    gw, _ = _gateway({'GET https://fasten.example.org': requests.ConnectionError('no route')})
    with pytest.raises(NetworkFailure, match='not reachable'):
        gw.check_reachable()
