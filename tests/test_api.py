import json
from typing import Optional

import pytest

from fasten import create_app
from fasten.gateways.data_gateway import AuthenticationFailed, NetworkFailure, QueryResponse, ServerRejected
from fasten.services.storage import MemoryKeyValueStore


class FakeGateway:
    def __init__(self):
        self.sign_in_error = None
        self.unreachable = False
        self.register_error = None
        self.queries = []

    def query(self, resource_kind, token, *, limit=None):
        self.queries.append(resource_kind)
        if resource_kind == 'Patient':
            return QueryResponse(200, {'resourceType': 'Bundle', 'entry': [
                {'resource': {'resourceType': 'Patient', 'id': 'p1', 'name': [{'text': 'Jane Doe'}]}},
                {'resource': {'resourceType': 'Patient', 'id': 'p2', 'name': [{'text': 'Jimmy Doe'}]}},
            ]})
        if resource_kind == 'Observation':
            return QueryResponse(200, {'results': [{
                'resourceType': 'Observation', 'id': 'o1',
                'category': [{'coding': [{'code': 'vital-signs'}]}],
                'code': {'coding': [{'code': '8867-4', 'display': 'Heart rate'}]},
                'valueQuantity': {'value': 64, 'unit': 'bpm'},
                'effectiveDateTime': '2024-04-01T08:00:00Z',
                'subject': {'reference': 'Patient/p1'},
            }]})
        return QueryResponse(200, {'data': []})

    def check_reachable(self):
        if self.unreachable:
            raise NetworkFailure('Server https://down.example.org is not reachable')
        return 200

    def refresh_token(self, token):
        return 'tok-refreshed'

    def sign_in(self, username, password):
        if self.sign_in_error:
            raise self.sign_in_error
        return 'tok-1'

    def register(self, username, password, email):
        if self.register_error:
            raise self.register_error
        return {'success': True}


def _get_csrf(client) -> Optional[str]:
    # Prime session and cookie
    client.get('/')
    cookie = client.get_cookie('csrf_token')
    return cookie.value if cookie else None


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def app(gateway):
    app = create_app(gateway_factory=lambda prefs: gateway, store=MemoryKeyValueStore())
    app.config.update({'TESTING': True})
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _post(client, url, body=None, csrf=None):
    headers = {'Content-Type': 'application/json'}
    if csrf:
        headers['X-CSRF-Token'] = csrf
    return client.post(url, data=json.dumps(body or {}), headers=headers)


def _sign_in(client):
    csrf = _get_csrf(client)
    assert _post(client, '/api/domain', {'domain': 'fasten.example.org'}, csrf).status_code == 200
    assert _post(client, '/api/login', {'username': 'jane', 'password': 'pw'}, csrf).status_code == 200
    return csrf


def test_healthz_and_security_headers(client):
    resp = client.get('/healthz')
    assert resp.status_code == 200
    assert resp.get_json()['ok'] is True
    assert resp.headers['X-Frame-Options'] == 'DENY'
    assert 'no-store' in resp.headers['Cache-Control']


def test_mutations_require_csrf(client):
    _get_csrf(client)
    resp = _post(client, '/api/domain', {'domain': 'fasten.example.org'})
    assert resp.status_code == 403


def test_domain_is_normalized_and_reported(client):
    csrf = _get_csrf(client)
    resp = _post(client, '/api/domain', {'domain': 'fasten.example.org/'}, csrf)
    assert resp.get_json()['domain'] == 'https://fasten.example.org'
    got = client.get('/api/domain').get_json()
    assert got['domain'] == 'https://fasten.example.org'
    assert 'issuedAt' in got['context']


def test_records_require_sign_in(client):
    resp = client.get('/api/records')
    assert resp.status_code == 401
    assert 'error' in resp.get_json()


def test_failed_login_is_401(client, gateway):
    gateway.sign_in_error = AuthenticationFailed('Login failed (bad credentials)')
    csrf = _get_csrf(client)
    _post(client, '/api/domain', {'domain': 'fasten.example.org'}, csrf)
    resp = _post(client, '/api/login', {'username': 'jane', 'password': 'bad'}, csrf)
    assert resp.status_code == 401


def test_patient_selection_then_records(client, gateway):
    csrf = _sign_in(client)
    first = client.get('/api/records').get_json()
    assert first['needsPatientSelection'] is True
    assert first['records'] == []
    assert [p['id'] for p in first['patients']] == ['p1', 'p2']
    assert first['context']['generation'] == first['generation']

    resp = _post(client, '/api/relationships', {'id': 'p1', 'relationship': 'self'}, csrf)
    assert resp.status_code == 200
    assert resp.get_json()['selfPatientId'] == 'p1'

    records = client.get('/api/records').get_json()
    assert records['generation'] > first['generation']
    assert [r['title'] for r in records['records']] == ['Heart rate: 64 bpm', 'Patient: Jane Doe']

    vitals = client.get('/api/records/vitals').get_json()['vitals']
    assert vitals[0]['displayName'] == 'Heart Rate'
    assert vitals[0]['formattedDate'] == 'April 1, 2024'

    cats = {c['category']: c['count'] for c in client.get('/api/records/categories').get_json()['categories']}
    assert cats['Vital Signs'] == 1

    queried = len(gateway.queries)
    client.get('/api/records?refresh=1')
    assert len(gateway.queries) > queried


def test_logout_forgets_token(client):
    csrf = _sign_in(client)
    assert _post(client, '/api/logout', {}, csrf).status_code == 200
    assert client.get('/api/records').status_code == 401


def test_token_refresh(client):
    csrf = _sign_in(client)
    resp = _post(client, '/api/token/refresh', {}, csrf)
    assert resp.status_code == 200
    assert client.application.extensions['fasten']['preferences'].auth_token == 'tok-refreshed'


def test_settings_and_chat_history(client):
    csrf = _get_csrf(client)
    resp = _post(client, '/api/settings', {'privacyMode': True, 'assistantDomain': 'ai.example.org'}, csrf)
    body = resp.get_json()
    assert body['privacyMode'] is True
    assert body['notificationsEnabled'] is True
    assert body['assistantDomain'] == 'ai.example.org'

    assert _post(client, '/api/chat/history', {'role': 'user', 'content': 'hello'}, csrf).status_code == 200
    assert _post(client, '/api/chat/history', {'role': 'robot', 'content': 'x'}, csrf).status_code == 400
    assert client.get('/api/chat/history').get_json()['messages'] == [{'role': 'user', 'content': 'hello'}]
    resp = client.delete('/api/chat/history', headers={'X-CSRF-Token': csrf})
    assert resp.status_code == 200
    assert client.get('/api/chat/history').get_json()['messages'] == []


def test_family_members(client):
    csrf = _get_csrf(client)
    assert _post(client, '/api/family', {'members': 'nope'}, csrf).status_code == 400
    members = [{'name': 'Jimmy', 'relationship': 'child'}]
    assert _post(client, '/api/family', {'members': members}, csrf).get_json()['members'] == members
    assert client.get('/api/family').get_json()['members'] == members


def test_register(client):
    csrf = _get_csrf(client)
    _post(client, '/api/domain', {'domain': 'fasten.example.org'}, csrf)
    assert _post(client, '/api/register', {'username': 'jane'}, csrf).status_code == 400
    resp = _post(client, '/api/register', {'username': 'jane', 'password': 'pw', 'email': 'j@example.org'}, csrf)
    assert resp.status_code == 200


def test_unreachable_domain_is_rejected_and_not_stored(client, gateway):
    csrf = _get_csrf(client)
    gateway.unreachable = True
    resp = _post(client, '/api/domain', {'domain': 'down.example.org'}, csrf)
    assert resp.status_code == 502
    assert 'not reachable' in resp.get_json()['error']
    assert client.get('/api/domain').get_json()['stored'] is False


def test_relabelling_self_patient_clears_records(client):
    csrf = _sign_in(client)
    _post(client, '/api/relationships', {'id': 'p1', 'relationship': 'self'}, csrf)
    before = client.get('/api/records').get_json()
    assert [r['id'] for r in before['records']] == ['o1', 'p1']

    resp = _post(client, '/api/relationships', {'id': 'p1', 'relationship': 'mother'}, csrf)
    assert resp.get_json()['selfPatientId'] is None
    assert resp.get_json()['context']['generation'] > before['generation']

    after = client.get('/api/records').get_json()
    assert after['needsPatientSelection'] is True
    assert after['records'] == []
    assert after['vitals'] == []


def test_labelling_non_self_patient_keeps_snapshot(client):
    csrf = _sign_in(client)
    _post(client, '/api/relationships', {'id': 'p1', 'relationship': 'self'}, csrf)
    before = client.get('/api/records').get_json()
    resp = _post(client, '/api/relationships', {'id': 'p2', 'relationship': 'child'}, csrf)
    assert 'generation' not in resp.get_json()['context']
    assert client.get('/api/records').get_json()['generation'] == before['generation']


def test_register_rejected_by_server_is_400(client, gateway):
    gateway.register_error = ServerRejected('Username taken', status_code=409)
    csrf = _get_csrf(client)
    _post(client, '/api/domain', {'domain': 'fasten.example.org'}, csrf)
    resp = _post(client, '/api/register', {'username': 'jane', 'password': 'pw', 'email': 'j@example.org'}, csrf)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Username taken'
