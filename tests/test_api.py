"""HTTP surface: envelopes, authentication, roles and tenant selection."""

import sqlalchemy as sa

from flowiq import auth, tenants
from flowiq.models import AuditLog


def test_health_and_request_id(api_client):
    resp = api_client.get('/health', headers={'X-Request-ID': 'trace-123'})
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['db'] is True
    assert resp.headers['X-Request-ID'] == 'trace-123'

    generated = api_client.get('/health').headers['X-Request-ID']
    assert len(generated) == 32


def test_metrics_endpoint_is_public(api_client):
    api_client.get('/health')
    resp = api_client.get('/metrics')
    assert resp.status_code == 200
    assert 'flowiq_http_requests_total' in resp.text


def test_unauthenticated_requests_are_rejected(api_client):
    resp = api_client.get('/api/patients')
    assert resp.status_code == 401
    assert resp.json() == {
        'success': False,
        'error': {'code': 'authentication_failed', 'message': 'Not authenticated'},
    }

    resp = api_client.get('/api/patients', headers={'Authorization': 'Bearer not-a-jwt'})
    assert resp.status_code == 401


def test_unknown_route_uses_error_envelope(api_client):
    resp = api_client.get('/api/nowhere')
    assert resp.status_code == 404
    assert resp.json()['success'] is False
    assert resp.json()['error']['code'] == 404


def test_request_validation_envelope(api_client, provider, headers_for):
    resp = api_client.post('/api/appointments', json={}, headers=headers_for(provider))
    assert resp.status_code == 422
    error = resp.json()['error']
    assert error['code'] == 'validation_error'
    assert 'patientId' in error['message']
    assert isinstance(error['details'], list)


def test_login_returns_token(api_client, provider):
    resp = api_client.post('/api/auth/login', json={'username': 'DR.LEE', 'password': 'correct-horse'})
    assert resp.status_code == 200
    data = resp.json()['data']
    assert data['tokenType'] == 'bearer'
    assert data['user']['username'] == 'dr.lee'

    me = api_client.get('/api/auth/me', headers={'Authorization': f"Bearer {data['accessToken']}"})
    assert me.json()['data']['id'] == provider.id


def test_login_lockout_survives_the_failed_request(api_client, provider, in_memory_db):
    for _ in range(auth.LOCKOUT_THRESHOLD):
        resp = api_client.post('/api/auth/login', json={'username': 'dr.lee', 'password': 'wrong'})
        assert resp.status_code == 401

    resp = api_client.post('/api/auth/login', json={'username': 'dr.lee', 'password': 'correct-horse'})
    assert resp.status_code == 423
    assert resp.json()['error']['code'] == 'account_locked'
    assert 'lockedUntil' in resp.json()['error']['details']

    with in_memory_db.make_session() as session:
        actions = list(session.scalars(sa.select(AuditLog.action).where(AuditLog.user_id == provider.id)))
    assert actions.count('login_failed') == auth.LOCKOUT_THRESHOLD
    assert actions.count('account_locked') == 1


def test_role_checks(api_client, make_user, practice_admin, patient, headers_for):
    biller = make_user('biller', 'billing')
    resp = api_client.post('/api/notes', json={'patientId': patient.id}, headers=headers_for(biller))
    assert resp.status_code == 403
    assert resp.json()['error']['code'] == 'forbidden'

    assert api_client.get('/api/tenants', headers=headers_for(practice_admin)).status_code == 403
    assert api_client.get('/api/claims', headers=headers_for(biller)).status_code == 200


def test_practice_admin_registers_into_own_tenant(api_client, practice_admin, tenant, headers_for):
    resp = api_client.post(
        '/api/auth/register',
        json={'username': 'Front.Desk', 'password': 'long-enough-pw', 'role': 'staff', 'tenantId': 'elsewhere'},
        headers=headers_for(practice_admin),
    )
    assert resp.status_code == 201
    data = resp.json()['data']
    assert data['username'] == 'front.desk'
    assert data['tenantId'] == tenant.id
    assert 'password' not in data and 'passwordHash' not in data

    resp = api_client.post(
        '/api/auth/register',
        json={'username': 'sneaky', 'password': 'long-enough-pw', 'role': 'admin'},
        headers=headers_for(practice_admin),
    )
    assert resp.status_code == 403


def test_admin_selects_tenant_by_header(api_client, make_user, tenant, patient, headers_for):
    admin = make_user('root', role='admin')
    headers = headers_for(admin)

    resp = api_client.get('/api/patients', headers=headers)
    assert resp.status_code == 422
    assert 'X-Tenant-ID' in resp.json()['error']['message']

    resp = api_client.get('/api/patients', headers={**headers, 'X-Tenant-ID': tenant.id})
    assert [p['firstName'] for p in resp.json()['data']] == ['Maria']

    # without a tenant header admins see platform-wide audit data
    assert api_client.get('/api/audit', headers=headers).status_code == 200
    assert api_client.get('/api/hipaa/metrics', headers=headers).status_code == 200


def test_deactivated_practice_loses_access(api_client, provider, tenant, make_user, db_session, headers_for):
    headers = headers_for(provider)
    assert api_client.get('/api/patients', headers=headers).status_code == 200

    tenants.deactivate_tenant(db_session, tenant.id)
    db_session.commit()

    resp = api_client.get('/api/patients', headers=headers)
    assert resp.status_code == 401
    assert resp.json()['error']['code'] == 'authentication_failed'
    login = api_client.post('/api/auth/login', json={'username': 'dr.lee', 'password': 'correct-horse'})
    assert login.status_code == 401

    admin_headers = headers_for(make_user('root', role='admin'))
    for selected in (tenant.id, 'no-such-tenant'):
        resp = api_client.get('/api/patients', headers={**admin_headers, 'X-Tenant-ID': selected})
        assert resp.status_code == 404
        assert resp.json()['error']['code'] == 'not_found'


def test_admin_manages_tenants(api_client, make_user, headers_for):
    admin = make_user('root', role='admin')
    headers = headers_for(admin)
    resp = api_client.post('/api/tenants', json={'name': 'Bright Smiles', 'subdomain': 'Bright'}, headers=headers)
    assert resp.status_code == 201
    created = resp.json()['data']
    assert created['subdomain'] == 'bright'

    resp = api_client.patch(f"/api/tenants/{created['id']}", json={'primaryColor': '#112233'}, headers=headers)
    assert resp.json()['data']['primaryColor'] == '#112233'

    listed = api_client.get('/api/tenants', headers=headers).json()['data']
    assert {t['subdomain'] for t in listed} == {'spine-sleep', 'bright'}

    summary = api_client.get('/api/analytics/platform', headers=headers).json()['data']
    assert summary['totalTenants'] == 2


def test_hipaa_endpoints(api_client, provider, headers_for):
    headers = headers_for(provider)
    resp = api_client.post('/api/hipaa/classify', json={'data': {'ssn': '123-45-6789'}}, headers=headers)
    assert resp.json()['data']['sensitivityLevel'] == 'high'

    resp = api_client.post(
        '/api/hipaa/anonymize', json={'data': {'first_name': 'Maria', 'visit': 'follow-up'}}, headers=headers
    )
    data = resp.json()['data']
    assert data['tokenCount'] == 1
    assert 'tokenMap' not in data
    assert data['data']['first_name'] != 'Maria'
    assert data['data']['visit'] == 'follow-up'


def test_compliance_alerts_endpoint(api_client, practice_admin, provider, headers_for):
    for _ in range(auth.LOCKOUT_THRESHOLD):
        api_client.post('/api/auth/login', json={'username': 'dr.lee', 'password': 'wrong'})

    assert api_client.get('/api/hipaa/alerts', headers=headers_for(provider)).status_code == 403
    resp = api_client.get('/api/hipaa/alerts', headers=headers_for(practice_admin))
    assert resp.status_code == 200
    alerts = resp.json()['data']
    assert [alert['type'] for alert in alerts] == ['account_lockout']
    assert alerts[0]['severity'] == 'high'
