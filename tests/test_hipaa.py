"""PHI classification, anonymization and AI routing tests."""

from datetime import timedelta

import pytest
import sqlalchemy as sa

from flowiq import audit, hipaa, patients
from flowiq.deid import TOKEN_RE
from flowiq.errors import RemoteFunctionError, UnknownAIServiceError
from flowiq.functions import RemoteFunctionClient
from flowiq.models import AuditLog
from flowiq.time_utils import utc_now


def test_classification_tiers():
    high = hipaa.classify_data({'ssn': '123-45-6789'})
    assert high.sensitivity_level == 'high'
    assert high.requires_encryption is True

    medium = hipaa.classify_data({'firstName': 'Maria'})
    assert medium.sensitivity_level == 'medium'
    assert medium.detected_fields == ['first_name']

    low = hipaa.classify_data({'visit_count': 3})
    assert low.contains_phi is False
    assert low.sensitivity_level == 'low'
    assert low.to_dict() == {
        'containsPhi': False,
        'sensitivityLevel': 'low',
        'detectedFields': [],
        'requiresEncryption': False,
    }


def test_anonymize_tokenizes_identifiers_and_derives_age():
    record = {
        'first_name': 'Maria',
        'last_name': 'Gonzalez',
        'dateOfBirth': '1958-04-12',
        'notes': 'Call maria@example.com before the visit',
        'visit_reason': 'back pain',
    }
    result = hipaa.anonymize_for_ai(record)
    data = result.data
    assert TOKEN_RE.fullmatch(data['first_name'])
    assert TOKEN_RE.fullmatch(data['dateOfBirth'])
    assert 'maria@example.com' not in data['notes']
    assert data['visit_reason'] == 'back pain'
    assert isinstance(data['age'], int) and data['age'] > 60
    assert 'Maria' in result.token_map.values()

    restored = hipaa.restore_phi(data, result.token_map)
    assert {k: v for k, v in restored.items() if k != 'age'} == record


def test_patient_snapshot_leaves_no_identifiers(db_session, patient):
    patient.external_id = 'EHR-55102'
    patient.address = '12 Elm Street'
    patient.city = 'Austin'
    patient.state = 'TX'
    patient.zip_code = '78701'
    patient.insurance_number = 'W123456789'
    patient.emergency_contact_name = 'Luis Gonzalez'
    snap = patients.snapshot(patient)
    record = {**snap, 'name': 'Maria Gonzalez'}

    result = hipaa.anonymize_for_ai(record)

    identifiers = {key for key in record if key in hipaa.IDENTIFIER_FIELDS and record[key]}
    assert {'external_id', 'name', 'state', 'patient_number'} <= identifiers
    for key in identifiers:
        assert TOKEN_RE.fullmatch(result.data[key]), key
        assert result.token_map[result.data[key]] == record[key]
    leaked = {record[key] for key in identifiers} & {v for v in result.data.values() if isinstance(v, str)}
    assert leaked == set()


def test_anonymize_reuses_tokens_for_repeated_values():
    result = hipaa.anonymize_for_ai({'patients': [{'first_name': 'Ann'}, {'first_name': 'Ann'}]})
    first, second = result.data['patients']
    assert first['first_name'] == second['first_name']
    assert len(result.token_map) == 1


def test_anonymize_passes_non_phi_through():
    record = {'procedure': '99213', 'units': 1}
    result = hipaa.anonymize_for_ai(record)
    assert result.data is record
    assert result.token_map == {}


def test_restore_phi_without_map_is_identity():
    payload = {'summary': '[FIRST_NAME_00000000] is well'}
    assert hipaa.restore_phi(payload, {}) is payload


def test_unknown_ai_service(db_session, tenant):
    with pytest.raises(UnknownAIServiceError):
        hipaa.route_ai_request(db_session, tenant.id, 'astrology', {}, None, 'testing')


def test_route_ai_request_audits_success(db_session, tenant, provider):
    routed = hipaa.route_ai_request(
        db_session,
        tenant.id,
        'coding-assistant',
        {'text': 'office visit for hypertension'},
        provider.id,
        'code_suggestion',
    )
    codes = {entry['code'] for entry in routed['data']['codes']}
    assert codes == {'I10', '99213'}
    assert routed['classification']['containsPhi'] is False

    entry = db_session.scalar(sa.select(AuditLog).where(AuditLog.action == 'ai_request'))
    assert entry.user_id == provider.id
    assert entry.purpose == 'code_suggestion'
    assert entry.phi_accessed is False


def test_route_ai_request_sends_tokens_only(db_session, tenant, requests_mock):
    seen = {}

    def _reply(request, context):
        seen['body'] = request.json()
        return {'summary': f"Summary for {seen['body']['patient']['first_name']}"}

    requests_mock.post('https://functions.test/functions/v1/clinical-summarizer', json=_reply)
    client = RemoteFunctionClient('https://functions.test', 'key')
    routed = hipaa.route_ai_request(
        db_session,
        tenant.id,
        'clinical-summarizer',
        {'patient': {'first_name': 'Maria', 'medical_history': 'asthma'}},
        None,
        'clinical_summary_generation',
        client=client,
    )
    assert 'Maria' not in str(seen['body'])
    assert routed['data']['summary'] == 'Summary for Maria'
    assert routed['classification']['sensitivityLevel'] == 'high'


def test_route_ai_request_failure_is_audited(db_session, tenant, requests_mock):
    requests_mock.post('https://functions.test/functions/v1/note-generator', status_code=500, text='boom')
    client = RemoteFunctionClient('https://functions.test', 'key')
    with pytest.raises(RemoteFunctionError) as excinfo:
        hipaa.route_ai_request(
            db_session, tenant.id, 'note-generator', {'first_name': 'Maria'}, None, 'note_generation', client=client
        )
    assert excinfo.value.status == 500
    entry = db_session.scalar(sa.select(AuditLog).where(AuditLog.action == 'ai_request_failed'))
    assert entry is not None
    assert entry.phi_accessed is True


def test_compliance_metrics(db_session, tenant, provider):
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='patient_viewed', phi_accessed=True)
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='login_failed')
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='account_locked')
    audit.record_audit(
        db_session,
        tenant_id=tenant.id,
        user_id=provider.id,
        action='ai_request_failed',
        new_values={'service': 'note-generator'},
    )
    audit.record_audit(db_session, tenant_id='elsewhere', user_id=None, action='login_failed')

    metrics = hipaa.get_compliance_metrics(db_session, tenant.id, days=7)
    assert metrics['periodDays'] == 7
    assert metrics['totalAuditEvents'] == 4
    assert metrics['phiAccessEvents'] == 1
    assert metrics['usersWithPhiAccess'] == 1
    assert metrics['failedLogins'] == 1
    assert metrics['accountLockouts'] == 1
    assert metrics['failedAiRequests'] == 1
    assert metrics['aiRequestsByService'] == {'note-generator': 1}
    assert metrics['complianceScore'] == 95

    assert hipaa.get_compliance_metrics(db_session, None)['totalAuditEvents'] == 5


def test_compliance_alerts_quiet_practice(db_session, tenant, provider):
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='patient_viewed', phi_accessed=True)
    assert hipaa.evaluate_compliance_alerts(db_session, tenant.id) == []


def test_compliance_alerts_flag_threshold_breaches(db_session, tenant, provider):
    now = utc_now()
    for hours_ago in (5, 3):
        entry = audit.record_audit(db_session, tenant_id=tenant.id, user_id=None, action='backup_completed')
        entry.created_at = now - timedelta(hours=hours_ago)
    for _ in range(hipaa.ALERT_PHI_ACCESS_PER_HOUR + 1):
        audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='patient_viewed', phi_accessed=True)
    for _ in range(hipaa.ALERT_FAILED_LOGINS_PER_HOUR + 1):
        audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='login_failed')
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='account_locked')
    audit.record_audit(db_session, tenant_id='elsewhere', user_id='someone', action='account_locked')
    db_session.flush()

    alerts = hipaa.evaluate_compliance_alerts(db_session, tenant.id, now=utc_now())
    by_type = {alert['type']: alert for alert in alerts}

    assert set(by_type) == {'access_violation', 'failed_logins', 'account_lockout', 'audit_gap'}
    assert by_type['access_violation']['severity'] == 'high'
    assert by_type['access_violation']['value'] == 51
    assert provider.id in by_type['access_violation']['description']
    assert by_type['failed_logins']['value'] == 11
    assert by_type['account_lockout']['value'] == 1
    assert by_type['audit_gap']['value'] >= 120
    assert all(alert['complianceStandard'] == 'HIPAA' for alert in alerts)
