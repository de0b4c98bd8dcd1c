"""Practice dashboard, claim export and platform summary tests."""

import csv
import io
from datetime import timedelta

import pytest

from flowiq import analytics, claims, tenants
from flowiq.errors import ValidationError
from flowiq.time_utils import utc_now


def _window():
    today = utc_now().date()
    return today - timedelta(days=1), today + timedelta(days=1)


def _adjudicated_claims(session, tenant, patient):
    denied = claims.create_claim(
        session,
        tenant.id,
        {'patient_id': patient.id, 'diagnosis_codes': ['I10'], 'procedure_codes': ['99213'], 'total_amount': 300},
    )
    accepted = claims.create_claim(
        session,
        tenant.id,
        {'patient_id': patient.id, 'diagnosis_codes': ['E11.9'], 'procedure_codes': ['99214'], 'total_amount': 100},
    )
    for claim in (denied, accepted):
        claims.transition_claim(session, tenant.id, claim.id, 'submitted')
    claims.transition_claim(session, tenant.id, denied.id, 'denied', denial_reason='CO-16')
    claims.transition_claim(session, tenant.id, accepted.id, 'accepted')
    return denied, accepted


def test_tenant_analytics(db_session, tenant, patient):
    _adjudicated_claims(db_session, tenant, patient)
    start, end = _window()
    report = analytics.tenant_analytics(db_session, tenant.id, start, end)

    assert set(report) == {'period', 'patients', 'appointments', 'claims', 'payments'}
    assert report['period'] == {'start': start.isoformat(), 'end': end.isoformat()}
    assert report['patients'] == {'total': 1, 'new': 1, 'active': 0}

    claim_stats = report['claims']
    assert claim_stats['total'] == 2
    assert claim_stats['byStatus'] == {'denied': 1, 'accepted': 1}
    assert claim_stats['billed'] == 400.0
    assert claim_stats['collected'] == 0.0
    assert claim_stats['collectionRate'] == 0.0
    assert claim_stats['denialRate'] == 50.0
    assert report['payments']['totalPayments'] == 0


def test_reversed_window_rejected(db_session, tenant):
    start, end = _window()
    with pytest.raises(ValidationError):
        analytics.tenant_analytics(db_session, tenant.id, end, start)
    with pytest.raises(ValidationError):
        analytics.export_claims_csv(db_session, tenant.id, end, start)


def test_export_claims_csv(db_session, tenant, patient):
    denied, _ = _adjudicated_claims(db_session, tenant, patient)
    start, end = _window()
    text = analytics.export_claims_csv(db_session, tenant.id, start, end)

    assert text.splitlines()[0] == ','.join(analytics.CLAIM_EXPORT_FIELDS)
    rows = {row['claim_number']: row for row in csv.DictReader(io.StringIO(text))}
    assert len(rows) == 2
    row = rows[denied.claim_number]
    assert row['status'] == 'denied'
    assert row['total_amount'] == '300.00'
    assert row['diagnosis_codes'] == 'I10'
    assert row['denial_reason'] == 'CO-16'
    assert row['submitted_date'] == utc_now().date().isoformat()


def test_platform_summary(db_session, tenant, patient, provider, make_user):
    other = tenants.create_tenant(db_session, 'Bright Smiles', 'bright-smiles')
    make_user('root', role='admin')

    summary = analytics.platform_summary(db_session)
    assert summary['totalTenants'] == 2
    assert summary['activeTenants'] == 2
    assert summary['totalUsers'] == 2
    assert summary['totalPatients'] == 1

    by_name = {row['name']: row for row in summary['tenants']}
    assert [row['name'] for row in summary['tenants']] == ['Bright Smiles', 'Spine and Sleep Clinic']
    assert by_name['Bright Smiles']['id'] == other.id
    assert by_name['Bright Smiles']['patients'] == 0
    assert by_name['Spine and Sleep Clinic']['users'] == 1
    assert by_name['Spine and Sleep Clinic']['patients'] == 1
