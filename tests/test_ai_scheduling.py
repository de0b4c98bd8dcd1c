"""Risk scoring and AI assisted schedule tests (offline functions)."""

from datetime import date

import pytest
import sqlalchemy as sa

from flowiq import ai_scheduling, scheduling
from flowiq.errors import NotFoundError
from flowiq.models import AuditLog

MONDAY = date(2030, 3, 4)


def test_risk_levels():
    assert ai_scheduling.risk_level(85) == 'critical'
    assert ai_scheduling.risk_level(60) == 'high'
    assert ai_scheduling.risk_level(30) == 'medium'
    assert ai_scheduling.risk_level(0) == 'low'


def test_senior_with_chronic_conditions_is_critical(db_session, tenant, patient, fixed_now):
    risk = ai_scheduling.patient_risk(db_session, tenant.id, patient.id, now=fixed_now)
    # age 65+ (2) plus hypertension (3) plus diabetes (3)
    assert risk.score == 80
    assert risk.level == 'critical'
    data = risk.to_dict()
    assert 'Senior patient (65+)' in data['factors']
    assert data['recommendations'] == ai_scheduling.RISK_RECOMMENDATIONS['critical']


def test_medication_and_frequency_factors(db_session, tenant, patient, provider, fixed_now):
    patient.date_of_birth = date(1990, 1, 1)
    patient.medical_history = None
    patient.medications = 'a, b, c, d, e'
    for day in ('2030-02-10', '2030-02-20', '2030-03-01'):
        scheduling.create_appointment(
            db_session,
            tenant.id,
            {'patient_id': patient.id, 'provider_id': provider.id, 'appointment_date': day, 'start_time': '09:00'},
        )
    risk = ai_scheduling.patient_risk(db_session, tenant.id, patient.id, now=fixed_now)
    assert {f.kind for f in risk.factors} == {'medication', 'frequency'}
    assert risk.score == 40
    assert risk.level == 'medium'


def test_optimize_requires_appointments(db_session, tenant, provider):
    with pytest.raises(NotFoundError):
        ai_scheduling.optimize_provider_schedule(db_session, tenant.id, provider.id, MONDAY)


def test_optimize_orders_by_risk_and_restores_names(db_session, tenant, patient, provider):
    from flowiq import patients

    healthy = patients.create_patient(
        db_session, tenant.id, {'first_name': 'Sam', 'last_name': 'Young', 'date_of_birth': '2000-01-01'}
    )
    scheduling.create_appointment(
        db_session,
        tenant.id,
        {'patient_id': healthy.id, 'provider_id': provider.id, 'appointment_date': MONDAY, 'start_time': '09:00'},
    )
    scheduling.create_appointment(
        db_session,
        tenant.id,
        {'patient_id': patient.id, 'provider_id': provider.id, 'appointment_date': MONDAY, 'start_time': '11:00'},
    )

    result = ai_scheduling.optimize_provider_schedule(
        db_session, tenant.id, provider.id, MONDAY, user_id=provider.id
    )
    optimized = result['optimizedSchedule']
    assert [entry['patient']['first_name'] for entry in optimized] == ['Maria', 'Sam']
    assert optimized[0]['priority_score'] == 100
    assert optimized[0]['buffer_minutes'] == 5
    assert len(result['originalSchedule']) == 2
    assert 'Schedule high-risk patients earlier in the day' in result['recommendations']

    entry = db_session.scalar(sa.select(AuditLog).where(AuditLog.action == 'ai_request'))
    assert entry.purpose == 'schedule_optimization'
    assert entry.phi_accessed is True
    assert entry.new_values['service'] == 'schedule-optimizer'


def test_clinical_summary_flags_high_sensitivity(db_session, tenant, patient, provider):
    summary = ai_scheduling.generate_clinical_summary(db_session, tenant.id, patient.id, user_id=provider.id)
    assert summary['patientId'] == patient.id
    assert summary['summary'].startswith('Clinical summary for Maria Gonzalez')
    assert 'High sensitivity patient data' in summary['riskFlags']
    assert summary['keyFindings'][0].startswith('History:')
