"""Patient record service tests."""

from datetime import timedelta

import pytest

from flowiq import claims, patients, tenants
from flowiq.errors import ConflictError, NotFoundError, ValidationError
from flowiq.time_utils import utc_now


def test_patient_numbers_increment_per_tenant(db_session, tenant, patient):
    second = patients.create_patient(db_session, tenant.id, {'first_name': 'Li', 'last_name': 'Wei'})
    assert patient.patient_number == 'P000001'
    assert second.patient_number == 'P000002'

    other = tenants.create_tenant(db_session, 'Other Practice', 'other-practice')
    first_elsewhere = patients.create_patient(db_session, other.id, {'first_name': 'A', 'last_name': 'B'})
    assert first_elsewhere.patient_number == 'P000001'


def test_names_are_required(db_session, tenant):
    with pytest.raises(ValidationError):
        patients.create_patient(db_session, tenant.id, {'first_name': 'Only'})


def test_invalid_email_and_future_birth_date(db_session, tenant):
    with pytest.raises(ValidationError):
        patients.create_patient(db_session, tenant.id, {'first_name': 'A', 'last_name': 'B', 'email': 'nope'})
    tomorrow = (utc_now() + timedelta(days=1)).date().isoformat()
    with pytest.raises(ValidationError):
        patients.create_patient(db_session, tenant.id, {'first_name': 'A', 'last_name': 'B', 'date_of_birth': tomorrow})
    with pytest.raises(ValidationError):
        patients.create_patient(db_session, tenant.id, {'first_name': 'A', 'last_name': 'B', 'date_of_birth': '04/12/1958'})


def test_list_values_joined_and_markup_stripped(db_session, tenant):
    record = patients.create_patient(
        db_session,
        tenant.id,
        {'first_name': '<b>Ann</b>', 'last_name': 'Lee', 'allergies': ['penicillin', ' latex ']},
    )
    assert record.first_name == 'Ann'
    assert record.allergies == 'penicillin, latex'


def test_tenant_isolation(db_session, patient):
    other = tenants.create_tenant(db_session, 'Other Practice', 'other-practice')
    with pytest.raises(NotFoundError):
        patients.get_patient(db_session, other.id, patient.id)


def test_search_and_soft_delete(db_session, tenant, patient):
    patients.create_patient(db_session, tenant.id, {'first_name': 'Tom', 'last_name': 'Baker'})
    found = patients.list_patients(db_session, tenant.id, search='gonz')
    assert [p.id for p in found] == [patient.id]

    patients.delete_patient(db_session, tenant.id, patient.id)
    assert patient.is_active is False
    assert patient.id not in [p.id for p in patients.list_patients(db_session, tenant.id)]
    assert patient.id in [p.id for p in patients.list_patients(db_session, tenant.id, include_inactive=True)]


def test_hard_delete(db_session, tenant, patient):
    patients.delete_patient(db_session, tenant.id, patient.id, hard=True)
    with pytest.raises(NotFoundError):
        patients.get_patient(db_session, tenant.id, patient.id)


def test_hard_delete_refused_with_linked_claim(db_session, tenant, patient):
    claims.create_claim(
        db_session,
        tenant.id,
        {'patient_id': patient.id, 'diagnosis_codes': ['I10'], 'procedure_codes': ['99213'], 'total_amount': 120},
    )
    with pytest.raises(ConflictError) as excinfo:
        patients.delete_patient(db_session, tenant.id, patient.id, hard=True)
    assert excinfo.value.details == {'linkedRecords': ['claims']}
    assert patients.get_patient(db_session, tenant.id, patient.id).is_active is True


def test_update_rejects_blank_names(db_session, tenant, patient):
    with pytest.raises(ValidationError):
        patients.update_patient(db_session, tenant.id, patient.id, {'last_name': '   '})
    updated = patients.update_patient(db_session, tenant.id, patient.id, {'phone': '555-000-1111'})
    assert updated.phone == '555-000-1111'


def test_serialize_patient(patient):
    data = patients.serialize_patient(patient)
    assert data['name'] == 'Maria Gonzalez'
    assert data['dateOfBirth'] == '1958-04-12'
    assert data['age'] >= 60
    assert data['isActive'] is True
