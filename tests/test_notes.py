"""Clinical note lifecycle and AI assistance tests."""

import pytest

from flowiq import notes, scheduling
from flowiq.errors import ConflictError, NotFoundError, ValidationError


def _draft(session, tenant, patient, provider, **values):
    data = {'patient_id': patient.id, 'subjective': 'Low back pain for two weeks'}
    data.update(values)
    return notes.create_note(session, tenant.id, data, provider_id=provider.id)


def test_create_and_update_draft(db_session, tenant, patient, provider):
    note = _draft(db_session, tenant, patient, provider, assessment='<b>Lumbar</b> strain')
    assert note.status == 'draft'
    assert note.note_type == 'soap'
    assert note.provider_id == provider.id
    assert note.assessment == 'Lumbar strain'

    notes.update_note(db_session, tenant.id, note.id, {'plan': 'Ice and stretching', 'note_type': 'Progress'})
    assert note.plan == 'Ice and stretching'
    assert note.note_type == 'progress'
    with pytest.raises(ValidationError):
        notes.update_note(db_session, tenant.id, note.id, {'note_type': 'poem'})


def test_note_appointment_must_match_patient(db_session, tenant, patient, provider):
    other = scheduling.create_appointment(
        db_session,
        tenant.id,
        {'patient_id': patient.id, 'provider_id': provider.id, 'appointment_date': '2030-03-04', 'start_time': '09:00'},
    )
    note = _draft(db_session, tenant, patient, provider, appointment_id=other.id)
    assert note.appointment_id == other.id
    with pytest.raises(NotFoundError):
        _draft(db_session, tenant, patient, provider, appointment_id='missing')


def test_sign_freezes_note(db_session, tenant, patient, provider):
    note = _draft(db_session, tenant, patient, provider)
    notes.sign_note(db_session, tenant.id, note.id, provider.id)
    assert note.status == 'signed'
    assert note.signed_by == provider.id
    assert note.signed_at is not None

    with pytest.raises(ConflictError):
        notes.update_note(db_session, tenant.id, note.id, {'plan': 'changed'})
    with pytest.raises(ConflictError):
        notes.sign_note(db_session, tenant.id, note.id, provider.id)


def test_empty_note_cannot_be_signed(db_session, tenant, patient, provider):
    note = _draft(db_session, tenant, patient, provider, subjective='   ')
    with pytest.raises(ValidationError):
        notes.sign_note(db_session, tenant.id, note.id, provider.id)


def test_amend_creates_linked_draft(db_session, tenant, patient, provider):
    note = _draft(db_session, tenant, patient, provider, plan='Rest')
    with pytest.raises(ConflictError):
        notes.amend_note(db_session, tenant.id, note.id, {'plan': 'Physio'})

    notes.sign_note(db_session, tenant.id, note.id, provider.id)
    amendment = notes.amend_note(db_session, tenant.id, note.id, {'plan': 'Physio'}, provider_id=provider.id)
    assert note.status == 'amended'
    assert amendment.status == 'draft'
    assert amendment.amended_from_id == note.id
    assert amendment.subjective == note.subjective
    assert amendment.plan == 'Physio'
    assert notes.serialize_note(amendment)['amendedFromId'] == note.id

    drafts = notes.list_notes(db_session, tenant.id, patient_id=patient.id, status='draft')
    assert [n.id for n in drafts] == [amendment.id]


def test_generate_note_restores_patient_name(db_session, tenant, patient, provider):
    result = notes.generate_note(
        db_session,
        tenant.id,
        {'patient_id': patient.id, 'chief_complaint': 'low back pain', 'vitals': {'bp': '130/85'}},
        user_id=provider.id,
    )
    subjective = result['sections']['subjective']
    assert subjective.startswith('Maria Gonzalez, ')
    assert subjective.endswith('presents with low back pain.')
    assert result['sections']['objective'] == 'bp: 130/85'
    assert result['classification']['containsPhi'] is True
    assert result['noteId'] is None


def test_generate_note_can_save_draft(db_session, tenant, patient, provider):
    result = notes.generate_note(
        db_session,
        tenant.id,
        {'patient_id': patient.id, 'chief_complaint': 'neck pain'},
        user_id=provider.id,
        save=True,
    )
    note = notes.get_note(db_session, tenant.id, result['noteId'])
    assert note.status == 'draft'
    assert note.provider_id == provider.id
    assert note.assessment == 'Assessment consistent with neck pain.'


def test_suggest_codes_stores_on_draft(db_session, tenant, patient, provider):
    note = _draft(db_session, tenant, patient, provider, subjective='Follow-up', assessment='Hypertension, office visit')
    codes = notes.suggest_codes(db_session, tenant.id, note.id, user_id=provider.id)
    assert [c['code'] for c in codes] == ['I10', '99213']
    assert [c['code'] for c in note.suggested_codes] == ['I10', '99213']

    notes.sign_note(db_session, tenant.id, note.id, provider.id)
    again = notes.suggest_codes(db_session, tenant.id, note.id, user_id=provider.id)
    assert [c['code'] for c in again] == ['I10', '99213']


def test_suggest_codes_needs_content(db_session, tenant, patient, provider):
    note = notes.create_note(db_session, tenant.id, {'patient_id': patient.id}, provider_id=provider.id)
    with pytest.raises(ValidationError):
        notes.suggest_codes(db_session, tenant.id, note.id)


def test_notes_are_tenant_scoped(db_session, tenant, patient, provider):
    note = _draft(db_session, tenant, patient, provider)
    with pytest.raises(NotFoundError):
        notes.get_note(db_session, 'other-tenant', note.id)
