from datetime import date, timedelta

import pytest

import flowiq.patients as patients
import flowiq.scheduling as scheduling
from flowiq.errors import ConflictError, InvalidTransitionError, ValidationError

MONDAY = date(2030, 3, 4)


def _book(session, tenant, patient, provider, start='10:00', **extra):
    values = {
        'patient_id': patient.id,
        'provider_id': provider.id,
        'appointment_type': 'consultation',
        'appointment_date': MONDAY.isoformat(),
        'start_time': start,
    }
    values.update(extra)
    return scheduling.create_appointment(session, tenant.id, values)


def test_default_duration_by_type(db_session, tenant, patient, provider):
    appt = _book(db_session, tenant, patient, provider)
    assert appt.duration_minutes == 60
    assert appt.status == 'scheduled'
    assert appt.title == 'Consultation - Maria Gonzalez'
    assert scheduling.default_duration('unknown') == 30


def test_overlapping_booking_conflicts(db_session, tenant, patient, provider):
    first = _book(db_session, tenant, patient, provider)
    with pytest.raises(ConflictError) as excinfo:
        _book(db_session, tenant, patient, provider, start='10:30')
    assert excinfo.value.details['conflictingAppointmentIds'] == [first.id]

    # back-to-back is fine
    _book(db_session, tenant, patient, provider, start='11:00')


def test_cancelled_appointment_frees_slot(db_session, tenant, patient, provider):
    first = _book(db_session, tenant, patient, provider)
    scheduling.transition_status(db_session, tenant.id, first.id, 'cancel')
    assert first.status == 'cancelled'
    _book(db_session, tenant, patient, provider)


def test_invalid_start_time(db_session, tenant, patient, provider):
    with pytest.raises(ValidationError):
        _book(db_session, tenant, patient, provider, start='9am')


def test_status_transitions(db_session, tenant, patient, provider):
    appt = _book(db_session, tenant, patient, provider)
    scheduling.transition_status(db_session, tenant.id, appt.id, 'confirmed')
    assert appt.confirmed_at is not None
    scheduling.transition_status(db_session, tenant.id, appt.id, 'arrived')
    assert appt.status == 'checked_in'
    with pytest.raises(InvalidTransitionError):
        scheduling.transition_status(db_session, tenant.id, appt.id, 'cancelled')
    with pytest.raises(ValidationError):
        scheduling.transition_status(db_session, tenant.id, appt.id, 'teleported')


def test_normalise_status():
    assert scheduling.normalise_status('No-Show') == 'no_show'
    assert scheduling.normalise_status('booked') == 'scheduled'
    assert scheduling.normalise_status('weird') == 'scheduled'
    assert scheduling.normalise_status(None) == 'scheduled'


def test_available_slots_respect_buffer(db_session, tenant, patient, provider, fixed_now):
    _book(db_session, tenant, patient, provider)
    slots = scheduling.available_slots(db_session, tenant.id, provider.id, MONDAY, 30, now=fixed_now)
    assert slots[0] == '09:00'
    for blocked in ('09:30', '10:00', '10:30', '11:00'):
        assert blocked not in slots
    assert '11:30' in slots
    assert slots[-1] == '16:30'


def test_no_slots_on_weekend_or_past(db_session, tenant, provider, fixed_now):
    saturday = MONDAY + timedelta(days=5)
    assert scheduling.available_slots(db_session, tenant.id, provider.id, saturday, 30) == []
    assert scheduling.available_slots(db_session, tenant.id, provider.id, MONDAY - timedelta(days=7), 30, now=fixed_now) == []


def test_high_confidence_request_auto_books(db_session, tenant, patient, provider, fixed_now):
    request = scheduling.BookingRequest(
        patient_id=patient.id,
        appointment_type='follow-up',
        provider_id=provider.id,
        preferred_dates=[MONDAY + timedelta(days=1)],
        preferred_time='morning',
    )
    result = scheduling.process_booking_request(db_session, tenant.id, request, now=fixed_now)
    assert result['booked'] is True
    assert result['confidence'] == pytest.approx(0.9)
    appointment = result['appointment']
    assert appointment['date'] == '2030-03-05'
    assert appointment['startTime'] == '09:00'
    assert appointment['createdVia'] == scheduling.AUTO_BOOKED_VIA

    reminders = scheduling.appointment_reminders(db_session, tenant.id, appointment['id'])
    assert sorted(r.channel for r in reminders) == ['email', 'email', 'sms', 'sms']


def test_low_confidence_request_returns_suggestions(db_session, tenant, patient, provider, fixed_now):
    request = scheduling.BookingRequest(patient_id=patient.id, provider_id=provider.id)
    result = scheduling.process_booking_request(db_session, tenant.id, request, now=fixed_now)
    assert result['booked'] is False
    assert len(result['suggestions']) == scheduling.MAX_SUGGESTIONS
    assert result['suggestions'][0]['date'] == MONDAY.isoformat()
    assert result['suggestions'][0]['time'] == '09:00'
    assert result['confidence'] == pytest.approx(0.55)


def test_waitlist_processing_books_entries(db_session, tenant, patient, provider, fixed_now):
    entry = scheduling.add_to_waitlist(
        db_session,
        tenant.id,
        {
            'patient_id': patient.id,
            'provider_id': provider.id,
            'preferred_dates': ['2030-03-06'],
            'preferred_times': ['morning'],
        },
    )
    summary = scheduling.manage_waitlist(db_session, tenant.id, now=fixed_now)
    assert summary == {'processed': 1, 'booked': 1, 'pending': 0}
    assert entry.status == 'booked'
    assert entry.appointment_id is not None
    assert scheduling.list_waitlist(db_session, tenant.id) == []


def test_waitlist_failure_does_not_abort_run(db_session, tenant, patient, provider, fixed_now):
    other = patients.create_patient(db_session, tenant.id, {'first_name': 'Sam', 'last_name': 'Okafor'})
    preferences = {'provider_id': provider.id, 'preferred_dates': ['2030-03-06'], 'preferred_times': ['morning']}
    stuck = scheduling.add_to_waitlist(db_session, tenant.id, {'patient_id': patient.id, 'priority': 5, **preferences})
    waiting = scheduling.add_to_waitlist(db_session, tenant.id, {'patient_id': other.id, **preferences})
    patient.is_active = False
    db_session.flush()

    summary = scheduling.manage_waitlist(db_session, tenant.id, now=fixed_now)

    assert summary == {'processed': 2, 'booked': 1, 'pending': 1}
    assert stuck.status == 'active'
    assert stuck.appointment_id is None
    assert waiting.status == 'booked'
    assert [e.id for e in scheduling.list_waitlist(db_session, tenant.id)] == [stuck.id]


def test_waitlist_rejects_bad_dates(db_session, tenant, patient):
    with pytest.raises(ValidationError):
        scheduling.add_to_waitlist(db_session, tenant.id, {'patient_id': patient.id, 'preferred_dates': ['soon']})


def test_reminders_skip_past_and_missing_phone(db_session, tenant, patient, provider, fixed_now):
    patient.phone = None
    appt = _book(db_session, tenant, patient, provider, start='09:00')
    created = scheduling.schedule_reminders(db_session, appt, now=fixed_now.replace(hour=6))
    # 24h before is already past; only the 2h email reminder remains
    assert [(r.channel, r.scheduled_for.hour) for r in created] == [('email', 7)]


def test_reminders_not_duplicated(db_session, tenant, patient, provider, fixed_now):
    appt = _book(db_session, tenant, patient, provider, appointment_date='2030-03-06')
    first = scheduling.schedule_reminders(db_session, appt, now=fixed_now)
    again = scheduling.schedule_reminders(db_session, appt, now=fixed_now)
    assert len(first) == 4
    assert again == []


def test_cancelling_cancels_pending_reminders(db_session, tenant, patient, provider, fixed_now):
    appt = _book(db_session, tenant, patient, provider, appointment_date='2030-03-06')
    scheduling.schedule_reminders(db_session, appt, now=fixed_now)
    scheduling.transition_status(db_session, tenant.id, appt.id, 'cancelled')
    statuses = {r.status for r in scheduling.appointment_reminders(db_session, tenant.id, appt.id)}
    assert statuses == {'cancelled'}


def test_schedule_config_update_and_validation(db_session, tenant):
    config = scheduling.update_schedule_config(db_session, tenant.id, {'slot_minutes': 15, 'bogus': 1})
    assert config.slot_minutes == 15
    assert tenant.settings['schedule_iq']['slot_minutes'] == 15
    with pytest.raises(ValidationError):
        scheduling.update_schedule_config(db_session, tenant.id, {'work_start': '18:00'})
    with pytest.raises(ValidationError):
        scheduling.update_schedule_config(db_session, tenant.id, {'auto_book_threshold': 1.5})


def test_schedule_analytics(db_session, tenant, patient, provider):
    first = _book(db_session, tenant, patient, provider)
    _book(db_session, tenant, patient, provider, start='13:00')
    scheduling.transition_status(db_session, tenant.id, first.id, 'no_show')
    stats = scheduling.schedule_analytics(db_session, tenant.id, MONDAY, MONDAY)
    assert stats['totalAppointments'] == 2
    assert stats['noShows'] == 1
    assert stats['noShowRate'] == 50.0
    # 60 booked minutes of an 8 hour day
    assert stats['utilization'] == 12.5


def test_ics_export(db_session, tenant, patient, provider):
    appt = _book(db_session, tenant, patient, provider, room='Room 2')
    ics = scheduling.export_appointment_ics(appt)
    assert ics.startswith('BEGIN:VCALENDAR\r\n')
    assert 'DTSTART:20300304T100000Z' in ics
    assert 'DTEND:20300304T110000Z' in ics
    assert 'LOCATION:Room 2' in ics
    assert 'Gonzalez' not in ics
