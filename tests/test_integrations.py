"""Integration catalog and per-tenant override tests."""

import pytest

from flowiq import ehr_integration, integrations
from flowiq.errors import NotFoundError, ValidationError


def test_catalog_defaults(db_session, tenant):
    listed = integrations.list_integrations(db_session, tenant.id)
    assert len(listed) == len(integrations.CATALOG)
    assert all(item['enabled'] is False and item['status'] == 'disconnected' for item in listed)

    ehr = integrations.list_integrations(db_session, tenant.id, type='ehr')
    assert {item['id'] for item in ehr} == {'easybis', 'dental-rem', 'dental-sleep-solutions', 'mogo'}

    google = integrations.get_integration(db_session, tenant.id, 'google-calendar')
    assert google['config'] == {'calendarId': 'primary', 'syncInterval': 300}
    assert google['lastSync'] is None


def test_unknown_integration(db_session, tenant):
    with pytest.raises(NotFoundError):
        integrations.get_integration(db_session, tenant.id, 'fax-machine')


def test_update_merges_config_and_masks_secrets(db_session, tenant):
    integrations.update_integration(
        db_session, tenant.id, 'twilio', {'enabled': True, 'config': {'authToken': 'tw-secret', 'fromNumber': '+15550100'}}
    )
    updated = integrations.update_integration(db_session, tenant.id, 'twilio', {'config': {'fromNumber': '+15550199'}})
    assert updated['enabled'] is True
    assert updated['config'] == {'authToken': '********', 'fromNumber': '+15550199'}

    # overrides are stored per tenant, secrets unmasked
    stored = tenant.settings['integrations']['twilio']
    assert stored['config']['authToken'] == 'tw-secret'


def test_update_validation(db_session, tenant):
    with pytest.raises(ValidationError):
        integrations.update_integration(db_session, tenant.id, 'stripe', {'status': 'exploded'})
    with pytest.raises(ValidationError):
        integrations.update_integration(db_session, tenant.id, 'stripe', {'config': ['not', 'a', 'mapping']})


def test_disabled_integration(db_session, tenant):
    result = integrations.test_integration(db_session, tenant.id, 'sendgrid')
    assert result == {'success': False, 'message': 'Integration is disabled'}
    with pytest.raises(ValidationError):
        integrations.sync_integration(db_session, tenant.id, 'sendgrid')


def test_enable_test_sync_and_disable(db_session, tenant):
    integrations.update_integration(db_session, tenant.id, 'stripe', {'enabled': True})
    result = integrations.test_integration(db_session, tenant.id, 'stripe')
    assert result['success'] is True
    current = integrations.get_integration(db_session, tenant.id, 'stripe')
    assert current['status'] == 'connected'
    assert current['health'] == 90

    synced = integrations.sync_integration(db_session, tenant.id, 'stripe')
    assert synced == {'success': True, 'message': 'Sync completed successfully', 'details': {}}
    assert integrations.get_integration(db_session, tenant.id, 'stripe')['lastSync'] is not None

    disabled = integrations.update_integration(db_session, tenant.id, 'stripe', {'enabled': False})
    assert disabled['status'] == 'disconnected'
    assert disabled['health'] == 0


def test_ehr_integration_without_connection(db_session, tenant):
    integrations.update_integration(db_session, tenant.id, 'mogo', {'enabled': True})
    result = integrations.test_integration(db_session, tenant.id, 'mogo')
    assert result == {'success': False, 'message': 'No mogo connection configured'}


def test_ehr_integration_delegates_to_service(db_session, tenant, requests_mock):
    config = ehr_integration.EHRConfig(system='mogo', api_endpoint='https://mogo.test', api_key='k')
    ehr_integration.save_connection(db_session, tenant.id, config)
    integrations.update_integration(db_session, tenant.id, 'mogo', {'enabled': True})

    requests_mock.get('https://mogo.test/patients', json={'data': []})
    requests_mock.get('https://mogo.test/appointments', json={'items': []})
    assert integrations.test_integration(db_session, tenant.id, 'mogo')['success'] is True
    assert integrations.get_integration(db_session, tenant.id, 'mogo')['health'] == 100

    synced = integrations.sync_integration(db_session, tenant.id, 'mogo')
    assert synced['success'] is True
    assert synced['details']['patients']['data']['total'] == 0
    assert synced['details']['appointments']['success'] is True


def test_ehr_sync_failure_is_recorded(db_session, tenant, requests_mock):
    config = ehr_integration.EHRConfig(system='mogo', api_endpoint='https://mogo.test', api_key='k')
    ehr_integration.save_connection(db_session, tenant.id, config)
    integrations.update_integration(db_session, tenant.id, 'mogo', {'enabled': True})
    requests_mock.get('https://mogo.test/patients', status_code=500)

    result = integrations.sync_integration(db_session, tenant.id, 'mogo')
    assert result['success'] is False
    assert result['message'] == 'MOGO API error: 500'
    current = integrations.get_integration(db_session, tenant.id, 'mogo')
    assert current['status'] == 'error'
    assert current['lastError'] == 'MOGO API error: 500'
