import pytest

from flowiq import tenants
from flowiq.errors import ConflictError, NotFoundError, ValidationError


def test_create_tenant_normalises_subdomain(db_session):
    practice = tenants.create_tenant(db_session, 'Bright Smiles', 'Bright-Smiles', specialty='general-dentistry')
    assert practice.subdomain == 'bright-smiles'
    assert practice.is_active is True
    assert tenants.serialize_tenant(practice)['specialty'] == 'general-dentistry'


@pytest.mark.parametrize('subdomain', ['ab', '-leading', 'UPPER_case', 'has space'])
def test_invalid_subdomains_rejected(db_session, subdomain):
    with pytest.raises(ValidationError):
        tenants.create_tenant(db_session, 'Clinic', subdomain)


def test_duplicate_subdomain_conflicts(db_session, tenant):
    with pytest.raises(ConflictError):
        tenants.create_tenant(db_session, 'Other', tenant.subdomain)


def test_unknown_specialty_and_bad_colour(db_session):
    with pytest.raises(ValidationError):
        tenants.create_tenant(db_session, 'Clinic', 'clinic-one', specialty='podiatry')
    with pytest.raises(ValidationError):
        tenants.create_tenant(db_session, 'Clinic', 'clinic-two', primary_color='blue')


def test_update_merges_settings(db_session, tenant):
    tenants.set_tenant_setting(db_session, tenant, 'timezone', 'America/Chicago')
    updated = tenants.update_tenant(
        db_session, tenant.id, {'settings': {'logo': 'x.png'}, 'primary_color': '#112233'}
    )
    assert updated.settings == {'timezone': 'America/Chicago', 'logo': 'x.png'}
    assert updated.primary_color == '#112233'
    assert tenants.tenant_setting(updated, 'logo') == 'x.png'


def test_update_subdomain_clash(db_session, tenant):
    other = tenants.create_tenant(db_session, 'Other', 'other-clinic')
    with pytest.raises(ConflictError):
        tenants.update_tenant(db_session, other.id, {'subdomain': tenant.subdomain})


def test_deactivate_hides_from_default_listing(db_session, tenant):
    tenants.deactivate_tenant(db_session, tenant.id)
    assert tenants.list_tenants(db_session) == []
    assert [t.id for t in tenants.list_tenants(db_session, include_inactive=True)] == [tenant.id]


def test_get_missing_tenant(db_session):
    with pytest.raises(NotFoundError):
        tenants.get_tenant(db_session, 'nope')
