"""Audit trail redaction and query tests."""

from datetime import date

from flowiq import audit


def test_hash_identifier():
    assert audit.hash_identifier(None) is None
    assert audit.hash_identifier('') is None
    hashed = audit.hash_identifier('maria@example.com')
    assert len(hashed) == 16
    assert hashed == audit.hash_identifier('maria@example.com')


def test_redact_value_hashes_sensitive_keys():
    redacted = audit.redact_value(
        {
            'email': 'maria@example.com',
            'api_key': 'secret',
            'notes': 'Patient SSN 123-45-6789',
            'visits': 2,
            'seen_on': date(2030, 3, 4),
            'tags': ['plain'],
            'phone': None,
        }
    )
    assert redacted['email'] == 'sha256:' + audit.hash_identifier('maria@example.com')
    assert redacted['api_key'].startswith('sha256:')
    assert '123-45-6789' not in redacted['notes']
    assert '[SSN:' in redacted['notes']
    assert redacted['visits'] == 2
    assert redacted['seen_on'] == '2030-03-04'
    assert redacted['tags'] == ['plain']
    assert redacted['phone'] is None


def test_record_audit_redacts_before_storing(db_session, tenant, provider):
    entry = audit.record_audit(
        db_session,
        tenant_id=tenant.id,
        user_id=provider.id,
        action='update',
        table_name='patients',
        record_id='p-1',
        old_values={'phone': '555-201-3344'},
        new_values={'phone': '555-201-9999', 'city': 'Austin'},
        ip_address='10.0.0.1',
        phi_accessed=True,
    )
    assert entry.old_values['phone'].startswith('sha256:')
    assert entry.new_values['city'] == 'Austin'

    serialized = audit.serialize_audit(entry)
    assert serialized['tableName'] == 'patients'
    assert serialized['phiAccessed'] is True
    assert serialized['ipAddress'] == '10.0.0.1'
    assert serialized['createdAt'] is not None


def test_list_audit_filters(db_session, tenant, provider, practice_admin):
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=provider.id, action='view', table_name='patients', phi_accessed=True)
    audit.record_audit(db_session, tenant_id=tenant.id, user_id=practice_admin.id, action='update', table_name='claims')
    audit.record_audit(db_session, tenant_id='other', user_id=None, action='view')

    assert len(audit.list_audit(db_session, tenant.id)) == 2
    assert len(audit.list_audit(db_session, None)) == 3
    assert [e.table_name for e in audit.list_audit(db_session, tenant.id, action='update')] == ['claims']
    assert [e.action for e in audit.list_audit(db_session, tenant.id, user_id=provider.id)] == ['view']
    assert [e.action for e in audit.list_audit(db_session, tenant.id, table_name='claims')] == ['update']
    assert len(audit.list_audit(db_session, tenant.id, phi_only=True)) == 1
    assert len(audit.list_audit(db_session, None, limit=1, offset=2)) == 1


def test_changed_fields():
    before = {'first_name': 'Maria', 'city': 'Austin', 'phone': None}
    after = {'first_name': 'Maria', 'city': 'Dallas', 'phone': '555'}
    assert audit.changed_fields(before, after, ['first_name', 'city', 'phone']) == {'city': 'Dallas', 'phone': '555'}
