import os

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session

from flowiq import db, tenants
from flowiq.config import get_settings
from flowiq.models import Tenant


def test_sqlite_default_lives_in_data_dir(tmp_path, monkeypatch):
    monkeypatch.delenv('FLOWIQ_DATABASE_URL', raising=False)
    monkeypatch.delenv('DATABASE_URL', raising=False)
    get_settings.cache_clear()
    settings = get_settings()
    assert settings.is_sqlite
    assert settings.database_url == f"sqlite:///{tmp_path / 'data' / 'flowiq.db'}"
    assert settings.storage_dir == tmp_path / 'storage'
    assert settings.engine_options()['connect_args'] == {'check_same_thread': False}


@pytest.mark.parametrize(
    'raw,expected',
    [
        ('postgres://u:p@db/flowiq', 'postgresql+psycopg://u:p@db/flowiq'),
        ('postgresql://u:p@db/flowiq', 'postgresql+psycopg://u:p@db/flowiq'),
        ('postgresql+psycopg://u:p@db/flowiq', 'postgresql+psycopg://u:p@db/flowiq'),
    ],
)
def test_postgres_urls_use_psycopg(monkeypatch, raw, expected):
    monkeypatch.setenv('DATABASE_URL', raw)
    monkeypatch.setenv('FLOWIQ_DB_POOL_SIZE', '7')
    get_settings.cache_clear()
    settings = get_settings()
    assert settings.database_url == expected
    assert settings.engine_options()['pool_size'] == 7
    assert settings.engine_options()['connect_args'] == {'options': '-c timezone=UTC'}


def test_invalid_integer_setting(monkeypatch):
    monkeypatch.setenv('FLOWIQ_MAX_UPLOAD_BYTES', 'lots')
    get_settings.cache_clear()
    with pytest.raises(ValueError, match='FLOWIQ_MAX_UPLOAD_BYTES'):
        get_settings()


def test_get_engine_reports_missing_configuration(monkeypatch):
    monkeypatch.setattr(db, '_engine', None)
    monkeypatch.setattr(db, 'configure_engine', lambda engine: None)
    monkeypatch.setattr(db, 'configure_sqlite', lambda engine: None)
    get_settings.cache_clear()
    with pytest.raises(RuntimeError, match='not configured'):
        db.get_engine()


def test_session_scope_rolls_back_on_error(in_memory_db):
    with pytest.raises(RuntimeError):
        with db.session_scope() as session:
            tenants.create_tenant(session, 'Lakeside Dental', 'lakeside')
            raise RuntimeError('boom')

    with db.session_scope() as session:
        assert session.scalar(sa.select(sa.func.count()).select_from(Tenant)) == 0


@pytest.mark.postgres
def test_postgres_crud_smoke(monkeypatch):
    url = os.getenv('FLOWIQ_TEST_DATABASE_URL') or os.getenv('DATABASE_URL')
    if not url:
        pytest.skip('FLOWIQ_TEST_DATABASE_URL is not set')
    monkeypatch.setenv('DATABASE_URL', url)
    monkeypatch.setattr(db, '_engine', None)
    get_settings.cache_clear()
    engine = db.get_engine()
    db.init_db(engine)

    with engine.connect() as connection:
        transaction = connection.begin()
        session = Session(bind=connection)
        try:
            tenant = tenants.create_tenant(session, 'PG Clinic', 'pg-clinic')
            session.flush()
            fetched = session.get(Tenant, tenant.id)
            assert fetched.created_at.tzinfo is not None
        finally:
            session.close()
            transaction.rollback()
