import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Generator, Iterator, List

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the flowiq package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('JWT_SECRET', 'test-jwt-secret')
os.environ.setdefault('FLOWIQ_OFFLINE_MODE', '1')

from flowiq import auth, db, encryption, tenants  # noqa: E402
from flowiq.config import get_settings  # noqa: E402
from flowiq.models import Patient, User  # noqa: E402


def _env_flag(name: str) -> bool:
    return os.getenv(name, '0').lower() in {'1', 'true', 'yes'}


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--run-postgres',
        action='store_true',
        default=_env_flag('RUN_PG_TESTS'),
        dest='run_postgres',
        help='Execute tests marked with @pytest.mark.postgres that require PostgreSQL.',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if config.getoption('run_postgres'):
        return
    skip_marker = pytest.mark.skip(reason='Requires PostgreSQL. Set RUN_PG_TESTS=1 or pass --run-postgres to enable.')
    for item in items:
        if 'postgres' in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch) -> Iterator[None]:
    """Point data and storage at a temp dir and force offline remote functions."""

    monkeypatch.setenv('FLOWIQ_DATA_DIR', str(tmp_path / 'data'))
    monkeypatch.setenv('FLOWIQ_STORAGE_DIR', str(tmp_path / 'storage'))
    monkeypatch.setenv('FLOWIQ_OFFLINE_MODE', '1')
    monkeypatch.setenv('JWT_SECRET', 'test-jwt-secret')
    monkeypatch.delenv('FLOWIQ_FUNCTIONS_URL', raising=False)
    monkeypatch.delenv('FLOWIQ_ENCRYPTION_KEY', raising=False)
    get_settings.cache_clear()
    encryption.reset_cipher_cache()
    yield
    get_settings.cache_clear()
    encryption.reset_cipher_cache()


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        return self.session_factory()


@pytest.fixture
def in_memory_db(monkeypatch) -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database for each test."""

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    db.configure_sqlite(engine)
    db.init_db(engine)
    monkeypatch.setattr(db, '_engine', None)
    db.configure_engine(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        engine.dispose()


@pytest.fixture
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db_session: Session):
    practice = tenants.create_tenant(db_session, 'Spine and Sleep Clinic', 'spine-sleep', specialty='chiropractic')
    db_session.commit()
    return practice


@pytest.fixture
def make_user(db_session: Session, tenant) -> Callable[..., User]:
    def _make(username: str, role: str = 'staff', tenant_id=..., password: str = 'correct-horse') -> User:
        if tenant_id is ...:
            tenant_id = None if role == 'admin' else tenant.id
        user = auth.register_user(db_session, username, password, role, tenant_id)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def practice_admin(make_user) -> User:
    return make_user('manager', 'practice_admin')


@pytest.fixture
def provider(make_user) -> User:
    return make_user('dr.lee', 'provider')


@pytest.fixture
def patient(db_session: Session, tenant) -> Patient:
    from flowiq import patients

    record = patients.create_patient(
        db_session,
        tenant.id,
        {
            'first_name': 'Maria',
            'last_name': 'Gonzalez',
            'date_of_birth': '1958-04-12',
            'email': 'maria@example.com',
            'phone': '555-201-3344',
            'insurance_provider': 'Aetna',
            'medical_history': 'Hypertension, Type 2 diabetes',
        },
    )
    db_session.commit()
    return record


@pytest.fixture
def api_client(in_memory_db: DatabaseContext) -> Iterator[TestClient]:
    from flowiq import main

    def _session_dependency() -> Generator[Session, None, None]:
        session = in_memory_db.make_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    main.app.dependency_overrides[db.get_session] = _session_dependency
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def auth_header(user: User) -> Dict[str, str]:
    return {'Authorization': f'Bearer {auth.create_access_token(user)}'}


@pytest.fixture
def headers_for() -> Callable[[User], Dict[str, str]]:
    return auth_header


@pytest.fixture
def fixed_now() -> datetime:
    # a Monday morning
    return datetime(2030, 3, 4, 8, 0, tzinfo=timezone.utc)
