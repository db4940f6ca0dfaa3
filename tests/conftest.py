import os
import sys
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Callable, Dict, Iterator, List

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the therapyflow package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('PRACTICE_TIMEZONE', 'America/New_York')
os.environ.setdefault('LOG_LEVEL', 'WARNING')

from therapyflow import db as db_module  # noqa: E402
from therapyflow.db.models import Base, SupervisorAssignment, User  # noqa: E402


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


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        'markers',
        'postgres: Tests that require a PostgreSQL database and are skipped unless '
        'RUN_PG_TESTS=1 or --run-postgres is provided.',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if config.getoption('run_postgres'):
        return
    skip_marker = pytest.mark.skip(reason='Requires PostgreSQL. Set RUN_PG_TESTS=1 or pass --run-postgres to enable.')
    for item in items:
        if 'postgres' in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class DatabaseContext:
    """Holds state for the ephemeral in-memory SQLite database."""

    engine: sa.engine.Engine
    session_factory: sessionmaker

    def make_session(self) -> Session:
        """Return a new SQLAlchemy session bound to the in-memory engine."""

        return self.session_factory()


@pytest.fixture(scope='function')
def in_memory_db() -> Iterator[DatabaseContext]:
    """Provide an isolated in-memory SQLite database for each test."""

    engine = sa.create_engine(
        'sqlite+pysqlite:///:memory:',
        future=True,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    db_module.configure_sqlite_engine(engine)
    Base.metadata.create_all(engine)
    db_module.configure_engine(engine)
    session_factory = sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    try:
        yield DatabaseContext(engine=engine, session_factory=session_factory)
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(scope='function')
def db_session(in_memory_db: DatabaseContext) -> Iterator[Session]:
    """Yield a SQLAlchemy session tied to the in-memory database."""

    session = in_memory_db.make_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope='function')
def api_client(db_session: Session) -> Iterator[TestClient]:
    """Yield a FastAPI test client that shares ``db_session`` with the test."""

    from therapyflow import main

    def _session_dependency() -> Iterator[Session]:
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    main.app.dependency_overrides[db_module.get_session] = _session_dependency
    # Not used as a context manager so the lifespan (which targets the real
    # database) does not run.
    client = TestClient(main.app)
    try:
        yield client
    finally:
        client.close()
        main.app.dependency_overrides.pop(db_module.get_session, None)


@pytest.fixture(scope='function')
def users(db_session: Session) -> SimpleNamespace:
    """Create an administrator, a therapist and that therapist's supervisor."""

    admin = User(username='admin', full_name='Practice Admin', email='admin@clinic.test', role='admin')
    therapist = User(
        username='therapist', full_name='Dana Therapist', email='dana@clinic.test', role='therapist'
    )
    supervisor = User(
        username='supervisor', full_name='Sam Supervisor', email='sam@clinic.test', role='supervisor'
    )
    db_session.add_all([admin, therapist, supervisor])
    db_session.flush()
    db_session.add(SupervisorAssignment(supervisor_id=supervisor.id, therapist_id=therapist.id))
    db_session.commit()
    return SimpleNamespace(admin=admin, therapist=therapist, supervisor=supervisor)


@pytest.fixture(scope='function')
def auth_headers() -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        return {'X-User-Id': str(user.id)}

    return _headers
