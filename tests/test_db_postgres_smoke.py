import os
from datetime import datetime, timezone
from typing import Iterator

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session, sessionmaker

from therapyflow.db.models import Base, Client, Notification, TherapySession, User
from therapyflow.scheduling import check_conflicts


@pytest.fixture
def pg_session() -> Iterator[Session]:
    url = os.getenv('THERAPYFLOW_TEST_DATABASE_URL')
    if not url:
        pytest.skip('THERAPYFLOW_TEST_DATABASE_URL is not set.')
    engine = sa.create_engine(url, future=True)
    connection = engine.connect()
    transaction = connection.begin()
    Base.metadata.create_all(connection)
    SessionFactory = sessionmaker(bind=connection, autoflush=False, expire_on_commit=False, future=True)
    session = SessionFactory()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()
        engine.dispose()


@pytest.mark.postgres
def test_postgres_crud_smoke(pg_session):
    therapist = User(username='pg-therapist', full_name='PG Therapist', email='pg@example.test', role='therapist')
    pg_session.add(therapist)
    pg_session.flush()

    client = Client(client_id='CL-2024-0001', full_name='PG Client', assigned_therapist_id=therapist.id)
    pg_session.add(client)
    pg_session.flush()

    pg_session.add(
        TherapySession(
            client_id=client.id,
            therapist_id=therapist.id,
            session_date=datetime(2024, 1, 15, 15, 0, tzinfo=timezone.utc),
            session_type='individual',
            duration=60,
        )
    )
    pg_session.add(Notification(user_id=therapist.id, type='reminder', title='Hi', message='Hello'))
    pg_session.flush()

    fetched = pg_session.execute(sa.select(User).where(User.username == 'pg-therapist')).scalar_one()
    assert fetched.created_at.tzinfo is not None

    result = check_conflicts(pg_session, therapist.id, datetime(2024, 1, 15, 15, 30, tzinfo=timezone.utc))
    assert result.has_conflict
    assert result.therapist_conflicts[0]['clientName'] == 'PG Client'

    remaining = pg_session.execute(sa.select(sa.func.count()).select_from(Notification)).scalar_one()
    assert remaining == 1
