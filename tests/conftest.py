"""Shared pytest fixtures for the POS tests."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import event
from sqlalchemy.pool import StaticPool

from services.pos_service.cart_repository import SessionRepository
from services.pos_service.checkout import CheckoutEngine
from services.pos_service.models import Base
from services.pos_service.seed_data import seed_catalog
from shared.database import create_db_engine, create_session_factory

from support import BRANCH, TERMINAL, FakeRedis


@pytest.fixture
def db_engine():
    engine = create_db_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    factory = create_session_factory(db_engine)
    db = factory()
    seed_catalog(db)
    db.close()
    return factory


def file_database(path, serialized=False):
    """
    Seeded SQLite file database; every session gets its own connection.

    With serialized=True each transaction starts with BEGIN IMMEDIATE, so
    writers from different threads queue on the file lock instead of failing.
    """
    engine = create_db_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False, "timeout": 30})
    if serialized:

        @event.listens_for(engine, "connect")
        def manual_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    factory = create_session_factory(engine)
    db = factory()
    seed_catalog(db)
    db.close()
    return engine, factory


@pytest.fixture
def file_session_factory(tmp_path):
    engine, factory = file_database(tmp_path / "pos.db")
    yield factory
    engine.dispose()


@pytest.fixture
def serialized_session_factory(tmp_path):
    engine, factory = file_database(tmp_path / "pos.db", serialized=True)
    yield factory
    engine.dispose()


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def sessions(redis_client):
    return SessionRepository(redis_client)


@pytest.fixture
def gateway():
    return MagicMock()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def producer():
    return MagicMock()


@pytest.fixture
def engine(session_factory, gateway, notifier, sessions, producer):
    return CheckoutEngine(session_factory, gateway, notifier, sessions=sessions, producer=producer)


@pytest.fixture
def session(sessions):
    """A freshly opened session for TERMINAL at BRANCH."""
    return sessions.open(TERMINAL, BRANCH)
