import os
from datetime import datetime, timedelta, timezone

import pytest

# Settings are read at import time; keep the suite off PostgreSQL.
os.environ.setdefault("DATABASE_URL", "sqlite:///./changelog_auth_test.db")
os.environ.setdefault("DB_INIT_MODE", "off")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from changelog_auth.core.database import Base  # noqa: E402
from changelog_auth.models.user import User  # noqa: E402

SECRET = "test-secret-key-with-at-least-32-characters"


class FakeClock:
    """Mutable UTC clock injected into codecs and services."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'auth.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_user(db, email="u1@example.com", role="VIEWER", name=None):
    user = User(email=email, name=name, role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user_factory(db):
    def factory(email="u1@example.com", role="VIEWER", name=None):
        return make_user(db, email=email, role=role, name=name)
    return factory
