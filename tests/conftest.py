import os
from datetime import datetime

import pytest

# Keep the module-level engine away from the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SLOT_LOCK_BACKEND", "memory")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from slotbook.database import Base  # noqa: E402
from slotbook.domain.scheduling.matching import MatchingEngine  # noqa: E402
from slotbook.domain.scheduling.policies import Actor  # noqa: E402
from slotbook.domain.scheduling.repository import RequestRepository  # noqa: E402
from slotbook.domain.scheduling.waitlist import BucketKey, WaitlistQueue  # noqa: E402
from slotbook.models import REQUEST_PENDING, ROLE_ADMIN, ROLE_PROVIDER, ROLE_REQUESTER, User  # noqa: E402

# Monday morning; earlier dates count as the past
NOW = datetime(2024, 5, 6, 8, 0)


class RecordingDispatcher:
    """Collects delivered notifications instead of storing them"""

    def __init__(self):
        self.sent = []

    def notify(self, user_id, event):
        self.sent.append((user_id, event))

    def types_for(self, user_id):
        return [event.type for uid, event in self.sent if uid == user_id]

    def clear(self):
        self.sent.clear()


class FailingDispatcher:
    def __init__(self):
        self.calls = 0

    def notify(self, user_id, event):
        self.calls += 1
        raise RuntimeError("inbox is down")


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def users(db):
    def make(name, email, role):
        user = User(full_name=name, email=email, role=role)
        db.add(user)
        return user

    created = {
        "admin": make("Alex Admin", "admin@example.com", ROLE_ADMIN),
        "provider": make("Dr. Xavier", "xavier@example.com", ROLE_PROVIDER),
        "provider2": make("Dr. Yara", "yara@example.com", ROLE_PROVIDER),
        "alice": make("Alice", "alice@example.com", ROLE_REQUESTER),
        "bob": make("Bob", "bob@example.com", ROLE_REQUESTER),
        "carol": make("Carol", "carol@example.com", ROLE_REQUESTER),
        "dave": make("Dave", "dave@example.com", ROLE_REQUESTER),
    }
    db.commit()
    return created


@pytest.fixture
def actors(users):
    return {key: Actor.from_user(user) for key, user in users.items()}


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(db, dispatcher):
    return MatchingEngine(db, dispatcher=dispatcher, clock=lambda: NOW)


@pytest.fixture
def waitlist(db):
    """Put a requester straight into a bucket, optionally with a fixed created_at"""

    def add(requester, provider_id, date, time, created_at=None):
        data = {
            "requester_id": requester.id,
            "requester_name": requester.full_name,
            "preferred_days": [],
            "preferred_times": [time],
            "preferred_provider_id": provider_id,
            "status": REQUEST_PENDING,
        }
        if created_at is not None:
            data["created_at"] = created_at
        request = RequestRepository.create_request(db, **data)
        WaitlistQueue(db).enqueue(request, BucketKey(provider_id, date, time))
        db.commit()
        return request

    return add


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def failing_dispatcher():
    return FailingDispatcher()
