from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BOOKING_API_KEY", "test-booking-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from allocation.engine import BookingLifecycleManager
from allocation.events import RecordingNotifier
from allocation.models import Base, Booking, Resource, User
from config import EngineConfig


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _seed_catalog(session_factory) -> None:
    with session_factory() as db:
        with db.begin():
            db.add_all(
                [
                    User(id="u-student", email="student@example.edu", full_name="Amina Otieno", role="student"),
                    User(
                        id="u-student2",
                        email="student2@example.edu",
                        full_name="Brian Kariuki",
                        role="student",
                        preferences={},
                    ),
                    User(id="u-staff", email="staff@example.edu", full_name="Grace Wanjiru", role="staff"),
                    User(id="u-admin", email="admin@example.edu", full_name="Peter Mwangi", role="Admin"),
                    Resource(
                        id="room-a",
                        name="Room A",
                        location="Block A",
                        category="seminar_room",
                        capacity=1,
                        status="available",
                        is_active=True,
                        special_approval=False,
                        features=["projector", "whiteboard"],
                    ),
                    Resource(
                        id="room-b",
                        name="Room B",
                        location="Block B",
                        category="seminar_room",
                        capacity=1,
                        status="available",
                        is_active=True,
                        special_approval=False,
                        features=["projector"],
                    ),
                    Resource(
                        id="room-c",
                        name="Room C",
                        location="Block A",
                        category="seminar_room",
                        capacity=1,
                        status="available",
                        is_active=True,
                        special_approval=False,
                        features=["projector", "whiteboard"],
                    ),
                    Resource(
                        id="hall",
                        name="Main Hall",
                        location="Central",
                        category="hall",
                        capacity=3,
                        status="available",
                        is_active=True,
                        special_approval=False,
                        features=["sound_system"],
                    ),
                    Resource(
                        id="lab",
                        name="Chemistry Lab",
                        location="Science Wing",
                        category="lab",
                        capacity=1,
                        status="available",
                        is_active=True,
                        special_approval=True,
                        features=["fume_hood"],
                    ),
                    Resource(
                        id="projector-1",
                        name="Portable Projector",
                        location="AV Store",
                        category="equipment",
                        capacity=1,
                        status="available",
                        is_active=True,
                        special_approval=False,
                        features=[],
                    ),
                ]
            )


@pytest.fixture
def seeded(session_factory):
    _seed_catalog(session_factory)
    return session_factory


@pytest.fixture
def file_seeded(tmp_path):
    """Seeded file-backed database; every session gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'allocation.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    _seed_catalog(factory)
    yield factory
    engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def manager(seeded, notifier, config):
    return BookingLifecycleManager(session_factory=seeded, config=config, notifier=notifier)


@pytest.fixture
def base_time():
    """10:00 UTC two days from now."""
    return (datetime.now(timezone.utc) + timedelta(days=2)).replace(hour=10, minute=0, second=0, microsecond=0)


@pytest.fixture
def make_booking(seeded):
    def _make(
        resource_id: str,
        user_id: str,
        start_time: datetime,
        end_time: datetime,
        *,
        status: str = "approved",
        category: str = "other",
        priority: int | None = None,
    ) -> str:
        booking_id = str(uuid.uuid4())
        with seeded() as db:
            with db.begin():
                db.add(
                    Booking(
                        id=booking_id,
                        booking_reference=f"TST-RBA-{booking_id[:8].upper()}",
                        resource_id=resource_id,
                        user_id=user_id,
                        start_time=start_time,
                        end_time=end_time,
                        category=category,
                        status=status,
                        priority=priority,
                    )
                )
        return booking_id

    return _make


@pytest.fixture
def load_booking(seeded):
    def _load(booking_id: str) -> Booking:
        with seeded() as db:
            return db.get(Booking, booking_id)

    return _load
