"""Shared SQLite fixtures for the marketplace unit tests."""

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

# Provide minimal env for Settings validation during import.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

# Ensure `api` package is importable when running from repo root.
TEST_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if TEST_ROOT not in sys.path:
    sys.path.insert(0, TEST_ROOT)

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from api.app.db import Base  # noqa: E402
from api.app.models import (  # noqa: E402
    AttorneyProfile,
    AttorneyServiceArea,
    AttorneySpecialty,
    Bid,
    BidStatus,
    Case,
    CaseStatus,
    ClientProfile,
    FeeMode,
    Role,
    Urgency,
)
from api.app.security import Actor  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def memory_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autocommit=False, autoflush=False)


def file_session_factory(path):
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autocommit=False, autoflush=False)


def make_client(db):
    profile = ClientProfile(user_id=uuid.uuid4(), display_name="Client")
    db.add(profile)
    db.flush()
    return profile


def make_attorney(db, specialties=(), states=(), zip_code=None):
    profile = AttorneyProfile(user_id=uuid.uuid4(), display_name="Attorney")
    db.add(profile)
    db.flush()
    for category in specialties:
        db.add(AttorneySpecialty(attorney_profile_id=profile.id, category=category))
    for state in states:
        db.add(
            AttorneyServiceArea(
                attorney_profile_id=profile.id, state_code=state, zip_code=zip_code
            )
        )
    db.flush()
    return profile


def make_case(db, client, **overrides):
    values = dict(
        client_profile_id=client.id,
        title="Need help with a visa renewal",
        description="My work visa expires next month and the renewal was denied.",
        category="IMMIGRATION",
        state_code="CA",
        city="San Jose",
        zip_code="95112",
        urgency=Urgency.MEDIUM.value,
        status=CaseStatus.OPEN.value,
        fee_mode=FeeMode.CONSULTATION.value,
        created_at=NOW - timedelta(hours=1),
        updated_at=NOW - timedelta(hours=1),
    )
    values.update(overrides)
    case = Case(**values)
    db.add(case)
    db.flush()
    return case


def make_bid(db, case, attorney, **overrides):
    values = dict(
        case_id=case.id,
        attorney_profile_id=attorney.id,
        status=BidStatus.PENDING.value,
        version=1,
        message="I can take this matter on.",
        fee_quote_min=500.0,
        fee_quote_max=900.0,
        fee_mode=FeeMode.CUSTOM.value,
        created_at=NOW - timedelta(minutes=30),
        updated_at=NOW - timedelta(minutes=30),
    )
    values.update(overrides)
    bid = Bid(**values)
    db.add(bid)
    db.flush()
    return bid


def client_actor(profile):
    return Actor(user_id=profile.user_id, role=Role.CLIENT, profile_id=profile.id)


def attorney_actor(profile):
    return Actor(user_id=profile.user_id, role=Role.ATTORNEY, profile_id=profile.id)


def admin_actor():
    return Actor(user_id=uuid.uuid4(), role=Role.ADMIN)
