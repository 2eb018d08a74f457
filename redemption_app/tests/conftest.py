import os

# settings are read once at import time; point them at an in-memory database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# FORCE model registration
import redemption_app.models  # noqa

from redemption_app.db.base import Base
from redemption_app.integrations.roles import DirectoryRoleProvider
from redemption_app.services.approval_config_service import ApprovalConfigService
from redemption_app.services.consensus_service import ConsensusService
from redemption_app.services.redemption_service import RedemptionService
from redemption_app.services.window_service import WindowService
from redemption_app.core.types import ConsensusType
from redemption_app.tests.fakes import T0, RecordingNotifier

DIRECTORY = {
    "compliance": ["alice", "bob", "carol"],
    "treasury": ["dave"],
}


@pytest.fixture(scope="function")
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def role_provider():
    return DirectoryRoleProvider(DIRECTORY)


@pytest.fixture
def approved_ids():
    return []


@pytest.fixture
def consensus(role_provider, notifier, approved_ids):
    return ConsensusService(role_provider, notifier, on_approved=approved_ids.append)


@pytest.fixture
def windows(notifier):
    return WindowService(notifier=notifier)


@pytest.fixture
def redemptions(consensus, windows, notifier):
    return RedemptionService(consensus, windows, notifier)


@pytest.fixture
def threshold_config(db):
    """Two of the three compliance officers must approve TOKEN-A redemptions."""
    return ApprovalConfigService().upsert(
        db,
        resource_key="TOKEN-A",
        consensus_type=ConsensusType.threshold,
        required_approvals=2,
        eligible_roles=["compliance"],
    )


@pytest.fixture
def open_window(db, windows):
    w = windows.create_window(
        db,
        token_type="TOKEN-A",
        name="March",
        submission_start=T0,
        submission_end=T0 + timedelta(days=7),
        start=T0 + timedelta(days=7),
        end=T0 + timedelta(days=14),
        max_redemption_amount=None,
    )
    return windows.open_window(db, w.id, now=T0)
