"""
Shared fixtures for the Rescue Ops test suite.

- A fixed UTC ``now`` so every time-dependent rule is deterministic
- An isolated in-memory SQLite session per test
- Factories for role assignments and role sets
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rescue_ops.database import Base
from rescue_ops.models import db_models  # noqa: F401  registers tables on Base
from rescue_ops.models.actors import HumanActor
from rescue_ops.models.roles import RoleId
from rescue_ops.services.roles import RoleAssignmentManager
from rescue_ops.services.storage import RoleAssignmentRepository


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def now():
    """Fixed evaluation time."""
    return NOW


@pytest.fixture
def manager():
    """Role assignment manager over the default catalog."""
    return RoleAssignmentManager()


@pytest.fixture
def make_assignment(manager, now):
    """Factory: an active assignment granted ``days_ago`` days before now."""
    def _make(user_id, role_id, days_ago=1, **kwargs):
        return manager.create(
            user_id=user_id,
            role_id=role_id,
            granted_by="admin-1",
            now=now - timedelta(days=days_ago),
            **kwargs,
        )
    return _make


@pytest.fixture
def make_role_set(manager, make_assignment, now):
    """Factory: a role set holding one active assignment per role given."""
    def _make(user_id, *role_ids, **kwargs):
        assignments = [make_assignment(user_id, role_id, **kwargs) for role_id in role_ids]
        return manager.build_role_set(user_id, assignments, now)
    return _make


@pytest.fixture
def db_session():
    """In-memory database, created fresh for each test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def seed_role(db_session, make_assignment):
    """Factory: store an active assignment without eligibility checks."""
    repo = RoleAssignmentRepository(db_session)

    def _seed(user_id, role_id, **kwargs):
        return repo.add(make_assignment(user_id, role_id, **kwargs))
    return _seed


@pytest.fixture
def moderator():
    return HumanActor(user_id="mod-1", role_id=RoleId.MODERATOR)


@pytest.fixture
def lead_moderator():
    return HumanActor(user_id="lead-1", role_id=RoleId.LEAD_MODERATOR)
