"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, Iterator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.api.deps import get_session_factory
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, Project, ProjectMember, User
from app.monitoring.registry import registry as metrics_registry


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    metrics_registry.reset()
    yield
    metrics_registry.reset()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, autoflush=False, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependencies overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    """Create and persist users with unique e-mail addresses."""

    counter = {"value": 0}

    def factory(name: str | None = None, *, is_active: bool = True) -> User:
        counter["value"] += 1
        label = name or f"user{counter['value']}"
        user = User(email=f"{label}@example.com", name=label.title(), is_active=is_active)
        db_session.add(user)
        db_session.commit()
        return user

    return factory


@pytest.fixture()
def make_project(db_session) -> Callable[..., Project]:
    """Create a project whose listed users are active members."""

    def factory(name: str, *members: User, inactive: tuple[User, ...] = ()) -> Project:
        project = Project(name=name)
        db_session.add(project)
        db_session.flush()
        for member in members:
            db_session.add(ProjectMember(project_id=project.id, user_id=member.id))
        for member in inactive:
            db_session.add(ProjectMember(project_id=project.id, user_id=member.id, is_active=False))
        db_session.commit()
        return project

    return factory


@pytest.fixture()
def auth_headers() -> Callable[[User | int], dict[str, str]]:
    """Build bearer headers for a user or user id."""

    def build(user: User | int) -> dict[str, str]:
        user_id = user if isinstance(user, int) else user.id
        token = create_access_token({"sub": str(user_id)})
        return {"Authorization": f"Bearer {token}"}

    return build
