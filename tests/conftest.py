import os

# Settings are read at import time; point them at throwaway values first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TOKENS", '["test-token"]')

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.cache import get_cache
from app.core.clock import utcnow
from app.core.db import get_db
from app.models.orm.base import Base
import app.models.orm.assignment  # noqa: F401
import app.models.orm.journey  # noqa: F401
from app.models.orm.experiment import ExperimentStatus
from app.models.schemas.attribution import TouchpointData
from app.models.schemas.experiment import ExperimentCreateModel, VariationConfig


class InMemoryCache:
    """Dict-backed stand-in for the Redis cache. TTLs are recorded, not enforced."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl_seconds):
        self.store[key] = value
        self.ttls[key] = ttl_seconds

    def delete(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def cache():
    return InMemoryCache()


@pytest.fixture()
def client(session_factory, cache):
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: cache

    yield TestClient(app, headers={"Authorization": "Bearer test-token"})

    app.dependency_overrides.clear()


def make_experiment_data(**overrides) -> ExperimentCreateModel:
    data = {
        "name": "checkout-button",
        "status": ExperimentStatus.RUNNING,
        "traffic_allocation": 100,
        "salt": "abc",
        "variations": [
            VariationConfig(key="A", weight=50),
            VariationConfig(key="B", weight=50),
        ],
    }
    data.update(overrides)
    return ExperimentCreateModel(**data)


def make_touchpoint(channel: str, days_ago: float = 0.0, **fields) -> TouchpointData:
    return TouchpointData(
        channel=channel, timestamp=utcnow() - timedelta(days=days_ago), **fields
    )
