from __future__ import annotations

import os

os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import imaginaryverse.models  # noqa: F401  registers every table on Base.metadata
from imaginaryverse.api.deps import get_subscription_service
from imaginaryverse.core.security import create_access_token
from imaginaryverse.db.base import Base
from imaginaryverse.db.session import get_db
from imaginaryverse.main import app
from tests.testkit import ApiClient, FakeClock, build_harness, make_plan, make_user


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = Session(bind=engine, expire_on_commit=False)
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def h(db, clock):
    return build_harness(db, clock)


@pytest.fixture()
def plans(db, h):
    return {
        "free": h.catalog.ensure_free_plan(),
        "trial": make_plan(db, name="Trial", type="trial", total=20, image=10, prompt=10, price=0),
        "basic": make_plan(db, name="Basic", type="basic", total=50, image=25, prompt=25, price=2.99),
        "standard": make_plan(
            db,
            name="Standard",
            type="standard",
            total=100,
            image=50,
            prompt=50,
            price=9.99,
            google_product_id="com.imaginaryverse.standard_monthly",
            apple_product_id="com.imaginaryverse.ios.standard_monthly",
        ),
        "premium": make_plan(db, name="Premium", type="premium", total=100, image=50, prompt=50, price=19.99),
        "premium_plus": make_plan(db, name="Premium Plus", type="premium", total=200, image=100, prompt=100, price=29.99),
    }


@pytest.fixture()
def user(db):
    return make_user(db, username="painter", email="painter@example.com")


@pytest.fixture()
def api(db, h):
    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_subscription_service] = lambda: h.service
    try:
        with TestClient(app) as client:
            yield ApiClient(client)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def token(db, plans, user) -> str:
    # Error paths roll the session back, so seeds must be committed first.
    db.commit()
    return create_access_token(str(user.id))
