"""
Shared fixtures: an in-memory SQLite database per test, a hasher with a
fixed test salt, a registered shop, and a signed-request API client.
"""
import json
import os
import tempfile
import time

os.environ.setdefault("CUSTOMER_HASH_SALT", "test-salt-0123456789abcdef")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "courier_intel_test_logs"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import courier_intel.models  # noqa: F401
from courier_intel.models.base import Base, enable_sqlite_foreign_keys
from courier_intel.services import shop_service
from courier_intel.services.customer_hasher import CustomerHasher
from courier_intel.services.ingestion_service import IngestionService
from courier_intel.services.request_authenticator import (
    HEADER_API_KEY,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    sign,
)
from courier_intel.utils.locks import KeyedLockRegistry

TEST_SALT = "test-salt-0123456789abcdef"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
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


@pytest.fixture
def hasher():
    return CustomerHasher(TEST_SALT)


@pytest.fixture
def shop(db):
    return shop_service.create_shop(db, "Alpha Store")


@pytest.fixture
def other_shop(db):
    return shop_service.create_shop(db, "Beta Store")


@pytest.fixture
def ingestion(db, hasher):
    return IngestionService(db, hasher, locks=KeyedLockRegistry(), timeout_seconds=30)


def signed_headers(shop, method, path, body=b"", timestamp=None):
    """Headers a storefront plugin would send for this request."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return {
        HEADER_API_KEY: shop.api_key,
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: sign(shop.api_secret, ts, method, path, body),
        "Content-Type": "application/json",
    }


class SignedClient:
    """TestClient wrapper that signs every request as the given shop."""

    def __init__(self, client, shop):
        self.client = client
        self.shop = shop

    def post(self, path, payload):
        body = json.dumps(payload).encode("utf-8")
        return self.client.post(path, content=body, headers=signed_headers(self.shop, "POST", path, body))

    def get(self, path):
        return self.client.get(path, headers=signed_headers(self.shop, "GET", path))

    def delete(self, path):
        return self.client.delete(path, headers=signed_headers(self.shop, "DELETE", path))


@pytest.fixture
def client(session_factory, hasher):
    from fastapi.testclient import TestClient

    from courier_intel.api.deps import get_hasher
    from courier_intel.main import app
    from courier_intel.models.base import get_db

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_hasher] = lambda: hasher
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def api(client, shop):
    return SignedClient(client, shop)
