"""
Pytest configuration and fixtures for redemption engine tests.

Each test gets its own SQLite file. Transactions start with BEGIN IMMEDIATE
so concurrent writers from worker threads serialize the way row locks do on
PostgreSQL. Redis is replaced by fakeredis.
"""
import os
import tempfile
from datetime import timedelta
from types import SimpleNamespace

import pytest

# Must be set before redemption_engine.config is imported
_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="redemption-engine-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_BOOTSTRAP_DIR, 'bootstrap.db')}"
os.environ["API_KEY"] = "test-api-key"
os.environ["REDEMPTION_TOKEN_SECRET"] = "test-token-secret"

import fakeredis  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from redemption_engine.clock import utcnow  # noqa: E402
from redemption_engine.config import settings  # noqa: E402
from redemption_engine.db import models  # noqa: E402,F401
from redemption_engine.db.database import Base  # noqa: E402
from redemption_engine.models.voucher import VoucherForRedemption, VoucherProvider  # noqa: E402
from redemption_engine.services.credential_service import CredentialService  # noqa: E402
from redemption_engine.services.fraud_case_service import FraudCaseService  # noqa: E402
from redemption_engine.services.fraud_scoring_service import FraudScoringService  # noqa: E402
from redemption_engine.services.redemption_recorder import RedemptionRecorder  # noqa: E402
from redemption_engine.services.redemption_service import RedemptionService  # noqa: E402
from redemption_engine.services.redemption_validator import RedemptionValidator  # noqa: E402
from redemption_engine.services.replay_store import ReplayStore  # noqa: E402
from redemption_engine.services.voucher_client import is_redeemable  # noqa: E402

API_HEADERS = {"X-API-Key": "test-api-key"}


class FakeVoucherDirectory:
    """In-memory voucher service"""

    def __init__(self):
        self.vouchers = {}

    def add(self, voucher: VoucherForRedemption) -> VoucherForRedemption:
        self.vouchers[voucher.id] = voucher
        return voucher

    def get_voucher_for_redemption(self, voucher_id):
        return self.vouchers.get(voucher_id)

    def is_voucher_redeemable(self, voucher_id):
        return is_redeemable(self.vouchers.get(voucher_id))


def make_voucher(**overrides) -> VoucherForRedemption:
    data = {
        "id": "voucher-1",
        "provider_id": "provider-1",
        "state": "PUBLISHED",
        "discount_type": "PERCENTAGE",
        "discount_value": 15,
        "currency": "THB",
        "expires_at": utcnow() + timedelta(days=30),
        "max_redemptions": None,
        "max_redemptions_per_user": 1,
        "current_redemptions": 0,
        "provider": VoucherProvider(id="provider-1", name="Corner Cafe"),
    }
    data.update(overrides)
    return VoucherForRedemption(**data)


@pytest.fixture(autouse=True)
def no_quiet_hours(monkeypatch):
    """Disable the time-of-day detector so results don't depend on the clock."""
    monkeypatch.setattr(settings, "FRAUD_QUIET_HOURS_START", 0)
    monkeypatch.setattr(settings, "FRAUD_QUIET_HOURS_END", 0)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'redemptions.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def store(redis_client):
    return ReplayStore(redis_client)


@pytest.fixture
def vouchers():
    return FakeVoucherDirectory()


@pytest.fixture
def services(store, vouchers):
    credentials = CredentialService(store)
    recorder = RedemptionRecorder()
    validator = RedemptionValidator(vouchers, recorder)
    scoring = FraudScoringService(recorder, store)
    cases = FraudCaseService(store)
    return SimpleNamespace(
        credentials=credentials,
        recorder=recorder,
        validator=validator,
        scoring=scoring,
        cases=cases,
        redemptions=RedemptionService(credentials, validator, recorder, scoring, cases)
    )


@pytest.fixture
def client(session_factory, redis_client, vouchers, monkeypatch):
    """TestClient wired to the per-test database, fakeredis and fake vouchers."""
    from redemption_engine.dependencies import get_db
    from redemption_engine.main import app
    from redemption_engine.services.redemption_validator import redemption_validator
    from redemption_engine.services.replay_store import replay_store

    monkeypatch.setattr(replay_store, "_redis_client", redis_client)
    monkeypatch.setattr(redemption_validator, "vouchers", vouchers)

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
