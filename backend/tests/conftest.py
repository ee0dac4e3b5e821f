"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator, Optional
from unittest.mock import Mock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
WEBHOOK_SECRET = "whsec_test_secret"
PLANS = {
    "starter": {"price_id": "price_starter", "product_id": "prod_starter", "name": "Starter"},
    "pro": {"price_id": "price_pro", "product_id": "prod_pro", "name": "Pro"},
}
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["PLAN_CATALOG"] = json.dumps(PLANS)
os.environ["RECONCILE_RETRY_BACKOFF_MS"] = "0"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

from billing_sync.main import app
from billing_sync.api.subscriptions import get_session_factory
from billing_sync.db import redis as redis_module
from billing_sync.db.session import get_db
from billing_sync.models import Base
from billing_sync.models.account import Account
from billing_sync.services.account_directory import AccountDirectory
from billing_sync.services.billing_client import StripeBillingClient
from billing_sync.services.plan_catalog import PlanCatalog
from billing_sync.services.reconciler import Reconciler
from billing_sync.services.subscription_service import SubscriptionService, get_subscription_service


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def catalog() -> PlanCatalog:
    return PlanCatalog(PLANS)


@pytest.fixture(scope="function")
def cache_invalidator() -> Mock:
    return Mock()


@pytest.fixture(scope="function")
def reconciler(catalog, cache_invalidator) -> Reconciler:
    return Reconciler(catalog, cache_invalidator, max_attempts=5, backoff_ms=0)


@pytest.fixture(scope="function")
def billing_client() -> Mock:
    """Outbound client stub; tests set return values per call"""
    return Mock(spec=StripeBillingClient)


@pytest.fixture(scope="function")
def service(reconciler, billing_client, catalog) -> SubscriptionService:
    return SubscriptionService(
        reconciler=reconciler,
        billing_client=billing_client,
        catalog=catalog,
        directory=AccountDirectory()
    )


@pytest.fixture(scope="function")
def account(db_session: Session) -> Account:
    """Account already bound to a Stripe customer"""
    account = Account(id="acct_1", email="owner@example.com", name="Owner", external_customer_id="cus_1")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture(scope="function")
def new_account(db_session: Session) -> Account:
    """Account that has never touched billing"""
    account = Account(id="acct_new", email="new@example.com", name="Newcomer")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, service) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and injected service"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_subscription_service] = lambda: service

    try:
        with patch("billing_sync.main.initialize_otel", return_value=False):
            with patch("billing_sync.main.init_db"):
                with patch("billing_sync.main.instrument_sqlalchemy"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, account: Account, mock_redis) -> TestClient:
    """Client carrying a session cookie for acct_1"""
    mock_redis.setex("session:sess_test", 2592000, account.id)
    client.cookies.set("session_id", "sess_test")
    return client


# ============================================================================
# WEBHOOK HELPERS
# ============================================================================

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for a payload"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def subscription_event(
    event_id: str,
    created: int,
    event_type: str = "customer.subscription.updated",
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    status: str = "active",
    price_id: Optional[str] = "price_starter",
    period_end: Optional[int] = None,
    cancel_at_period_end: bool = False
) -> dict:
    """Stripe event envelope carrying a subscription object"""
    item = {"id": "si_1", "price": {"id": price_id, "product": "prod_x"}} if price_id else {"id": "si_1"}
    subscription = {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"data": [item]},
    }
    if period_end is not None:
        subscription["current_period_end"] = period_end
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {"object": subscription},
    }


def invoice_event(event_id: str, created: int, paid: bool = True,
                  subscription_id: str = "sub_1", customer_id: str = "cus_1") -> dict:
    return {
        "id": event_id,
        "type": "invoice.paid" if paid else "invoice.payment_failed",
        "created": created,
        "data": {"object": {"id": f"in_{event_id}", "customer": customer_id, "subscription": subscription_id}},
    }
