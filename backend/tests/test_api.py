"""API route tests"""
import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from billing_sync.core.config import settings
from billing_sync.core.errors import (
    OptimisticLockExhausted,
    ProviderPermanentError,
    ProviderTransientError
)
from billing_sync.main import app
from billing_sync.models.ledger import IdempotencyRecord
from billing_sync.services import subscription_store
from billing_sync.services.billing_client import (
    PaymentMethodSummary,
    ProviderSession,
    ProviderSubscription,
    UpcomingInvoice
)
from billing_sync.services.event_codec import BillingEvent, BillingEventType
from billing_sync.utils.clock import utc_now
from conftest import sign_payload, subscription_event

PERIOD_END = datetime(2026, 12, 31, tzinfo=timezone.utc)


def post_webhook(client, envelope, signature=None):
    payload = json.dumps(envelope)
    return client.post(
        "/api/subscriptions/webhook",
        content=payload,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": signature or sign_payload(payload),
        }
    )


def make_live(service, db):
    service.reconciler.apply(db, "acct_1", BillingEvent(
        external_event_id="evt_live",
        type=BillingEventType.SUBSCRIPTION_CREATED,
        occurred_at=utc_now() - timedelta(minutes=5),
        external_customer_id="cus_1",
        external_subscription_id="sub_1",
        status="active",
        current_period_end=PERIOD_END,
        cancel_at_period_end=False,
        price_or_product_id="price_starter"
    ))


def provider_view(**overrides):
    fields = dict(
        external_subscription_id="sub_1",
        external_customer_id="cus_1",
        status="active",
        current_period_end=PERIOD_END,
        cancel_at_period_end=False,
        price_or_product_id="price_starter"
    )
    fields.update(overrides)
    return ProviderSubscription(**fields)


@pytest.mark.critical
class TestWebhookEndpoint:
    """Test webhook acknowledgement semantics"""

    def test_valid_event_acknowledged(self, client, db_session, account):
        """Test a signed event is applied and acknowledged with 200"""
        response = post_webhook(client, subscription_event("evt_1", int(time.time())))

        assert response.status_code == 200
        assert response.json()["status"] == "applied"
        assert subscription_store.read(db_session, "acct_1").status == "active"

    def test_duplicate_acknowledged(self, client, account):
        """Test a redelivered event is acknowledged without reapplying"""
        envelope = subscription_event("evt_1", int(time.time()))
        post_webhook(client, envelope)

        response = post_webhook(client, envelope)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored_duplicate"

    def test_invalid_signature_rejected(self, client, db_session, account):
        """Test a bad signature is a 400 and leaves no ledger entry"""
        payload = json.dumps(subscription_event("evt_1", int(time.time())))

        response = post_webhook(
            client, json.loads(payload), signature=sign_payload(payload, secret="whsec_wrong")
        )

        assert response.status_code == 400
        assert db_session.query(IdempotencyRecord).count() == 0

    def test_malformed_payload_rejected(self, client):
        """Test a signed body that is not JSON is a 400"""
        response = client.post(
            "/api/subscriptions/webhook",
            content="not json",
            headers={"Stripe-Signature": sign_payload("not json")}
        )

        assert response.status_code == 400

    def test_non_utf8_payload_rejected(self, client, db_session):
        """Test a body that is not UTF-8 is a 400 so the provider does not redeliver it"""
        response = client.post(
            "/api/subscriptions/webhook",
            content=b'{"id": "evt_1", "x": "\xff\xfe"}',
            headers={"Stripe-Signature": sign_payload("{}")}
        )

        assert response.status_code == 400
        assert db_session.query(IdempotencyRecord).count() == 0

    def test_unconfigured_secret(self, client):
        """Test webhook returns 500 when the secret is not configured"""
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", ""):
            response = post_webhook(client, subscription_event("evt_1", int(time.time())))

        assert response.status_code == 500

    def test_processing_failure_asks_for_redelivery(self, client, service):
        """Test an unexpected failure is a 503 so the provider redelivers"""
        with patch.object(service, "process_webhook", side_effect=RuntimeError("database unavailable")):
            response = post_webhook(client, subscription_event("evt_1", int(time.time())))

        assert response.status_code == 503
        assert response.json()["status"] == "retry"

    def test_processing_budget_exceeded(self, client, service):
        """Test processing beyond the time budget is a 503"""
        with patch.object(settings, "WEBHOOK_PROCESSING_BUDGET_SECONDS", 0.05):
            with patch.object(service, "process_webhook", side_effect=lambda *args: time.sleep(0.5)):
                response = post_webhook(client, subscription_event("evt_1", int(time.time())))

        assert response.status_code == 503
        assert response.json()["error"] == "Processing budget exceeded"


@pytest.mark.high
class TestSubscriptionEndpoints:
    """Test account-scoped subscription routes"""

    def test_requires_session(self, client):
        """Test account routes reject requests without a session cookie"""
        response = client.get("/api/subscriptions/me")

        assert response.status_code == 401

    def test_expired_session(self, client):
        """Test an unknown session id is rejected"""
        client.cookies.set("session_id", "sess_gone")

        response = client.get("/api/subscriptions/me")

        assert response.status_code == 401

    def test_plans(self, client):
        """Test the catalog is listed"""
        response = client.get("/api/subscriptions/plans")

        assert response.status_code == 200
        assert [plan["id"] for plan in response.json()["plans"]] == ["pro", "starter"]

    def test_me_for_new_account(self, authenticated_client):
        """Test an account that never subscribed reads as status none"""
        response = authenticated_client.get("/api/subscriptions/me")

        assert response.status_code == 200
        data = response.json()
        assert data["account_id"] == "acct_1"
        assert data["status"] == "none"
        assert data["version"] == 0

    def test_cancel(self, authenticated_client, service, billing_client, db_session):
        """Test cancel at period end returns the updated record"""
        make_live(service, db_session)
        billing_client.cancel_subscription.return_value = provider_view(cancel_at_period_end=True)

        response = authenticated_client.post("/api/subscriptions/cancel", json={})

        assert response.status_code == 200
        assert response.json()["cancel_at_period_end"] is True
        assert response.json()["status"] == "active"

    def test_cancel_without_subscription(self, authenticated_client):
        """Test cancelling with nothing live is a 400"""
        response = authenticated_client.post("/api/subscriptions/cancel", json={"cancel_immediately": True})

        assert response.status_code == 400

    @pytest.mark.parametrize("error,status_code", [
        (ProviderTransientError("timeout"), 503),
        (ProviderPermanentError("No such subscription"), 502),
    ])
    def test_cancel_provider_failure(self, authenticated_client, service, billing_client, db_session,
                                     error, status_code):
        """Test provider failures surface with their HTTP status and leave the record unchanged"""
        make_live(service, db_session)
        billing_client.cancel_subscription.side_effect = error
        billing_client.get_subscription.return_value = provider_view()

        response = authenticated_client.post("/api/subscriptions/cancel", json={})

        assert response.status_code == status_code
        assert subscription_store.read(db_session, "acct_1").cancel_at_period_end is False

    def test_lock_conflict_is_409(self, authenticated_client, service):
        """Test a contended record is reported as a conflict"""
        with patch.object(service, "cancel_subscription", side_effect=OptimisticLockExhausted("acct_1", 5)):
            response = authenticated_client.post("/api/subscriptions/cancel", json={})

        assert response.status_code == 409

    def test_reactivate_without_scheduled_cancel(self, authenticated_client, service, db_session):
        """Test reactivating an active subscription is a 400"""
        make_live(service, db_session)

        response = authenticated_client.post("/api/subscriptions/reactivate")

        assert response.status_code == 400

    def test_change_plan(self, authenticated_client, service, billing_client, db_session):
        """Test a plan change returns the record on the new plan"""
        make_live(service, db_session)
        billing_client.update_subscription.return_value = provider_view(price_or_product_id="price_pro")

        response = authenticated_client.put("/api/subscriptions/plan", json={"plan": "pro"})

        assert response.status_code == 200
        assert response.json()["plan_id"] == "pro"

    def test_sync(self, authenticated_client, service, billing_client, db_session):
        """Test a manual sync applies the provider's view"""
        make_live(service, db_session)
        billing_client.get_subscription.return_value = provider_view(status="past_due")

        response = authenticated_client.post("/api/subscriptions/sync")

        assert response.status_code == 200
        assert response.json()["status"] == "past_due"

    def test_checkout_session(self, authenticated_client, billing_client):
        """Test checkout returns the hosted session URL"""
        billing_client.create_checkout_session.return_value = ProviderSession(id="cs_1", url="https://checkout.test/cs_1")

        response = authenticated_client.post("/api/subscriptions/checkout-session", json={"plan": "pro"})

        assert response.status_code == 200
        assert response.json() == {"session_id": "cs_1", "url": "https://checkout.test/cs_1"}
        billing_client.create_customer.assert_not_called()

    def test_checkout_unknown_plan(self, authenticated_client):
        """Test checkout for an unknown plan is a 400"""
        response = authenticated_client.post("/api/subscriptions/checkout-session", json={"plan": "enterprise"})

        assert response.status_code == 400

    def test_portal_session(self, authenticated_client, billing_client):
        """Test the customer portal URL is returned"""
        billing_client.create_portal_session.return_value = ProviderSession(id="bps_1", url="https://portal.test")

        response = authenticated_client.post("/api/subscriptions/portal-session", json={})

        assert response.status_code == 200
        assert response.json()["url"] == "https://portal.test"

    def test_upcoming_invoice(self, authenticated_client, service, billing_client, db_session):
        """Test the invoice preview is returned for the live subscription"""
        make_live(service, db_session)
        billing_client.get_upcoming_invoice.return_value = UpcomingInvoice(
            amount_due=2900, currency="usd", period_start=None, period_end=PERIOD_END, next_payment_attempt=None
        )

        response = authenticated_client.get("/api/subscriptions/upcoming-invoice")

        assert response.status_code == 200
        assert response.json()["invoice"]["amount_due"] == 2900
        assert response.json()["invoice"]["currency"] == "usd"

    def test_payment_methods(self, authenticated_client, billing_client):
        """Test cards on file are listed"""
        billing_client.list_payment_methods.return_value = [
            PaymentMethodSummary(id="pm_1", brand="visa", last4="4242", exp_month=1, exp_year=2030, is_default=True)
        ]

        response = authenticated_client.get("/api/subscriptions/payment-methods")

        assert response.status_code == 200
        assert response.json()["payment_methods"][0]["is_default"] is True

    def test_invoices_provider_unavailable(self, authenticated_client, billing_client):
        """Test a provider outage on a read-through is a 503"""
        billing_client.list_invoices.side_effect = ProviderTransientError("timeout")

        response = authenticated_client.get("/api/subscriptions/invoices")

        assert response.status_code == 503


@pytest.mark.medium
class TestMonitoring:
    """Test health and metrics endpoints"""

    def test_health(self, client):
        """Test health check reports healthy"""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "ok", "cache": "ok"}

    def test_health_degraded_without_cache(self, client, mock_redis):
        """Test a cache outage degrades health but keeps it serving"""
        with patch.object(mock_redis, "ping", side_effect=ConnectionError("Connection refused")):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_metrics_exposed(self, client, account):
        """Test webhook counters appear in the Prometheus exposition"""
        post_webhook(client, subscription_event("evt_1", int(time.time())))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "billing_sync_webhook_events_total" in response.text


@pytest.mark.medium
class TestLifespan:
    """Test application startup and shutdown"""

    def test_shutdown_drains_service(self, mock_redis):
        """Test pending cache invalidations are drained after the background tasks stop"""
        with patch("billing_sync.main.initialize_otel", return_value=False), \
                patch("billing_sync.main.init_db"), \
                patch("billing_sync.main.instrument_sqlalchemy"), \
                patch("billing_sync.main.shutdown_subscription_service") as drain:
            with TestClient(app):
                drain.assert_not_called()

        drain.assert_called_once_with()
