"""Outbound billing client - thin wrapper over the Stripe API.

Every call is bounded by PROVIDER_TIMEOUT_SECONDS and maps Stripe failures onto
ProviderTransientError (safe to retry) or ProviderPermanentError. Creates carry
idempotency keys so a caller retrying after a timeout cannot double-create.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import stripe
from stripe import APIConnectionError, APIError, RateLimitError, StripeError

from billing_sync.core.config import settings
from billing_sync.core.errors import ProviderPermanentError, ProviderTransientError
from billing_sync.core.metrics import provider_errors_counter
from billing_sync.services.event_codec import subscription_fields
from billing_sync.utils.clock import from_unix

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (APIConnectionError, RateLimitError, APIError)


@dataclass(frozen=True)
class ProviderSubscription:
    """Normalized subscription as the provider reports it right now"""
    external_subscription_id: str
    external_customer_id: Optional[str]
    status: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: Optional[bool]
    price_or_product_id: Optional[str]

    @classmethod
    def from_stripe(cls, subscription: Any) -> "ProviderSubscription":
        return cls(**subscription_fields(subscription))


@dataclass(frozen=True)
class ProviderSession:
    id: Optional[str]
    url: str


@dataclass(frozen=True)
class UpcomingInvoice:
    """Preview of the next invoice; amounts in the currency's minor units"""
    amount_due: int
    currency: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    next_payment_attempt: Optional[datetime]


@dataclass(frozen=True)
class PaymentMethodSummary:
    id: str
    brand: Optional[str]
    last4: Optional[str]
    exp_month: Optional[int]
    exp_year: Optional[int]
    is_default: bool


@dataclass(frozen=True)
class InvoiceSummary:
    id: str
    amount_paid: int
    currency: str
    status: Optional[str]
    created: Optional[datetime]
    invoice_pdf: Optional[str]
    hosted_invoice_url: Optional[str]


def configure_stripe(timeout: int) -> None:
    """Bound every Stripe request; retries are the caller's decision"""
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
    stripe.max_network_retries = 0


class StripeBillingClient:
    """Injected by the host application; holds no module-level API key"""

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        configure_stripe(timeout or settings.PROVIDER_TIMEOUT_SECONDS)

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        if not self._api_key:
            provider_errors_counter.labels(operation=operation, kind="permanent").inc()
            raise ProviderPermanentError("Stripe not configured")
        try:
            return fn(*args, api_key=self._api_key, **kwargs)
        except TRANSIENT_ERRORS as e:
            provider_errors_counter.labels(operation=operation, kind="transient").inc()
            logger.warning(f"Transient Stripe error during {operation}: {e}")
            raise ProviderTransientError(str(e), code=getattr(e, "code", None),
                                         http_status=getattr(e, "http_status", None)) from e
        except StripeError as e:
            http_status = getattr(e, "http_status", None)
            if http_status is not None and http_status >= 500:
                provider_errors_counter.labels(operation=operation, kind="transient").inc()
                logger.warning(f"Stripe {http_status} during {operation}: {e}")
                raise ProviderTransientError(str(e), code=getattr(e, "code", None),
                                             http_status=http_status) from e
            provider_errors_counter.labels(operation=operation, kind="permanent").inc()
            logger.error(f"Stripe rejected {operation}: {e}")
            message = getattr(e, "user_message", None) or str(e)
            raise ProviderPermanentError(message, code=getattr(e, "code", None),
                                         http_status=http_status) from e

    # ------------------------------------------------------------------
    # Customers and sessions
    # ------------------------------------------------------------------

    def create_customer(self, account_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"account_id": account_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = self._call(
            "create_customer", stripe.Customer.create,
            idempotency_key=f"customer-{account_id}", **params
        )
        logger.info(f"Created Stripe customer {customer.id} for account {account_id}")
        return customer.id

    def create_checkout_session(self, account_id: str, customer_id: str, price_id: str,
                                success_url: str, cancel_url: str) -> ProviderSession:
        session = self._call(
            "create_checkout_session", stripe.checkout.Session.create,
            customer=customer_id,
            client_reference_id=account_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            billing_address_collection="auto",
            metadata={"account_id": account_id},
        )
        return ProviderSession(id=session.id, url=session.url)

    def create_portal_session(self, customer_id: str, return_url: str) -> ProviderSession:
        session = self._call(
            "create_portal_session", stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return ProviderSession(id=getattr(session, "id", None), url=session.url)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "get_subscription", stripe.Subscription.retrieve,
            subscription_id, expand=["items.data.price"]
        )
        return ProviderSubscription.from_stripe(subscription)

    def update_subscription(self, subscription_id: str, new_price_id: str) -> ProviderSubscription:
        """Swap the subscription's single item onto a new price, prorating"""
        current = self._call("get_subscription", stripe.Subscription.retrieve, subscription_id)
        items = current["items"]["data"]
        if not items:
            raise ProviderPermanentError(f"Subscription {subscription_id} has no items")
        subscription = self._call(
            "update_subscription", stripe.Subscription.modify,
            subscription_id,
            items=[{"id": items[0]["id"], "price": new_price_id}],
            proration_behavior="create_prorations",
        )
        return ProviderSubscription.from_stripe(subscription)

    def cancel_subscription(self, subscription_id: str, at_period_end: bool) -> ProviderSubscription:
        """Idempotent at the provider: repeating either form is safe"""
        if at_period_end:
            subscription = self._call(
                "cancel_subscription", stripe.Subscription.modify,
                subscription_id, cancel_at_period_end=True
            )
        else:
            subscription = self._call(
                "cancel_subscription", stripe.Subscription.cancel, subscription_id
            )
        return ProviderSubscription.from_stripe(subscription)

    def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "reactivate_subscription", stripe.Subscription.modify,
            subscription_id, cancel_at_period_end=False
        )
        return ProviderSubscription.from_stripe(subscription)

    # ------------------------------------------------------------------
    # Read-throughs (never folded into the subscription record)
    # ------------------------------------------------------------------

    def get_upcoming_invoice(self, customer_id: str, subscription_id: str) -> UpcomingInvoice:
        invoice = self._call(
            "get_upcoming_invoice", stripe.Invoice.create_preview,
            customer=customer_id, subscription=subscription_id
        )
        return UpcomingInvoice(
            amount_due=invoice.get("amount_due") or 0,
            currency=invoice.get("currency"),
            period_start=from_unix(invoice.get("period_start")),
            period_end=from_unix(invoice.get("period_end")),
            next_payment_attempt=from_unix(invoice.get("next_payment_attempt")),
        )

    def list_payment_methods(self, customer_id: str) -> List[PaymentMethodSummary]:
        """Cards on file, flagged against the customer's invoice default"""
        customer = self._call("get_customer", stripe.Customer.retrieve, customer_id)
        default_id = (customer.get("invoice_settings") or {}).get("default_payment_method")
        if not isinstance(default_id, str):
            default_id = default_id.get("id") if default_id else None

        methods = self._call(
            "list_payment_methods", stripe.PaymentMethod.list,
            customer=customer_id, type="card"
        )
        summaries = []
        for method in methods["data"]:
            card = method.get("card") or {}
            summaries.append(PaymentMethodSummary(
                id=method["id"],
                brand=card.get("brand"),
                last4=card.get("last4"),
                exp_month=card.get("exp_month"),
                exp_year=card.get("exp_year"),
                is_default=method["id"] == default_id,
            ))
        return summaries

    def list_invoices(self, customer_id: str, limit: int = 24) -> List[InvoiceSummary]:
        invoices = self._call(
            "list_invoices", stripe.Invoice.list,
            customer=customer_id, limit=limit
        )
        return [
            InvoiceSummary(
                id=invoice["id"],
                amount_paid=invoice.get("amount_paid") or 0,
                currency=invoice.get("currency"),
                status=invoice.get("status"),
                created=from_unix(invoice.get("created")),
                invoice_pdf=invoice.get("invoice_pdf"),
                hosted_invoice_url=invoice.get("hosted_invoice_url"),
            )
            for invoice in invoices["data"]
        ]
