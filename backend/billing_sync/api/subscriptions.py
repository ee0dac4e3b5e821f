"""Subscriptions API routes"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing_sync.core.config import settings
from billing_sync.core.errors import (
    AccountNotFound,
    BillingSyncError,
    CodecError,
    InvalidAction,
    OptimisticLockExhausted,
    ProviderPermanentError,
    ProviderTransientError
)
from billing_sync.core.security import require_auth
from billing_sync.db.session import SessionLocal, get_db
from billing_sync.schemas.subscriptions import (
    CancelRequest,
    ChangePlanRequest,
    CheckoutRequest,
    InvoicesResponse,
    PaymentMethodsResponse,
    PortalRequest,
    SessionResponse,
    SubscriptionResponse,
    UpcomingInvoiceResponse
)
from billing_sync.services.subscription_service import SubscriptionService, get_subscription_service

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


def get_session_factory():
    """Dependency: session factory for work that runs off the request's session"""
    return SessionLocal


def _raise_for_action_error(e: BillingSyncError, account_id: str, action: str):
    """Map a user-action failure onto its HTTP status"""
    if isinstance(e, AccountNotFound):
        raise HTTPException(404, str(e))
    if isinstance(e, InvalidAction):
        raise HTTPException(400, str(e))
    if isinstance(e, OptimisticLockExhausted):
        raise HTTPException(409, "Subscription is being updated; please try again")
    if isinstance(e, ProviderTransientError):
        raise HTTPException(503, "Billing provider unavailable; please retry")
    if isinstance(e, ProviderPermanentError):
        raise HTTPException(502, str(e))
    logger.error(f"Error during {action} for account {account_id}: {e}", exc_info=True)
    raise HTTPException(500, f"Failed to {action}")


# ============================================================================
# WEBHOOK
# ============================================================================

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    session_factory=Depends(get_session_factory),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Handle Stripe webhook events

    Note: the body is read as raw bytes; signature verification needs them unparsed.
    Acknowledged (200) once the event is durably claimed; transient failures
    return 503 so the provider redelivers.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise HTTPException(500, "Webhook secret not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    def process():
        # Own session: on budget timeout this thread may outlive the request
        db = session_factory()
        try:
            return service.process_webhook(db, payload, sig_header)
        finally:
            db.close()

    try:
        return await asyncio.wait_for(
            asyncio.to_thread(process),
            timeout=settings.WEBHOOK_PROCESSING_BUDGET_SECONDS
        )
    except CodecError as e:
        raise HTTPException(400, str(e))
    except asyncio.TimeoutError:
        logger.error(f"Webhook processing exceeded {settings.WEBHOOK_PROCESSING_BUDGET_SECONDS}s budget")
        return JSONResponse(status_code=503, content={"status": "retry", "error": "Processing budget exceeded"})
    except Exception as e:
        # Unclaimed; let the provider redeliver
        logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
        return JSONResponse(status_code=503, content={"status": "retry", "error": "Webhook processing failed"})


# ============================================================================
# PLANS AND CURRENT STATE
# ============================================================================

@router.get("/plans")
def get_subscription_plans(service: SubscriptionService = Depends(get_subscription_service)):
    """Get available subscription plans"""
    return {"plans": service.list_plans()}


@router.get("/me", response_model=SubscriptionResponse)
def get_current_subscription(
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Get the account's current subscription record"""
    try:
        return service.get_subscription(db, account_id).to_dict()
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "load subscription")


@router.post("/sync", response_model=SubscriptionResponse)
def sync_subscription(
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Refresh the record from the provider's current view"""
    try:
        return service.sync_from_provider(db, account_id).to_dict()
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "sync subscription")


@router.get("/upcoming-invoice", response_model=UpcomingInvoiceResponse)
def get_upcoming_invoice(
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Preview the next invoice for the live subscription"""
    try:
        return service.get_upcoming_invoice(db, account_id)
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "load upcoming invoice")


@router.get("/payment-methods", response_model=PaymentMethodsResponse)
def get_payment_methods(
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """List cards on file for the account's customer"""
    try:
        return service.list_payment_methods(db, account_id)
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "load payment methods")


@router.get("/invoices", response_model=InvoicesResponse)
def get_invoice_history(
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    try:
        return service.list_invoices(db, account_id)
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "load invoices")


# ============================================================================
# HOSTED SESSIONS
# ============================================================================

@router.post("/checkout-session", response_model=SessionResponse)
def create_checkout_session(
    checkout_request: CheckoutRequest,
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Create Stripe checkout session for subscription"""
    try:
        return service.create_checkout_session(
            db,
            account_id,
            checkout_request.plan,
            success_url=checkout_request.success_url,
            cancel_url=checkout_request.cancel_url
        )
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "create checkout session")


@router.post("/portal-session", response_model=SessionResponse)
def create_portal_session(
    portal_request: PortalRequest,
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Get Stripe customer portal URL"""
    try:
        return service.create_portal_session(db, account_id, return_url=portal_request.return_url)
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "create portal session")


# ============================================================================
# USER ACTIONS
# ============================================================================

@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    cancel_request: CancelRequest,
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Cancel at period end, or immediately when requested"""
    try:
        return service.cancel_subscription(
            db, account_id, cancel_immediately=cancel_request.cancel_immediately
        ).to_dict()
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "cancel subscription")


@router.post("/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription(
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Undo a scheduled cancellation"""
    try:
        return service.reactivate_subscription(db, account_id).to_dict()
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "reactivate subscription")


@router.put("/plan", response_model=SubscriptionResponse)
def change_plan(
    plan_request: ChangePlanRequest,
    account_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Switch the live subscription to another plan (prorated)"""
    try:
        return service.change_plan(db, account_id, plan_request.plan).to_dict()
    except BillingSyncError as e:
        _raise_for_action_error(e, account_id, "change plan")
