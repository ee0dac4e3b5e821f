"""Subscription service - webhook processing and user-initiated subscription actions.

Both paths converge on ``Reconciler.apply``. Webhooks are decoded, claimed in the
ledger and applied; user actions apply their intent locally first, call the
provider, then fold the provider's answer back in. A rejected call reverts the
intent; a call that fails transiently re-reads the provider instead.
"""
import logging
import uuid
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_sync.core.config import settings
from billing_sync.core.errors import (
    AccountNotFound,
    CatalogUnresolved,
    CodecError,
    InvalidAction,
    OptimisticLockExhausted,
    ProviderError,
    ProviderTransientError,
    SignatureInvalid
)
from billing_sync.core.logging import webhook_logger
from billing_sync.core.metrics import (
    ledger_purged_counter,
    parked_events_counter,
    webhook_events_counter,
    webhook_rejections_counter
)
from billing_sync.models.ledger import LedgerOutcome
from billing_sync.models.parked_event import ParkedEvent
from billing_sync.models.review_flag import ReviewFlag
from billing_sync.models.subscription import SubscriptionStatus
from billing_sync.services import ledger, subscription_store
from billing_sync.services.account_directory import AccountDirectory
from billing_sync.services.billing_client import ProviderSubscription, StripeBillingClient
from billing_sync.services.cache_invalidator import RedisCacheInvalidator
from billing_sync.services.event_codec import BillingEvent, BillingEventType, decode
from billing_sync.services.plan_catalog import PlanCatalog
from billing_sync.services.reconciler import Reconciler
from billing_sync.services.subscription_store import RecordSnapshot
from billing_sync.utils.clock import utc_now

logger = logging.getLogger(__name__)

# User action timestamps must sort after whatever the record has already seen
MIN_ACTION_STEP = timedelta(milliseconds=1)


class SubscriptionService:
    """Entry point used by the API routes and background tasks"""

    def __init__(
        self,
        reconciler: Reconciler,
        billing_client: StripeBillingClient,
        catalog: PlanCatalog,
        directory: AccountDirectory
    ):
        self.reconciler = reconciler
        self.billing_client = billing_client
        self.catalog = catalog
        self.directory = directory

    # ========================================================================
    # WEBHOOK PROCESSING
    # ========================================================================

    def process_webhook(self, db: Session, raw_payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify, decode, claim and apply one webhook delivery.

        Returns:
            Dict with the ledger outcome; every outcome here is acknowledged with 200

        Raises:
            SignatureInvalid / PayloadMalformed: rejected delivery (400)
        """
        try:
            event = decode(
                raw_payload, signature_header, settings.STRIPE_WEBHOOK_SECRET,
                tolerance=settings.WEBHOOK_TOLERANCE_SECONDS
            )
        except CodecError as e:
            reason = "signature" if isinstance(e, SignatureInvalid) else "payload"
            webhook_rejections_counter.labels(reason=reason).inc()
            webhook_logger.warning(f"Rejected webhook delivery ({reason}): {e}")
            raise

        return self.handle_event(db, event)

    def handle_event(self, db: Session, event: BillingEvent) -> Dict[str, Any]:
        """Claim and apply an already-decoded provider event"""
        result = self._handle_event(db, event)
        outcome = result["status"]
        webhook_events_counter.labels(outcome=outcome).inc()
        webhook_logger.info(
            f"Event {event.external_event_id} ({event.provider_type}) -> {outcome}"
            f" account={result.get('account_id')} version={result.get('version')}"
        )
        return result

    def _handle_event(self, db: Session, event: BillingEvent) -> Dict[str, Any]:
        if ledger.is_processed(db, event.external_event_id):
            return self._result(event, LedgerOutcome.IGNORED_DUPLICATE)

        if event.type == BillingEventType.UNKNOWN:
            return self._claim_only(db, event, LedgerOutcome.IGNORED_UNHANDLED)

        account_id = self.resolve_account(db, event)
        if account_id is None:
            webhook_logger.warning(
                f"No local account for event {event.external_event_id} "
                f"(customer={event.external_customer_id}, subscription={event.external_subscription_id})"
            )
            return self._claim_only(db, event, LedgerOutcome.UNMATCHED_ACCOUNT)

        subscription_store.get_or_create(db, account_id)
        if event.external_customer_id and not self._bind_customer(db, account_id, event.external_customer_id):
            # Account already belongs to another customer; never rebind
            return self._claim_only(db, event, LedgerOutcome.UNMATCHED_ACCOUNT, account_id)

        try:
            applied = self.reconciler.apply(db, account_id, event, claim=True, source="webhook")
        except OptimisticLockExhausted as e:
            webhook_logger.warning(f"Parking event {event.external_event_id}: {e}")
            return self._park(db, account_id, event)

        return self._result(event, applied.outcome, account_id, applied.record)

    def resolve_account(self, db: Session, event: BillingEvent) -> Optional[str]:
        """Local account an event belongs to, or None"""
        if event.external_customer_id:
            account_id = (
                subscription_store.find_account_by_customer(db, event.external_customer_id)
                or self.directory.account_for_customer(db, event.external_customer_id)
            )
            if account_id:
                return account_id
        if event.account_hint and self.directory.get_account(db, event.account_hint) is not None:
            return event.account_hint
        if event.external_subscription_id:
            return subscription_store.find_account_by_subscription(db, event.external_subscription_id)
        return None

    def _bind_customer(self, db: Session, account_id: str, external_customer_id: str) -> bool:
        """Bind on both sides; True if the account is (now) bound to this customer"""
        if not self.directory.bind_customer(db, account_id, external_customer_id):
            return False
        subscription_store.bind_customer(db, account_id, external_customer_id)
        current = subscription_store.read(db, account_id)
        return current is not None and current.external_customer_id == external_customer_id

    def _claim_only(self, db: Session, event: BillingEvent, outcome: str,
                    account_id: Optional[str] = None) -> Dict[str, Any]:
        claimed = ledger.claim_and_commit(db, event.external_event_id, event.type.value, outcome, account_id)
        if claimed == ledger.ClaimResult.ALREADY_PROCESSED:
            outcome = LedgerOutcome.IGNORED_DUPLICATE
        return self._result(event, outcome, account_id)

    def _park(self, db: Session, account_id: str, event: BillingEvent) -> Dict[str, Any]:
        """Durably claim the event as deferred and queue it for background retry"""
        claimed = ledger.try_claim(db, event.external_event_id, event.type.value, LedgerOutcome.DEFERRED, account_id)
        if claimed == ledger.ClaimResult.ALREADY_PROCESSED:
            return self._result(event, LedgerOutcome.IGNORED_DUPLICATE, account_id)
        db.add(ParkedEvent(
            external_event_id=event.external_event_id,
            account_id=account_id,
            payload=event.to_dict(),
            occurred_at=event.occurred_at,
            status="pending",
            attempts=0
        ))
        db.commit()
        parked_events_counter.labels(status="parked").inc()
        return self._result(event, LedgerOutcome.DEFERRED, account_id)

    @staticmethod
    def _result(event: BillingEvent, outcome: str, account_id: Optional[str] = None,
                record: Optional[RecordSnapshot] = None) -> Dict[str, Any]:
        return {
            "status": outcome,
            "event_id": event.external_event_id,
            "account_id": account_id,
            "version": record.version if record else None,
        }

    # ========================================================================
    # BACKGROUND RECONCILIATION
    # ========================================================================

    def retry_parked_events(self, db: Session, limit: int = 100) -> Dict[str, int]:
        """Re-apply pending parked events oldest first"""
        pending_ids = db.execute(
            select(ParkedEvent.id)
            .where(ParkedEvent.status == "pending")
            .order_by(ParkedEvent.occurred_at, ParkedEvent.id)
            .limit(limit)
        ).scalars().all()

        stats = {"resolved": 0, "still_pending": 0}
        for parked_id in pending_ids:
            parked = db.get(ParkedEvent, parked_id)
            event = BillingEvent.from_dict(parked.payload)
            account_id = parked.account_id
            try:
                applied = self.reconciler.apply(db, account_id, event, claim=False, source="parked")
            except OptimisticLockExhausted as e:
                db.rollback()
                parked = db.get(ParkedEvent, parked_id)
                parked.attempts += 1
                parked.last_error = str(e)
                db.commit()
                parked_events_counter.labels(status="retry_failed").inc()
                stats["still_pending"] += 1
                continue

            parked = db.get(ParkedEvent, parked_id)
            parked.attempts += 1
            parked.status = "resolved"
            parked.resolution = applied.outcome
            parked.resolved_at = utc_now()
            db.commit()
            parked_events_counter.labels(status="resolved").inc()
            webhook_logger.info(
                f"Parked event {event.external_event_id} resolved as {applied.outcome} "
                f"after {parked.attempts} attempt(s)"
            )
            stats["resolved"] += 1
        return stats

    def purge_ledger(self, db: Session) -> int:
        purged = ledger.purge_expired(db, settings.LEDGER_RETENTION_DAYS)
        if purged:
            ledger_purged_counter.inc(purged)
        return purged

    def list_open_review_flags(self, db: Session, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(ReviewFlag).where(ReviewFlag.resolved.is_(False))
        if account_id:
            query = query.where(ReviewFlag.account_id == account_id)
        flags = db.execute(query.order_by(ReviewFlag.created_at, ReviewFlag.id)).scalars().all()
        return [
            {
                "id": flag.id,
                "account_id": flag.account_id,
                "external_event_id": flag.external_event_id,
                "reason": flag.reason,
                "detail": flag.detail,
                "created_at": flag.created_at,
            }
            for flag in flags
        ]

    # ========================================================================
    # READS
    # ========================================================================

    def list_plans(self) -> List[Dict[str, str]]:
        return self.catalog.list_plans()

    def get_subscription(self, db: Session, account_id: str) -> RecordSnapshot:
        return self._load(db, account_id)

    def _load(self, db: Session, account_id: str) -> RecordSnapshot:
        if self.directory.get_account(db, account_id) is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return subscription_store.get_or_create(db, account_id)

    def get_upcoming_invoice(self, db: Session, account_id: str) -> Dict[str, Any]:
        current = self._load(db, account_id)
        customer_id = self._require_customer(db, current)
        if not current.external_subscription_id:
            raise InvalidAction("No subscription to preview an invoice for")
        invoice = self.billing_client.get_upcoming_invoice(customer_id, current.external_subscription_id)
        return {"invoice": asdict(invoice)}

    def list_payment_methods(self, db: Session, account_id: str) -> Dict[str, Any]:
        customer_id = self._require_customer(db, self._load(db, account_id))
        methods = self.billing_client.list_payment_methods(customer_id)
        return {"payment_methods": [asdict(method) for method in methods]}

    def list_invoices(self, db: Session, account_id: str) -> Dict[str, Any]:
        customer_id = self._require_customer(db, self._load(db, account_id))
        invoices = self.billing_client.list_invoices(customer_id)
        return {"invoices": [asdict(invoice) for invoice in invoices]}

    def _require_customer(self, db: Session, current: RecordSnapshot) -> str:
        customer_id = current.external_customer_id or self.directory.customer_id_for(db, current.account_id)
        if not customer_id:
            raise InvalidAction("No billing account yet; start a checkout first")
        return customer_id

    # ========================================================================
    # SESSIONS
    # ========================================================================

    def create_checkout_session(self, db: Session, account_id: str, plan_id: str,
                                success_url: Optional[str] = None,
                                cancel_url: Optional[str] = None) -> Dict[str, Any]:
        """Start a hosted checkout for a plan, creating the provider customer on first use"""
        try:
            price_id = self.catalog.price_for(plan_id)
        except CatalogUnresolved:
            raise InvalidAction(f"Unknown plan: {plan_id}")

        current = self._load(db, account_id)
        if current.status in SubscriptionStatus.LIVE:
            raise InvalidAction("Account already has a live subscription; change plan instead")

        customer_id = self._ensure_customer(db, account_id, current)
        session = self.billing_client.create_checkout_session(
            account_id,
            customer_id,
            price_id,
            success_url or f"{settings.FRONTEND_URL}/billing?checkout=success",
            cancel_url or f"{settings.FRONTEND_URL}/billing?checkout=canceled"
        )
        logger.info(f"Created checkout session {session.id} for account {account_id} (plan {plan_id})")
        return {"session_id": session.id, "url": session.url}

    def create_portal_session(self, db: Session, account_id: str, return_url: Optional[str] = None) -> Dict[str, Any]:
        customer_id = self._require_customer(db, self._load(db, account_id))
        session = self.billing_client.create_portal_session(
            customer_id, return_url or f"{settings.FRONTEND_URL}/billing"
        )
        return {"url": session.url}

    def _ensure_customer(self, db: Session, account_id: str, current: RecordSnapshot) -> str:
        customer_id = current.external_customer_id or self.directory.customer_id_for(db, account_id)
        if customer_id:
            if not current.external_customer_id:
                subscription_store.bind_customer(db, account_id, customer_id)
            return customer_id

        account = self.directory.get_account(db, account_id)
        customer_id = self.billing_client.create_customer(
            account_id, email=account.email if account else None, name=account.name if account else None
        )
        self._bind_customer(db, account_id, customer_id)
        # A concurrent request may have bound first; its customer wins
        bound = self.directory.customer_id_for(db, account_id)
        return bound or customer_id

    # ========================================================================
    # USER ACTIONS
    # ========================================================================

    def cancel_subscription(self, db: Session, account_id: str, cancel_immediately: bool = False) -> RecordSnapshot:
        current = self._require_live(db, account_id)
        if not cancel_immediately and current.cancel_at_period_end:
            raise InvalidAction("Subscription is already set to cancel at period end")

        subscription_id = current.external_subscription_id
        if cancel_immediately:
            intent = self._synthetic(BillingEventType.SUBSCRIPTION_DELETED, current,
                                     cancel_at_period_end=False)
        else:
            intent = self._synthetic(BillingEventType.SUBSCRIPTION_UPDATED, current,
                                     cancel_at_period_end=True)
        return self._run_action(
            db, current, intent,
            lambda: self.billing_client.cancel_subscription(subscription_id, at_period_end=not cancel_immediately)
        )

    def reactivate_subscription(self, db: Session, account_id: str) -> RecordSnapshot:
        current = self._require_live(db, account_id)
        if not current.cancel_at_period_end:
            raise InvalidAction("Subscription is not scheduled for cancellation")

        subscription_id = current.external_subscription_id
        intent = self._synthetic(BillingEventType.SUBSCRIPTION_UPDATED, current, cancel_at_period_end=False)
        return self._run_action(
            db, current, intent,
            lambda: self.billing_client.reactivate_subscription(subscription_id)
        )

    def change_plan(self, db: Session, account_id: str, plan_id: str) -> RecordSnapshot:
        try:
            price_id = self.catalog.price_for(plan_id)
        except CatalogUnresolved:
            raise InvalidAction(f"Unknown plan: {plan_id}")

        current = self._require_live(db, account_id)
        if current.plan_id == plan_id:
            raise InvalidAction(f"Already on plan {plan_id}")

        subscription_id = current.external_subscription_id
        intent = self._synthetic(BillingEventType.SUBSCRIPTION_UPDATED, current, price_or_product_id=price_id)
        return self._run_action(
            db, current, intent,
            lambda: self.billing_client.update_subscription(subscription_id, price_id)
        )

    def sync_from_provider(self, db: Session, account_id: str) -> RecordSnapshot:
        """Pull the provider's current view and apply it as a fresh event"""
        current = self._load(db, account_id)
        if not current.external_subscription_id:
            return current
        provider = self.billing_client.get_subscription(current.external_subscription_id)
        event = self._provider_event(provider, self._action_time(current))
        applied = self.reconciler.apply(db, account_id, event, claim=False, source="sync")
        return applied.record

    def _require_live(self, db: Session, account_id: str) -> RecordSnapshot:
        current = self._load(db, account_id)
        if current.status not in SubscriptionStatus.LIVE or not current.external_subscription_id:
            raise InvalidAction("No live subscription")
        return current

    def _run_action(self, db: Session, current: RecordSnapshot, intent: BillingEvent,
                    provider_call: Callable[[], ProviderSubscription]) -> RecordSnapshot:
        """Apply intent, call the provider, then fold its answer in or revert the intent.

        Fold and revert only land if nothing else (a webhook) was applied after the
        intent; otherwise the newer event already owns the record. A transient
        failure leaves the outcome unknown, so the record is re-read from the
        provider instead of reverted.
        """
        account_id = current.account_id
        intended = self.reconciler.apply(db, account_id, intent, claim=False, source="user")
        guard = intended.record.last_applied_event_at

        try:
            provider = provider_call()
        except ProviderTransientError:
            self._refresh_after_unknown_outcome(db, intended.record, intent, guard)
            raise
        except ProviderError:
            revert = self._revert_event(current, self._action_time(intended.record))
            reverted = self.reconciler.apply(
                db, account_id, revert, claim=False, guard_last_applied=guard, source="user"
            )
            logger.warning(
                f"Provider rejected {intent.type.value} for account {account_id}; "
                f"intent reverted ({reverted.outcome})"
            )
            raise

        folded = self.reconciler.apply(
            db, account_id, self._provider_event(provider, self._action_time(intended.record)),
            claim=False, guard_last_applied=guard, source="user"
        )
        return folded.record if folded.outcome == LedgerOutcome.APPLIED else subscription_store.read(db, account_id)

    def _refresh_after_unknown_outcome(self, db: Session, intended: RecordSnapshot, intent: BillingEvent,
                                       guard) -> None:
        """The provider may have applied the change before failing; fold in what it reports now.

        If the re-read fails too, the intent stays in place until the provider's
        webhook or a manual sync settles it.
        """
        account_id = intended.account_id
        try:
            provider = self.billing_client.get_subscription(intended.external_subscription_id)
        except ProviderError as e:
            logger.warning(
                f"Outcome of {intent.type.value} for account {account_id} unknown and re-read failed "
                f"({e}); keeping intent until the provider reports"
            )
            return
        refreshed = self.reconciler.apply(
            db, account_id, self._provider_event(provider, self._action_time(intended)),
            claim=False, guard_last_applied=guard, source="user"
        )
        logger.warning(
            f"Outcome of {intent.type.value} for account {account_id} unknown; "
            f"refreshed from provider ({refreshed.outcome})"
        )

    @staticmethod
    def _action_time(current: RecordSnapshot):
        now = utc_now()
        if current.last_applied_event_at is not None and now <= current.last_applied_event_at:
            return current.last_applied_event_at + MIN_ACTION_STEP
        return now

    def _synthetic(self, event_type: BillingEventType, current: RecordSnapshot, **fields) -> BillingEvent:
        return BillingEvent(
            external_event_id=f"local-{uuid.uuid4().hex}",
            type=event_type,
            occurred_at=self._action_time(current),
            external_customer_id=current.external_customer_id,
            external_subscription_id=current.external_subscription_id,
            synthetic=True,
            **fields
        )

    def _revert_event(self, prior: RecordSnapshot, occurred_at) -> BillingEvent:
        price_id = None
        if prior.plan_id:
            try:
                price_id = self.catalog.price_for(prior.plan_id)
            except CatalogUnresolved:
                logger.warning(f"Cannot restore plan {prior.plan_id} for account {prior.account_id}: not in catalog")
        return BillingEvent(
            external_event_id=f"revert-{uuid.uuid4().hex}",
            type=BillingEventType.SUBSCRIPTION_UPDATED,
            occurred_at=occurred_at,
            external_customer_id=prior.external_customer_id,
            external_subscription_id=prior.external_subscription_id,
            status=prior.status,
            current_period_end=prior.current_period_end,
            cancel_at_period_end=prior.cancel_at_period_end,
            price_or_product_id=price_id,
            synthetic=True
        )

    @staticmethod
    def _provider_event(provider: ProviderSubscription, occurred_at) -> BillingEvent:
        return BillingEvent(
            external_event_id=f"sync-{uuid.uuid4().hex}",
            type=BillingEventType.SUBSCRIPTION_UPDATED,
            occurred_at=occurred_at,
            external_customer_id=provider.external_customer_id,
            external_subscription_id=provider.external_subscription_id,
            status=provider.status,
            current_period_end=provider.current_period_end,
            cancel_at_period_end=provider.cancel_at_period_end,
            price_or_product_id=provider.price_or_product_id,
            synthetic=True
        )


# ============================================================================
# WIRING
# ============================================================================

_service: Optional[SubscriptionService] = None


def build_subscription_service(
    billing_client: Optional[StripeBillingClient] = None,
    catalog: Optional[PlanCatalog] = None,
    cache_invalidator=None
) -> SubscriptionService:
    catalog = catalog or PlanCatalog()
    reconciler = Reconciler(catalog, cache_invalidator or RedisCacheInvalidator())
    return SubscriptionService(
        reconciler=reconciler,
        billing_client=billing_client or StripeBillingClient(),
        catalog=catalog,
        directory=AccountDirectory()
    )


def get_subscription_service() -> SubscriptionService:
    """Dependency: process-wide service (lazy, so tests can override first)"""
    global _service
    if _service is None:
        _service = build_subscription_service()
    return _service


def shutdown_subscription_service() -> None:
    """Drain the process-wide service's pending cache invalidations"""
    global _service
    if _service is not None:
        _service.reconciler.cache_invalidator.shutdown()
        _service = None
