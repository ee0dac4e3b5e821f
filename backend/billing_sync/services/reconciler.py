"""Reconciler - the subscription state machine.

Given the current record and an incoming BillingEvent, ``compute_transition``
decides (purely) whether the event is stale and which fields change;
``Reconciler.apply`` writes that decision with an optimistic compare-and-set,
re-reading and recomputing on conflict. Provider webhooks and user actions both
come through ``apply``; user actions simply carry ``occurred_at = now`` and skip
the ledger claim.

Per-account ordering is by ``occurred_at``, never by receipt order: an event at
or before ``last_applied_event_at`` changes nothing.
"""
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from billing_sync.core.config import settings
from billing_sync.core.errors import CatalogUnresolved, OptimisticLockExhausted
from billing_sync.core.logging import reconcile_logger
from billing_sync.core.metrics import (
    reconcile_conflicts_counter,
    reconcile_duration_histogram,
    review_flags_counter
)
from billing_sync.core.otel import get_tracer
from billing_sync.models.ledger import LedgerOutcome
from billing_sync.models.review_flag import ReviewFlag
from billing_sync.models.subscription import SubscriptionStatus
from billing_sync.services import ledger, subscription_store
from billing_sync.services.event_codec import BillingEvent, BillingEventType
from billing_sync.services.plan_catalog import PlanCatalog
from billing_sync.services.subscription_store import RecordSnapshot

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# Provider status -> internal status. Unknown statuses become INCOMPLETE.
PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# Invoice outcomes only move a subscription along these edges
INVOICE_PAID_RECOVERS = (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID, SubscriptionStatus.INCOMPLETE)
INVOICE_FAILED_DEGRADES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

# Edges of the lifecycle we expect to see; anything else is applied but logged
EXPECTED_TRANSITIONS = {
    SubscriptionStatus.NONE: {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE,
                              SubscriptionStatus.INCOMPLETE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.INCOMPLETE: {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE,
                                    SubscriptionStatus.CANCELED},
    SubscriptionStatus.TRIALING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE,
                                  SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED,
                                SubscriptionStatus.UNPAID},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED,
                                  SubscriptionStatus.UNPAID},
    SubscriptionStatus.UNPAID: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    # Re-subscribing after a lapse starts a new subscription instance
    SubscriptionStatus.CANCELED: {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE,
                                  SubscriptionStatus.INCOMPLETE},
}


def map_provider_status(provider_status: Optional[str]) -> str:
    return PROVIDER_STATUS_MAP.get(provider_status, SubscriptionStatus.INCOMPLETE)


@dataclass
class Transition:
    """Outcome of evaluating one event against one snapshot"""
    stale: bool = False
    reason: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    flags: List[Tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class ApplyResult:
    outcome: str
    record: Optional[RecordSnapshot] = None
    changed: bool = False
    attempts: int = 0


def _next_status(current: RecordSnapshot, event: BillingEvent) -> str:
    if event.type == BillingEventType.SUBSCRIPTION_DELETED:
        return SubscriptionStatus.CANCELED
    if event.type == BillingEventType.INVOICE_PAID:
        return SubscriptionStatus.ACTIVE if current.status in INVOICE_PAID_RECOVERS else current.status
    if event.type == BillingEventType.INVOICE_FAILED:
        return SubscriptionStatus.PAST_DUE if current.status in INVOICE_FAILED_DEGRADES else current.status
    if event.type == BillingEventType.CHECKOUT_COMPLETED or event.status is None:
        return current.status
    return map_provider_status(event.status)


def _is_superseded(current: RecordSnapshot, event: BillingEvent, next_status: str) -> bool:
    """Event about an older subscription instance that would end or degrade the live one"""
    if not event.external_subscription_id or not current.external_subscription_id:
        return False
    if event.external_subscription_id == current.external_subscription_id:
        return False
    if current.status not in SubscriptionStatus.LIVE:
        return False
    if event.type == BillingEventType.CHECKOUT_COMPLETED:
        return False
    if event.type in (BillingEventType.INVOICE_PAID, BillingEventType.INVOICE_FAILED):
        return True
    return next_status not in SubscriptionStatus.LIVE


def compute_transition(current: RecordSnapshot, event: BillingEvent, catalog: PlanCatalog) -> Transition:
    """Pure transition rule: no I/O, no clock"""
    if current.last_applied_event_at is not None and event.occurred_at <= current.last_applied_event_at:
        return Transition(stale=True, reason="older than last applied event")

    status = _next_status(current, event)
    if _is_superseded(current, event, status):
        return Transition(stale=True, reason=f"superseded by subscription {current.external_subscription_id}")

    transition = Transition()
    target = current.state()

    # Subscription instance
    if event.external_subscription_id and event.type not in (BillingEventType.INVOICE_PAID,
                                                             BillingEventType.INVOICE_FAILED):
        if event.type != BillingEventType.CHECKOUT_COMPLETED or current.status not in SubscriptionStatus.LIVE:
            target["external_subscription_id"] = event.external_subscription_id

    # Plan
    if event.price_or_product_id:
        try:
            target["plan_id"] = catalog.resolve(event.price_or_product_id)
        except CatalogUnresolved as e:
            transition.flags.append(("catalog_unresolved", str(e)))

    # Period and cancellation flag
    if event.current_period_end is not None:
        target["current_period_end"] = event.current_period_end
    if event.cancel_at_period_end is not None:
        target["cancel_at_period_end"] = event.cancel_at_period_end

    # Live statuses need a provider subscription behind them
    if status in SubscriptionStatus.LIVE and not target["external_subscription_id"]:
        transition.flags.append((
            "missing_subscription_id",
            f"Event would set status '{status}' without a subscription id; status kept at '{current.status}'"
        ))
        status = current.status
    target["status"] = status

    if status == SubscriptionStatus.NONE:
        target["cancel_at_period_end"] = False

    if status != current.status and status not in EXPECTED_TRANSITIONS.get(current.status, set()):
        reconcile_logger.warning(
            f"Unexpected transition {current.status} -> {status} for account {current.account_id} "
            f"(event {event.external_event_id})"
        )

    transition.changes = {
        name: value for name, value in target.items()
        if value != getattr(current, name)
    }
    return transition


class Reconciler:
    """Applies events to SubscriptionRecords under optimistic concurrency"""

    def __init__(
        self,
        catalog: PlanCatalog,
        cache_invalidator,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.catalog = catalog
        self.cache_invalidator = cache_invalidator
        self.max_attempts = max_attempts or settings.RECONCILE_MAX_ATTEMPTS
        self.backoff_ms = settings.RECONCILE_RETRY_BACKOFF_MS if backoff_ms is None else backoff_ms
        self._sleep = sleep

    def apply(
        self,
        db: Session,
        account_id: str,
        event: BillingEvent,
        claim: bool = True,
        guard_last_applied: Optional[datetime] = None,
        source: str = "webhook"
    ) -> ApplyResult:
        """Apply one event to an account's record.

        Args:
            claim: insert the event's ledger row in the same transaction (webhooks)
            guard_last_applied: only apply if the record's last applied timestamp
                still equals this value (folding a provider response after a user action)
            source: metrics label

        Raises:
            OptimisticLockExhausted: every attempt lost the compare-and-set race
        """
        started = time.monotonic()
        with tracer.start_as_current_span("reconcile.apply") as span:
            span.set_attribute("billing.account_id", account_id)
            span.set_attribute("billing.event_id", event.external_event_id)
            span.set_attribute("billing.event_type", event.type.value)
            try:
                result = self._apply_with_retries(db, account_id, event, claim, guard_last_applied)
            finally:
                reconcile_duration_histogram.labels(source=source).observe(time.monotonic() - started)
            span.set_attribute("billing.outcome", result.outcome)
            return result

    def _apply_with_retries(self, db, account_id, event, claim, guard_last_applied) -> ApplyResult:
        for attempt in range(1, self.max_attempts + 1):
            current = subscription_store.get_or_create(db, account_id, event.external_customer_id)

            if guard_last_applied is not None and current.last_applied_event_at != guard_last_applied:
                reconcile_logger.info(
                    f"Skipping {event.external_event_id} for account {account_id}: "
                    f"record moved on since {guard_last_applied.isoformat()}"
                )
                return ApplyResult(LedgerOutcome.IGNORED_STALE, current, attempts=attempt)

            transition = compute_transition(current, event, self.catalog)

            if transition.stale:
                outcome = LedgerOutcome.IGNORED_STALE
                if claim:
                    claimed = ledger.claim_and_commit(
                        db, event.external_event_id, event.type.value, outcome, account_id
                    )
                    if claimed == ledger.ClaimResult.ALREADY_PROCESSED:
                        outcome = LedgerOutcome.IGNORED_DUPLICATE
                reconcile_logger.info(
                    f"Event {event.external_event_id} for account {account_id} ignored as stale "
                    f"({transition.reason}); record at version {current.version}"
                )
                return ApplyResult(outcome, current, attempts=attempt)

            if claim:
                claimed = ledger.try_claim(
                    db, event.external_event_id, event.type.value, LedgerOutcome.APPLIED, account_id
                )
                if claimed == ledger.ClaimResult.ALREADY_PROCESSED:
                    return ApplyResult(LedgerOutcome.IGNORED_DUPLICATE, subscription_store.read(db, account_id),
                                       attempts=attempt)

            changed = bool(transition.changes)
            written = subscription_store.compare_and_set(
                db, current, transition.changes, event.occurred_at, bump_version=changed
            )
            if not written:
                db.rollback()
                reconcile_conflicts_counter.inc()
                reconcile_logger.info(
                    f"Version conflict applying {event.external_event_id} to account {account_id} "
                    f"(attempt {attempt}/{self.max_attempts}, read version {current.version})"
                )
                if attempt < self.max_attempts and self.backoff_ms:
                    self._sleep(random.uniform(0.5, 1.5) * self.backoff_ms * attempt / 1000.0)
                continue

            for reason, detail in transition.flags:
                db.add(ReviewFlag(
                    account_id=account_id,
                    external_event_id=None if event.synthetic else event.external_event_id,
                    reason=reason,
                    detail=detail
                ))
                review_flags_counter.labels(reason=reason).inc()
            db.commit()

            updated = subscription_store.read(db, account_id)
            reconcile_logger.info(
                f"Applied {event.external_event_id} ({event.type.value}) to account {account_id}: "
                f"{sorted(transition.changes) or 'no field changes'}, version {current.version} -> {updated.version}"
            )
            if changed:
                self._invalidate(account_id)
            return ApplyResult(LedgerOutcome.APPLIED, updated, changed=changed, attempts=attempt)

        raise OptimisticLockExhausted(account_id, self.max_attempts)

    def _invalidate(self, account_id: str) -> None:
        """Best-effort; the transition is already committed"""
        try:
            self.cache_invalidator.invalidate(account_id)
        except Exception as e:
            logger.warning(f"Cache invalidation raised for account {account_id}: {e}")
