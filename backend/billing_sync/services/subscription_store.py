"""Subscription state store - reads and compare-and-set writes of SubscriptionRecord"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_sync.models.account import Account
from billing_sync.models.subscription import SubscriptionRecord, SubscriptionStatus
from billing_sync.utils.clock import as_utc, utc_now

logger = logging.getLogger(__name__)

# Fields a transition may write
STATE_FIELDS = (
    "external_subscription_id",
    "plan_id",
    "status",
    "current_period_end",
    "cancel_at_period_end",
)


@dataclass(frozen=True)
class RecordSnapshot:
    """Immutable copy of a SubscriptionRecord as read at one version"""
    account_id: str
    external_customer_id: Optional[str]
    external_subscription_id: Optional[str]
    plan_id: Optional[str]
    status: str
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    last_applied_event_at: Optional[datetime]
    version: int

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "RecordSnapshot":
        return cls(
            account_id=record.account_id,
            external_customer_id=record.external_customer_id,
            external_subscription_id=record.external_subscription_id,
            plan_id=record.plan_id,
            status=record.status or SubscriptionStatus.NONE,
            current_period_end=as_utc(record.current_period_end),
            cancel_at_period_end=bool(record.cancel_at_period_end),
            last_applied_event_at=as_utc(record.last_applied_event_at),
            version=record.version or 0,
        )

    def state(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in STATE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        """Projection returned to API callers"""
        return {
            "account_id": self.account_id,
            "external_customer_id": self.external_customer_id,
            "external_subscription_id": self.external_subscription_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
            "last_applied_event_at": self.last_applied_event_at,
            "version": self.version,
        }


def read(db: Session, account_id: str) -> Optional[RecordSnapshot]:
    """Fresh read, bypassing whatever the session already holds"""
    record = db.execute(
        select(SubscriptionRecord)
        .where(SubscriptionRecord.account_id == account_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    return RecordSnapshot.from_record(record) if record else None


def get_or_create(db: Session, account_id: str, external_customer_id: Optional[str] = None) -> RecordSnapshot:
    """Read the account's record, creating the empty one lazily (commits on create)"""
    snapshot = read(db, account_id)
    if snapshot:
        return snapshot

    if db.get(Account, account_id) is None:
        # The host application owns accounts; we only mirror the id
        db.add(Account(id=account_id, external_customer_id=external_customer_id))
    db.add(SubscriptionRecord(
        account_id=account_id,
        external_customer_id=external_customer_id,
        status=SubscriptionStatus.NONE,
        cancel_at_period_end=False,
        version=0
    ))
    try:
        db.commit()
        logger.info(f"Created subscription record for account {account_id}")
    except IntegrityError:
        # A concurrent first interaction created it
        db.rollback()
    return read(db, account_id)


def compare_and_set(
    db: Session,
    expected: RecordSnapshot,
    changes: Dict[str, Any],
    last_applied_event_at: datetime,
    bump_version: bool = True
) -> bool:
    """Write ``changes`` only if the row still matches ``expected``.

    The predicate covers version and last_applied_event_at, so a write that
    leaves the version alone still conflicts with any concurrent apply.
    Does not commit.
    """
    unknown = set(changes) - set(STATE_FIELDS)
    if unknown:
        raise ValueError(f"Not writable through compare_and_set: {sorted(unknown)}")

    conditions = [
        SubscriptionRecord.account_id == expected.account_id,
        SubscriptionRecord.version == expected.version,
    ]
    if expected.last_applied_event_at is None:
        conditions.append(SubscriptionRecord.last_applied_event_at.is_(None))
    else:
        conditions.append(SubscriptionRecord.last_applied_event_at == expected.last_applied_event_at)

    values = dict(changes)
    values["last_applied_event_at"] = as_utc(last_applied_event_at)
    values["updated_at"] = utc_now()
    if bump_version:
        values["version"] = expected.version + 1

    result = db.execute(
        update(SubscriptionRecord)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def bind_customer(db: Session, account_id: str, external_customer_id: str) -> bool:
    """Set the provider customer id once; never overwrites (commits)"""
    result = db.execute(
        update(SubscriptionRecord)
        .where(
            SubscriptionRecord.account_id == account_id,
            SubscriptionRecord.external_customer_id.is_(None)
        )
        .values(external_customer_id=external_customer_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        current = read(db, account_id)
        if current and current.external_customer_id not in (None, external_customer_id):
            logger.error(
                f"Refusing to rebind account {account_id} from customer "
                f"{current.external_customer_id} to {external_customer_id}"
            )
        return False
    return True


def find_account_by_customer(db: Session, external_customer_id: str) -> Optional[str]:
    return db.execute(
        select(SubscriptionRecord.account_id)
        .where(SubscriptionRecord.external_customer_id == external_customer_id)
    ).scalar_one_or_none()


def find_account_by_subscription(db: Session, external_subscription_id: str) -> Optional[str]:
    return db.execute(
        select(SubscriptionRecord.account_id)
        .where(SubscriptionRecord.external_subscription_id == external_subscription_id)
        .limit(1)
    ).scalar_one_or_none()
