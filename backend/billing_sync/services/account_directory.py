"""Account lookup - the only view of the host's accounts the reconciler needs"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_sync.models.account import Account

logger = logging.getLogger(__name__)


class AccountDirectory:
    """accountId <-> externalCustomerId binding over the accounts table"""

    def get_account(self, db: Session, account_id: str) -> Optional[Account]:
        return db.get(Account, account_id)

    def customer_id_for(self, db: Session, account_id: str) -> Optional[str]:
        account = db.get(Account, account_id)
        return account.external_customer_id if account else None

    def account_for_customer(self, db: Session, external_customer_id: str) -> Optional[str]:
        if not external_customer_id:
            return None
        return db.execute(
            select(Account.id).where(Account.external_customer_id == external_customer_id)
        ).scalar_one_or_none()

    def bind_customer(self, db: Session, account_id: str, external_customer_id: str) -> bool:
        """Set-once binding; an existing different binding is left alone (commits)"""
        result = db.execute(
            update(Account)
            .where(Account.id == account_id, Account.external_customer_id.is_(None))
            .values(external_customer_id=external_customer_id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 1:
            logger.info(f"Bound account {account_id} to customer {external_customer_id}")
            return True
        return self.customer_id_for(db, account_id) == external_customer_id
