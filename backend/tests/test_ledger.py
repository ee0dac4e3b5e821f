"""Idempotency ledger tests"""
from datetime import datetime, timedelta, timezone

import pytest

from billing_sync.models.ledger import IdempotencyRecord, LedgerOutcome
from billing_sync.services import ledger


@pytest.mark.critical
class TestClaims:
    """Test claim-or-reject semantics"""

    def test_first_claim_wins(self, db_session):
        """Test the first claim of an event id succeeds and is durable after commit"""
        result = ledger.claim_and_commit(db_session, "evt_1", "subscription.updated", LedgerOutcome.APPLIED, "acct_1")

        assert result == ledger.ClaimResult.CLAIMED
        assert ledger.is_processed(db_session, "evt_1")
        assert ledger.get_outcome(db_session, "evt_1") == LedgerOutcome.APPLIED

    def test_second_claim_is_already_processed(self, db_session):
        """Test a repeated claim short-circuits and leaves the original outcome untouched"""
        ledger.claim_and_commit(db_session, "evt_1", "subscription.updated", LedgerOutcome.IGNORED_STALE)

        result = ledger.claim_and_commit(db_session, "evt_1", "subscription.updated", LedgerOutcome.APPLIED)

        assert result == ledger.ClaimResult.ALREADY_PROCESSED
        assert ledger.get_outcome(db_session, "evt_1") == LedgerOutcome.IGNORED_STALE
        assert db_session.query(IdempotencyRecord).count() == 1

    def test_rolled_back_claim_is_released(self, db_session):
        """Test a claim that is never committed leaves no ledger entry (crash mid-processing)"""
        result = ledger.try_claim(db_session, "evt_1", "subscription.updated", LedgerOutcome.APPLIED)
        assert result == ledger.ClaimResult.CLAIMED

        db_session.rollback()

        assert not ledger.is_processed(db_session, "evt_1")
        assert ledger.claim_and_commit(
            db_session, "evt_1", "subscription.updated", LedgerOutcome.APPLIED
        ) == ledger.ClaimResult.CLAIMED


@pytest.mark.medium
class TestPurge:
    """Test retention-window purge"""

    def test_purge_removes_only_expired_rows(self, db_session):
        """Test rows older than the retention window are deleted and recent ones kept"""
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        ledger.claim_and_commit(db_session, "evt_old", "invoice.paid", LedgerOutcome.APPLIED)
        ledger.claim_and_commit(db_session, "evt_new", "invoice.paid", LedgerOutcome.APPLIED)
        db_session.get(IdempotencyRecord, "evt_old").processed_at = now - timedelta(days=31)
        db_session.get(IdempotencyRecord, "evt_new").processed_at = now - timedelta(days=29)
        db_session.commit()
        db_session.expunge_all()

        purged = ledger.purge_expired(db_session, retention_days=30, now=now)

        assert purged == 1
        assert not ledger.is_processed(db_session, "evt_old")
        assert ledger.is_processed(db_session, "evt_new")
