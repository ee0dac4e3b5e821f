"""Error taxonomy for billing reconciliation.

Duplicate and stale deliveries are not errors; they are reported through
``LedgerOutcome`` values instead.
"""
from typing import Optional


class BillingSyncError(Exception):
    """Base class for all billing-sync errors"""

    retryable = False


# ============================================================================
# INBOUND (rejected at the boundary, never retried by us)
# ============================================================================

class CodecError(BillingSyncError):
    """Inbound notification could not be verified or decoded"""


class SignatureInvalid(CodecError):
    """Signature header missing, malformed, mismatched, or outside the tolerance window"""


class PayloadMalformed(CodecError):
    """Payload is not valid JSON or lacks required fields"""


# ============================================================================
# RECONCILIATION
# ============================================================================

class CatalogUnresolved(BillingSyncError):
    """Price/product id has no plan in the catalog. Callers degrade and flag."""

    def __init__(self, price_or_product_id: Optional[str]):
        super().__init__(f"No plan found for price/product '{price_or_product_id}'")
        self.price_or_product_id = price_or_product_id


class OptimisticLockExhausted(BillingSyncError):
    """Concurrent writers kept winning the version race"""

    retryable = True

    def __init__(self, account_id: str, attempts: int):
        super().__init__(f"Subscription for account {account_id} still contended after {attempts} attempts")
        self.account_id = account_id
        self.attempts = attempts


class AccountNotFound(BillingSyncError):
    """No local account exists for the given identifier"""


class InvalidAction(BillingSyncError):
    """User action is not valid for the current subscription state"""


# ============================================================================
# OUTBOUND PROVIDER
# ============================================================================

class ProviderError(BillingSyncError):
    """Outbound billing provider call failed"""

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class ProviderTransientError(ProviderError):
    """Timeouts, connection failures, rate limits and provider 5xx. Safe to retry."""

    retryable = True


class ProviderPermanentError(ProviderError):
    """Rejected request. Retrying will not help."""
