"""Event codec - verifies and decodes inbound Stripe notifications into BillingEvents.

Signature verification uses Stripe's timestamped HMAC scheme
(``t=<unix>,v1=<hex sha256>``) through ``stripe.WebhookSignature``, which compares
in constant time and rejects timestamps older than the tolerance. Timestamps too
far in the future are rejected here as well.

Unknown event types decode successfully as ``BillingEventType.UNKNOWN`` so the
provider can grow its catalog without breaking delivery.
"""
import json
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import stripe

from billing_sync.core.errors import PayloadMalformed, SignatureInvalid
from billing_sync.utils.clock import as_utc, from_unix

logger = logging.getLogger(__name__)


class BillingEventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_FAILED = "invoice.failed"
    CHECKOUT_COMPLETED = "checkout.completed"
    UNKNOWN = "unknown"


# Provider event type -> internal type. Anything missing maps to UNKNOWN.
PROVIDER_EVENT_TYPES = {
    "customer.subscription.created": BillingEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_DELETED,
    "invoice.paid": BillingEventType.INVOICE_PAID,
    "invoice.payment_succeeded": BillingEventType.INVOICE_PAID,
    "invoice.payment_failed": BillingEventType.INVOICE_FAILED,
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
}

SUBSCRIPTION_EVENT_TYPES = (
    BillingEventType.SUBSCRIPTION_CREATED,
    BillingEventType.SUBSCRIPTION_UPDATED,
    BillingEventType.SUBSCRIPTION_DELETED,
)

INVOICE_EVENT_TYPES = (
    BillingEventType.INVOICE_PAID,
    BillingEventType.INVOICE_FAILED,
)


@dataclass(frozen=True)
class BillingEvent:
    """Typed, provider-neutral view of one notification.

    ``None`` fields mean "not stated by this event" and are retained from the
    current record when applied.
    """
    external_event_id: str
    type: BillingEventType
    occurred_at: datetime
    provider_type: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    price_or_product_id: Optional[str] = None
    account_hint: Optional[str] = None  # account id carried by checkout metadata
    synthetic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form, used to persist parked events"""
        data = asdict(self)
        data["type"] = self.type.value
        data["occurred_at"] = self.occurred_at.isoformat()
        if self.current_period_end:
            data["current_period_end"] = self.current_period_end.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingEvent":
        data = dict(data)
        data["type"] = BillingEventType(data["type"])
        data["occurred_at"] = as_utc(datetime.fromisoformat(data["occurred_at"]))
        if data.get("current_period_end"):
            data["current_period_end"] = as_utc(datetime.fromisoformat(data["current_period_end"]))
        return cls(**data)


# ============================================================================
# SIGNATURE VERIFICATION
# ============================================================================

def _header_timestamp(signature_header: str) -> Optional[int]:
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify_signature(raw_payload: bytes, signature_header: Optional[str], shared_secret: str,
                     tolerance: int = 300, now: Optional[float] = None) -> None:
    """Raise SignatureInvalid unless the header signs this exact payload within the tolerance"""
    if not signature_header:
        raise SignatureInvalid("Missing signature header")
    if not shared_secret:
        raise SignatureInvalid("Webhook secret not configured")

    payload_text = raw_payload
    if isinstance(raw_payload, bytes):
        try:
            payload_text = raw_payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadMalformed(f"Payload is not valid UTF-8: {e}") from e

    try:
        stripe.WebhookSignature.verify_header(payload_text, signature_header, shared_secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(str(e)) from e

    # Stripe only bounds the past; bound the future too
    timestamp = _header_timestamp(signature_header)
    current = time.time() if now is None else now
    if timestamp is None or timestamp > current + tolerance:
        raise SignatureInvalid("Timestamp outside the tolerance zone")


# ============================================================================
# PAYLOAD PARSING
# ============================================================================

def _is_object(value: Any) -> bool:
    # Webhook JSON gives dicts; API responses give StripeObjects
    return isinstance(value, dict) or callable(getattr(value, "get", None))


def _get(obj: Any, key: str, default=None):
    """Dict access that tolerates None and non-dict values"""
    if _is_object(obj):
        value = obj.get(key, default)
        return default if value is None else value
    return default


def _first_item(subscription: Dict) -> Dict:
    items = _get(_get(subscription, "items", {}), "data", [])
    if isinstance(items, list) and items:
        return items[0] if _is_object(items[0]) else {}
    return {}


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object"""
    if isinstance(value, str):
        return value
    if _is_object(value):
        return value.get("id")
    return None


def _price_or_product(item: Dict) -> Optional[str]:
    price = _get(item, "price")
    if _is_object(price):
        return price.get("id") or _id_of(price.get("product"))
    return _id_of(price) or _id_of(_get(item, "plan"))


def subscription_fields(obj: Dict) -> Dict[str, Any]:
    item = _first_item(obj)
    # Newer API versions moved the period onto subscription items
    period_end = _get(obj, "current_period_end") or _get(item, "current_period_end")
    cancel_flag = _get(obj, "cancel_at_period_end")
    return {
        "external_customer_id": _id_of(_get(obj, "customer")),
        "external_subscription_id": _get(obj, "id"),
        "status": _get(obj, "status"),
        "current_period_end": from_unix(period_end),
        "cancel_at_period_end": bool(cancel_flag) if cancel_flag is not None else None,
        "price_or_product_id": _price_or_product(item),
    }


def _decode_invoice(obj: Dict) -> Dict[str, Any]:
    subscription_id = _id_of(_get(obj, "subscription"))
    if not subscription_id:
        details = _get(_get(obj, "parent", {}), "subscription_details", {})
        subscription_id = _id_of(_get(details, "subscription"))
    return {
        "external_customer_id": _id_of(_get(obj, "customer")),
        "external_subscription_id": subscription_id,
    }


def _decode_checkout(obj: Dict) -> Dict[str, Any]:
    metadata = _get(obj, "metadata", {})
    return {
        "external_customer_id": _id_of(_get(obj, "customer")),
        "external_subscription_id": _id_of(_get(obj, "subscription")),
        "account_hint": _get(obj, "client_reference_id") or _get(metadata, "account_id"),
    }


def parse_event(payload: Dict[str, Any]) -> BillingEvent:
    """Map a verified Stripe event envelope onto a BillingEvent"""
    if not isinstance(payload, dict):
        raise PayloadMalformed("Event payload must be a JSON object")

    event_id = payload.get("id")
    provider_type = payload.get("type")
    created = payload.get("created")
    if not isinstance(event_id, str) or not event_id:
        raise PayloadMalformed("Event is missing 'id'")
    if not isinstance(provider_type, str) or not provider_type:
        raise PayloadMalformed(f"Event {event_id} is missing 'type'")
    if not isinstance(created, (int, float)) or isinstance(created, bool):
        raise PayloadMalformed(f"Event {event_id} is missing 'created'")

    event_type = PROVIDER_EVENT_TYPES.get(provider_type, BillingEventType.UNKNOWN)
    occurred_at = from_unix(created)

    if event_type == BillingEventType.UNKNOWN:
        return BillingEvent(
            external_event_id=event_id,
            type=event_type,
            occurred_at=occurred_at,
            provider_type=provider_type,
        )

    obj = _get(_get(payload, "data", {}), "object")
    if not isinstance(obj, dict):
        raise PayloadMalformed(f"Event {event_id} has no data.object")

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        fields = subscription_fields(obj)
        if not fields["external_subscription_id"]:
            raise PayloadMalformed(f"Event {event_id} subscription has no id")
    elif event_type in INVOICE_EVENT_TYPES:
        fields = _decode_invoice(obj)
    else:
        fields = _decode_checkout(obj)

    if not fields["external_customer_id"] and not fields["external_subscription_id"]:
        raise PayloadMalformed(f"Event {event_id} names neither a customer nor a subscription")

    return BillingEvent(
        external_event_id=event_id,
        type=event_type,
        occurred_at=occurred_at,
        provider_type=provider_type,
        **fields
    )


def decode(raw_payload: bytes, signature_header: Optional[str], shared_secret: str,
           tolerance: int = 300) -> BillingEvent:
    """Verify and decode one webhook delivery

    Raises:
        SignatureInvalid: bad, missing or expired signature
        PayloadMalformed: signature fine but the body is not a usable event
    """
    verify_signature(raw_payload, signature_header, shared_secret, tolerance)

    try:
        payload = json.loads(raw_payload)
    except (ValueError, TypeError) as e:
        raise PayloadMalformed(f"Invalid JSON payload: {e}") from e

    event = parse_event(payload)
    logger.debug(f"Decoded event {event.external_event_id} ({event.provider_type}) as {event.type.value}")
    return event
