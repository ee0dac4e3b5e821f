"""Pydantic schemas for subscriptions"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CheckoutRequest(BaseModel):
    plan: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class CancelRequest(BaseModel):
    cancel_immediately: bool = False


class ChangePlanRequest(BaseModel):
    plan: str


class SessionResponse(BaseModel):
    session_id: Optional[str] = None
    url: str


class SubscriptionResponse(BaseModel):
    account_id: str
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_applied_event_at: Optional[datetime] = None
    version: int


# Provider read-throughs; amounts are in the currency's minor units

class UpcomingInvoice(BaseModel):
    amount_due: int
    currency: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    next_payment_attempt: Optional[datetime] = None


class UpcomingInvoiceResponse(BaseModel):
    invoice: UpcomingInvoice


class PaymentMethod(BaseModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


class PaymentMethodsResponse(BaseModel):
    payment_methods: List[PaymentMethod]


class Invoice(BaseModel):
    id: str
    amount_paid: int
    currency: Optional[str] = None
    status: Optional[str] = None
    created: Optional[datetime] = None
    invoice_pdf: Optional[str] = None
    hosted_invoice_url: Optional[str] = None


class InvoicesResponse(BaseModel):
    invoices: List[Invoice]
