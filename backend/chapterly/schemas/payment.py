"""
Chapterly Backend — Payment Schemas
=====================================

What:  Request/response bodies for /api/payments.
Why:   One place that fixes the camelCase contract the mobile and web
       purchase screens rely on.
"""

from typing import List, Optional

from pydantic import Field

from chapterly.schemas.common import CamelModel


# ── Catalog & balance ─────────────────────────────────────────────────────


class PackageResponse(CamelModel):
    id: str
    base_credits: int
    bonus_percent: int
    total_credits: int
    price: float
    product_id: str
    price_id: Optional[str] = None
    one_time: bool = False
    highlight: bool = False
    tagline: Optional[str] = None


class BalanceResponse(CamelModel):
    user_id: str
    credits: int
    purchased_products: List[str] = Field(default_factory=list)


# ── Checkout creation ─────────────────────────────────────────────────────


class CheckoutRequest(CamelModel):
    package_id: Optional[str] = None
    user_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(CamelModel):
    checkout_url: Optional[str] = None
    session_id: str


class PaymentIntentRequest(CamelModel):
    package_id: Optional[str] = None
    user_id: Optional[str] = None


class PaymentIntentResponse(CamelModel):
    client_secret: Optional[str] = None
    payment_intent_id: str


# ── Confirmation / verification ───────────────────────────────────────────


class CheckoutConfirmRequest(CamelModel):
    session_id: Optional[str] = None
    user_id: Optional[str] = None


class PaymentIntentConfirmRequest(CamelModel):
    payment_intent_id: Optional[str] = None
    user_id: Optional[str] = None


class GooglePlayVerifyRequest(CamelModel):
    """Purchase reported by the Play Billing client after a successful flow."""
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    purchase_token: Optional[str] = None


class PurchaseResponse(CamelModel):
    """
    `creditsAdded` is 0 when the transaction had already been credited;
    `newTotal` is the balance after this call either way.
    """
    success: bool = True
    credits_added: int
    new_total: int
    purchased_products: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class WebhookResponse(CamelModel):
    received: bool = True
