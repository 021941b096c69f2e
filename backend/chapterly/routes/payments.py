"""
Chapterly Backend — Payment Route Handlers
============================================

What:  Credit packages, balance, Stripe checkout/payment sheet, purchase
       confirmation (Stripe + Google Play) and the Stripe webhook.
Who:   Store screens of the web and mobile clients; Stripe for the webhook.

Route Inventory:
    GET  /api/payments/packages[?userId=]
    GET  /api/payments/balance?userId=
    POST /api/payments/create-checkout-session     (alias /stripe/checkout)
    POST /api/payments/create-payment-intent       (alias /stripe/payment-sheet)
    POST /api/payments/stripe/confirm
    POST /api/payments/stripe/payment-sheet/confirm
    POST /api/payments/verify-purchase             (Google Play)
    POST /api/payments/stripe/webhook

All handlers are thin: PurchaseService owns every rule, the global
exception handlers own every error status.
"""

import dataclasses
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.database import get_db_session
from chapterly.dependencies import get_purchase_service
from chapterly.schemas.common import ErrorResponse
from chapterly.schemas.payment import (
    BalanceResponse,
    CheckoutConfirmRequest,
    CheckoutRequest,
    CheckoutResponse,
    GooglePlayVerifyRequest,
    PackageResponse,
    PaymentIntentConfirmRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PurchaseResponse,
    WebhookResponse,
)
from chapterly.services.catalog import CreditPackage
from chapterly.services.purchase_service import PurchaseResult, PurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])

_ERRORS = {400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}


def _purchase_response(result: PurchaseResult) -> PurchaseResponse:
    return PurchaseResponse(
        success=result.success,
        credits_added=result.credits_added,
        new_total=result.new_total,
        purchased_products=result.purchased_products,
        message=result.message,
    )


def _package_response(package: CreditPackage) -> PackageResponse:
    return PackageResponse(**dataclasses.asdict(package))


# ── Catalog & balance ─────────────────────────────────────────────────────


@router.get(
    "/packages",
    response_model=List[PackageResponse],
    responses={500: {"model": ErrorResponse}},
    summary="List purchasable credit packages",
)
async def list_packages(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> List[PackageResponse]:
    """With `userId`, one-time packages that account already owns are left out."""
    packages = await purchases.list_packages(db, user_id)
    return [_package_response(p) for p in packages]


@router.get(
    "/balance",
    response_model=BalanceResponse,
    responses=_ERRORS,
    summary="Current credit balance of an account",
)
async def get_balance(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> BalanceResponse:
    account = await purchases.get_balance(db, user_id)
    return BalanceResponse(
        user_id=account.id,
        credits=account.credits,
        purchased_products=account.purchased_products_list,
    )


# ── Stripe checkout creation ──────────────────────────────────────────────


@router.post(
    "/create-checkout-session",
    response_model=CheckoutResponse,
    responses=_ERRORS,
    summary="Start a Stripe Checkout session for a package",
)
@router.post("/stripe/checkout", response_model=CheckoutResponse, include_in_schema=False)
async def create_checkout_session(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> CheckoutResponse:
    result = await purchases.create_checkout_session(
        db,
        account_id=body.user_id,
        package_id=body.package_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse(checkout_url=result["checkoutUrl"], session_id=result["sessionId"])


@router.post(
    "/create-payment-intent",
    response_model=PaymentIntentResponse,
    responses=_ERRORS,
    summary="Create a PaymentIntent for the mobile Payment Sheet",
)
@router.post("/stripe/payment-sheet", response_model=PaymentIntentResponse, include_in_schema=False)
async def create_payment_intent(
    body: PaymentIntentRequest,
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> PaymentIntentResponse:
    result = await purchases.create_payment_intent(db, account_id=body.user_id, package_id=body.package_id)
    return PaymentIntentResponse(
        client_secret=result["clientSecret"],
        payment_intent_id=result["paymentIntentId"],
    )


# ── Confirmation ──────────────────────────────────────────────────────────


@router.post(
    "/stripe/confirm",
    response_model=PurchaseResponse,
    responses=_ERRORS,
    summary="Confirm a paid Checkout session and credit the account",
)
async def confirm_checkout_session(
    body: CheckoutConfirmRequest,
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> PurchaseResponse:
    result = await purchases.confirm_checkout_session(db, account_id=body.user_id, session_id=body.session_id)
    return _purchase_response(result)


@router.post(
    "/stripe/payment-sheet/confirm",
    response_model=PurchaseResponse,
    responses=_ERRORS,
    summary="Confirm a succeeded PaymentIntent and credit the account",
)
async def confirm_payment_intent(
    body: PaymentIntentConfirmRequest,
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> PurchaseResponse:
    result = await purchases.confirm_payment_intent(
        db, account_id=body.user_id, intent_id=body.payment_intent_id
    )
    return _purchase_response(result)


@router.post(
    "/verify-purchase",
    response_model=PurchaseResponse,
    responses=_ERRORS,
    summary="Verify a Google Play purchase token and credit the account",
)
async def verify_purchase(
    body: GooglePlayVerifyRequest,
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> PurchaseResponse:
    result = await purchases.verify_google_play(
        db,
        account_id=body.user_id,
        purchase_token=body.purchase_token,
        product_id=body.product_id,
    )
    return _purchase_response(result)


@router.post(
    "/stripe/webhook",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Stripe webhook receiver",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db_session),
    purchases: PurchaseService = Depends(get_purchase_service),
) -> WebhookResponse:
    # Signature is computed over the raw bytes; never re-serialize the body
    payload = await request.body()
    result = await purchases.handle_stripe_webhook(db, payload, stripe_signature)
    return WebhookResponse(received=result["received"])
