"""
Chapterly Backend — Purchase Service (Business Logic Layer)
=============================================================

What:  Sells credit packages and turns completed provider transactions into
       credits, exactly once.
Why:   The client tells us "I paid"; only the provider can confirm it, and
       clients, webhooks and mobile SDKs all retry. Every entry point (Stripe
       Checkout confirm, Payment Sheet confirm, Google Play verify, Stripe
       webhook) funnels into one reconciliation routine.
How:   _reconcile() runs the same checks for every provider:
           1. provider says the transaction is captured
           2. package metadata resolves to a catalog package
           3. charged amount matches the package price (Stripe only)
           4. transaction belongs to the requesting account, and a purchase the
              provider already marked delivered is only replayed by its owner
           5. ledger credit with the transaction reference as marker (claimed
              globally, so one purchase credits one account), commit
           6. best-effort acknowledgement to the provider

Result shape (PurchaseResult → JSON):
    {"success": true, "creditsAdded": 600, "newTotal": 600,
     "purchasedProducts": ["credits_200"], "message": null}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.config import settings
from chapterly.exceptions import (
    AlreadyRedeemedError,
    AmountMismatchError,
    OwnershipMismatchError,
    PurchaseNotCompletedError,
    PurchaseRejectedError,
    ValidationError,
)
from chapterly.models.account import Account
from chapterly.services.catalog import (
    CreditPackage,
    available_packages,
    find_package,
    find_package_by_product,
)
from chapterly.services.google_play_service import GooglePlayService
from chapterly.services.ledger_service import LedgerService, ledger_service
from chapterly.services.payment_provider import PaymentProvider, ProviderTransaction
from chapterly.services.stripe_service import StripeService, stripe_value

logger = logging.getLogger(__name__)

# Stripe events that carry a captured payment
CHECKOUT_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
PAYMENT_INTENT_EVENTS = {"payment_intent.succeeded"}


@dataclass
class PurchaseResult:
    success: bool
    credits_added: int
    new_total: int
    purchased_products: List[str] = field(default_factory=list)
    message: Optional[str] = None


class PurchaseService:
    """
    Orchestrates checkout creation and purchase reconciliation.

    Gateways are injected (built once in the application lifespan) so tests
    can pass mocks; the ledger defaults to the module singleton.
    """

    def __init__(
        self,
        stripe: StripeService,
        google_play: GooglePlayService,
        ledger: LedgerService = ledger_service,
    ):
        self.stripe = stripe
        self.google_play = google_play
        self.ledger = ledger

    # ══════════════════════════════════════════════════════════════════════
    # Catalog & balance
    # ══════════════════════════════════════════════════════════════════════

    async def list_packages(self, db: AsyncSession, account_id: Optional[str] = None) -> List[CreditPackage]:
        """All packages; with an account, one-time packages it owns are hidden."""
        if not account_id:
            return available_packages()
        account = await self.ledger.get_balance(db, account_id)
        return available_packages(account.purchased_products)

    async def get_balance(self, db: AsyncSession, account_id: Optional[str]) -> Account:
        if not account_id:
            raise ValidationError(message="userId is required", field="userId")
        return await self.ledger.get_balance(db, account_id)

    # ══════════════════════════════════════════════════════════════════════
    # Checkout creation (Stripe)
    # ══════════════════════════════════════════════════════════════════════

    async def _purchasable_package(
        self, db: AsyncSession, account_id: Optional[str], package_id: Optional[str]
    ) -> CreditPackage:
        if not package_id or not account_id:
            raise ValidationError(message="packageId and userId are required")

        package = find_package(package_id)
        if package is None or not package.price_id:
            raise ValidationError(message="Invalid or unavailable package", field="packageId")

        handle = await self.ledger.ensure_account(db, account_id)
        if package.one_time and package.product_id in handle.account.purchased_products:
            raise ValidationError(
                message="Product already purchased",
                field="packageId",
                context={"account_id": account_id, "product_id": package.product_id},
            )
        return package

    async def create_checkout_session(
        self,
        db: AsyncSession,
        account_id: Optional[str],
        package_id: Optional[str],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        package = await self._purchasable_package(db, account_id, package_id)
        session = await self.stripe.create_checkout_session(
            package,
            account_id,
            success_url=success_url or settings.stripe_success_url,
            cancel_url=cancel_url or settings.stripe_cancel_url,
        )
        return {"checkoutUrl": stripe_value(session, "url"), "sessionId": stripe_value(session, "id")}

    async def create_payment_intent(
        self,
        db: AsyncSession,
        account_id: Optional[str],
        package_id: Optional[str],
    ) -> Dict[str, Any]:
        package = await self._purchasable_package(db, account_id, package_id)
        intent = await self.stripe.create_payment_intent(package, account_id)
        return {
            "clientSecret": stripe_value(intent, "client_secret"),
            "paymentIntentId": stripe_value(intent, "id"),
        }

    # ══════════════════════════════════════════════════════════════════════
    # Confirmation entry points
    # ══════════════════════════════════════════════════════════════════════

    async def confirm_checkout_session(
        self, db: AsyncSession, account_id: Optional[str], session_id: Optional[str]
    ) -> PurchaseResult:
        if not session_id or not account_id:
            raise ValidationError(message="sessionId and userId are required")
        transaction = await self.stripe.fetch_checkout_session(session_id)
        return await self._reconcile(db, self.stripe, transaction, account_id, owner_label="Session")

    async def confirm_payment_intent(
        self, db: AsyncSession, account_id: Optional[str], intent_id: Optional[str]
    ) -> PurchaseResult:
        if not intent_id or not account_id:
            raise ValidationError(message="paymentIntentId and userId are required")
        transaction = await self.stripe.fetch_payment_intent(intent_id)
        return await self._reconcile(db, self.stripe, transaction, account_id, owner_label="PaymentIntent")

    async def verify_google_play(
        self,
        db: AsyncSession,
        account_id: Optional[str],
        purchase_token: Optional[str],
        product_id: Optional[str],
    ) -> PurchaseResult:
        if not purchase_token or not product_id or not account_id:
            raise ValidationError(message="purchaseToken, productId and userId are required")
        if find_package_by_product(product_id) is None:
            raise ValidationError(message="Package not found", field="productId")
        transaction = await self.google_play.fetch_transaction(purchase_token, product_id=product_id)
        return await self._reconcile(db, self.google_play, transaction, account_id, owner_label="Purchase")

    async def handle_stripe_webhook(
        self, db: AsyncSession, payload: bytes, signature: Optional[str]
    ) -> Dict[str, Any]:
        """
        Reconcile captured payments pushed by Stripe.

        Rejected transactions are acknowledged with 200 so Stripe stops
        redelivering them; provider and database failures propagate (500) so
        Stripe retries.
        """
        event = self.stripe.construct_event(payload, signature)
        event_type = stripe_value(event, "type")
        data_object = stripe_value(stripe_value(event, "data"), "object")

        if event_type in CHECKOUT_EVENTS:
            transaction = self.stripe.session_to_transaction(data_object)
        elif event_type in PAYMENT_INTENT_EVENTS:
            transaction = self.stripe.intent_to_transaction(data_object)
        else:
            logger.debug("Ignoring Stripe event %s", event_type)
            return {"received": True}

        if not transaction.account_id or not transaction.package_id:
            # PaymentIntents created by Checkout carry no package metadata;
            # the session event credits those
            logger.info("Stripe event %s for %s has no purchase metadata; ignored", event_type, transaction.reference)
            return {"received": True}

        try:
            result = await self._reconcile(db, self.stripe, transaction, transaction.account_id)
        except (PurchaseRejectedError, ValidationError) as e:
            logger.warning(
                "Stripe event %s for %s not credited: %s %s",
                event_type, transaction.reference, e.message, e.context,
            )
            return {"received": True}

        logger.info(
            "Stripe event %s reconciled: reference=%s credits_added=%d",
            event_type, transaction.reference, result.credits_added,
        )
        return {"received": True}

    # ══════════════════════════════════════════════════════════════════════
    # Reconciliation
    # ══════════════════════════════════════════════════════════════════════

    def _resolve_package(self, transaction: ProviderTransaction) -> CreditPackage:
        if transaction.provider == self.google_play.name:
            package = find_package_by_product(transaction.product_id)
        else:
            if not transaction.package_id or not transaction.product_id:
                raise ValidationError(
                    message="Missing package metadata on transaction",
                    context={"reference": transaction.reference},
                )
            package = find_package(transaction.package_id)
            if package is not None and package.product_id != transaction.product_id:
                raise ValidationError(
                    message="Package metadata is inconsistent",
                    context={"reference": transaction.reference},
                )
        if package is None:
            raise ValidationError(message="Package not found", context={"reference": transaction.reference})
        return package

    async def _check_amount(self, transaction: ProviderTransaction, package: CreditPackage) -> None:
        if transaction.provider != self.stripe.name:
            return
        expected, currency = await self.stripe.expected_amount(package)
        currency_matches = not transaction.currency or transaction.currency.lower() == currency.lower()
        if transaction.amount != expected or not currency_matches:
            logger.warning(
                "Amount mismatch on %s: expected %s %s, charged %s %s",
                transaction.reference, expected, currency, transaction.amount, transaction.currency,
            )
            raise AmountMismatchError(
                expected=expected,
                actual=transaction.amount,
                context={"reference": transaction.reference, "package_id": package.id},
            )

    async def _reconcile(
        self,
        db: AsyncSession,
        provider: PaymentProvider,
        transaction: ProviderTransaction,
        account_id: str,
        owner_label: str = "Transaction",
    ) -> PurchaseResult:
        if not transaction.is_completed:
            logger.info(
                "%s %s not completed (%s)", provider.name, transaction.reference, transaction.raw_status
            )
            raise PurchaseNotCompletedError(
                state=transaction.state,
                context={"reference": transaction.reference, "raw_status": transaction.raw_status},
            )

        package = self._resolve_package(transaction)
        await self._check_amount(transaction, package)

        if transaction.account_id and transaction.account_id != account_id:
            logger.warning(
                "%s %s belongs to %s, not %s",
                provider.name, transaction.reference, transaction.account_id, account_id,
            )
            raise OwnershipMismatchError(
                message=f"{owner_label} does not belong to this user",
                context={"reference": transaction.reference},
            )

        # A delivered purchase may only come back from the account it was credited to
        if transaction.is_delivered(package.one_time):
            account = await self.ledger.get_balance(db, account_id)
            if transaction.marker not in account.processed_transactions:
                logger.warning(
                    "%s %s was already delivered; refused for %s",
                    provider.name, transaction.reference, account_id,
                )
                raise AlreadyRedeemedError(
                    context={"reference": transaction.reference, "account_id": account_id},
                )

        result = await self.ledger.credit(

            db,
            account_id,
            package.total_credits,
            marker=transaction.marker,
            product_id=package.product_id if package.one_time else None,
        )
        # The credit must be durable before the provider is told it was delivered
        await db.commit()

        await provider.acknowledge(transaction, one_time=package.one_time)

        if not result.applied:
            return PurchaseResult(
                success=True,
                credits_added=0,
                new_total=result.balance,
                purchased_products=result.markers,
                message="Purchase already processed",
            )
        return PurchaseResult(
            success=True,
            credits_added=result.amount,
            new_total=result.balance,
            purchased_products=result.markers,
        )
