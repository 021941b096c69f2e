"""
Chapterly Backend — Stripe Gateway
====================================

What:  Stripe Checkout Sessions, PaymentIntents (mobile Payment Sheet),
       Prices and webhook signature verification.
Why:   Web clients buy through Checkout; the mobile app uses the Payment Sheet.
How:   The stripe SDK is synchronous, so every call runs in a worker thread
       via asyncio.to_thread. The API key is passed per call instead of being
       set on the module, so the gateway is an ordinary object created once at
       startup and injected into the services that need it.

Error translation:
    InvalidRequestError(resource_missing) → TransactionNotFoundError (400)
    APIConnectionError                    → ProviderUnreachableError (500)
    AuthenticationError/PermissionError   → ProviderError (500)
    any other StripeError                 → ProviderError (500)
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import stripe

from chapterly.exceptions import (
    ProviderError,
    ProviderUnreachableError,
    TransactionNotFoundError,
    ValidationError,
)
from chapterly.services.catalog import CreditPackage
from chapterly.services.payment_provider import (
    CANCELED,
    COMPLETED,
    PENDING,
    PaymentProvider,
    ProviderTransaction,
)

logger = logging.getLogger(__name__)


def stripe_value(obj: Any, key: str) -> Any:
    """Read a key from a StripeObject or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _as_dict(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    if isinstance(value, dict):
        return dict(value)
    to_dict = getattr(value, "to_dict", None)
    return dict(to_dict()) if callable(to_dict) else {}


class StripeService(PaymentProvider):
    """Stripe implementation of PaymentProvider plus checkout creation."""

    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str = "", currency: str = "usd"):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self.currency = currency
        if api_key:
            mode = "live" if api_key.startswith("sk_live_") else "test"
            logger.info("StripeService initialized (mode: %s)", mode)
        else:
            logger.warning("StripeService initialized without STRIPE_SECRET_KEY; Stripe is disabled")

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderError(message="Stripe is not configured on the server.", provider=self.name)

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call in a thread and translate its errors."""
        self._require_configured()
        try:
            return await asyncio.to_thread(func, *args, api_key=self._api_key, **kwargs)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise TransactionNotFoundError(
                    message="Transaction not found",
                    provider=self.name,
                    context={"stripe_error": str(e)},
                )
            raise ProviderError(
                message=getattr(e, "user_message", None) or "Invalid request to payment provider",
                provider=self.name,
                context={"stripe_error": str(e)},
            )
        except stripe.APIConnectionError as e:
            logger.error("Stripe unreachable: %s", str(e))
            raise ProviderUnreachableError(
                message="Payment provider is unreachable. Please try again.",
                provider=self.name,
            )
        except (stripe.AuthenticationError, stripe.PermissionError) as e:
            logger.error("Stripe rejected our credentials: %s", str(e))
            raise ProviderError(message="Payment provider configuration error", provider=self.name)
        except stripe.StripeError as e:
            logger.error("Stripe error: %s", str(e))
            raise ProviderError(
                message=getattr(e, "user_message", None) or "Payment provider error",
                provider=self.name,
                context={"stripe_error": str(e)},
            )

    # ══════════════════════════════════════════════════════════════════════
    # Pricing
    # ══════════════════════════════════════════════════════════════════════

    async def expected_amount(self, package: CreditPackage) -> tuple:
        """
        (amount in minor units, currency) the package should be charged at.

        The Stripe Price is the source of truth so dashboard changes are
        honored; the catalog price is the fallback when the Price cannot be
        read.
        """
        if package.price_id:
            try:
                price = await self._call(stripe.Price.retrieve, package.price_id)
                unit_amount = stripe_value(price, "unit_amount")
                if isinstance(unit_amount, int):
                    return unit_amount, stripe_value(price, "currency") or self.currency
            except ProviderError as e:
                logger.warning(
                    "Could not read Stripe price %s (%s); using catalog price",
                    package.price_id, e.message,
                )
        return package.price_minor_units, self.currency

    # ══════════════════════════════════════════════════════════════════════
    # Checkout creation
    # ══════════════════════════════════════════════════════════════════════

    @staticmethod
    def _metadata(package: CreditPackage, account_id: str) -> Dict[str, str]:
        return {
            "userId": account_id,
            "packageId": package.id,
            "productId": package.product_id,
        }

    async def create_checkout_session(
        self,
        package: CreditPackage,
        account_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Any:
        if not package.price_id:
            raise ValidationError(message="Invalid or unavailable package", field="packageId")
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            line_items=[{"price": package.price_id, "quantity": 1}],
            client_reference_id=account_id,
            metadata=self._metadata(package, account_id),
            success_url=success_url,
            cancel_url=cancel_url,
        )
        logger.info(
            "Checkout session created: session=%s account=%s package=%s",
            stripe_value(session, "id"), account_id, package.id,
        )
        return session

    async def create_payment_intent(self, package: CreditPackage, account_id: str) -> Any:
        amount, currency = await self.expected_amount(package)
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata=self._metadata(package, account_id),
        )
        logger.info(
            "PaymentIntent created: intent=%s account=%s package=%s amount=%d",
            stripe_value(intent, "id"), account_id, package.id, amount,
        )
        return intent

    # ══════════════════════════════════════════════════════════════════════
    # Verification
    # ══════════════════════════════════════════════════════════════════════

    async def fetch_transaction(
        self, reference: str, product_id: Optional[str] = None
    ) -> ProviderTransaction:
        if reference.startswith("cs_"):
            return await self.fetch_checkout_session(reference)
        if reference.startswith("pi_"):
            return await self.fetch_payment_intent(reference)
        raise TransactionNotFoundError(
            message="Unrecognized Stripe transaction reference",
            provider=self.name,
            context={"reference": reference},
        )

    async def fetch_checkout_session(self, session_id: str) -> ProviderTransaction:
        session = await self._call(
            stripe.checkout.Session.retrieve, session_id, expand=["payment_intent"]
        )
        if not session:
            raise TransactionNotFoundError(message="Checkout session not found", provider=self.name)
        return self.session_to_transaction(session)

    async def fetch_payment_intent(self, intent_id: str) -> ProviderTransaction:
        intent = await self._call(stripe.PaymentIntent.retrieve, intent_id)
        if not intent:
            raise TransactionNotFoundError(message="PaymentIntent not found", provider=self.name)
        return self.intent_to_transaction(intent)

    def session_to_transaction(self, session: Any) -> ProviderTransaction:
        payment_status = stripe_value(session, "payment_status") or ""
        status = stripe_value(session, "status") or ""
        intent_status = stripe_value(stripe_value(session, "payment_intent"), "status")

        if payment_status == "paid":
            state = COMPLETED
        elif status == "expired" or intent_status == "canceled":
            state = CANCELED
        else:
            state = PENDING

        metadata = _as_dict(stripe_value(session, "metadata"))
        return ProviderTransaction(
            provider=self.name,
            reference=stripe_value(session, "id"),
            state=state,
            raw_status=f"{status}/{payment_status}",
            amount=stripe_value(session, "amount_total"),
            currency=stripe_value(session, "currency"),
            package_id=metadata.get("packageId"),
            product_id=metadata.get("productId"),
            account_id=metadata.get("userId") or stripe_value(session, "client_reference_id"),
            metadata=metadata,
        )

    def intent_to_transaction(self, intent: Any) -> ProviderTransaction:
        status = stripe_value(intent, "status") or ""
        if status == "succeeded":
            state = COMPLETED
        elif status == "canceled":
            state = CANCELED
        else:
            state = PENDING

        metadata = _as_dict(stripe_value(intent, "metadata"))
        return ProviderTransaction(
            provider=self.name,
            reference=stripe_value(intent, "id"),
            state=state,
            raw_status=status,
            amount=stripe_value(intent, "amount"),
            currency=stripe_value(intent, "currency"),
            package_id=metadata.get("packageId"),
            product_id=metadata.get("productId"),
            account_id=metadata.get("userId"),
            metadata=metadata,
        )

    async def acknowledge(self, transaction: ProviderTransaction, one_time: bool) -> bool:
        # Captured Stripe payments are final; nothing to acknowledge
        return True

    # ══════════════════════════════════════════════════════════════════════
    # Webhooks
    # ══════════════════════════════════════════════════════════════════════

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        """Verify the Stripe-Signature header and parse the event."""
        if not self._webhook_secret:
            raise ProviderError(message="Stripe webhooks are not configured", provider=self.name)
        if not signature:
            raise ValidationError(message="Missing Stripe-Signature header", field="Stripe-Signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError:
            raise ValidationError(message="Invalid webhook payload")
        except stripe.SignatureVerificationError:
            logger.warning("Rejected Stripe webhook with invalid signature")
            raise ValidationError(message="Invalid webhook signature")
