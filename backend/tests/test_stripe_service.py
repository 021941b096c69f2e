"""
Chapterly Backend — Stripe Gateway Tests
==========================================

What:  Status normalization, price lookup, error translation and webhook
       signature checks of StripeService. The Stripe API is never called:
       SDK methods are patched.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from chapterly.exceptions import (
    ProviderError,
    ProviderUnreachableError,
    TransactionNotFoundError,
    ValidationError,
)
from chapterly.services.catalog import find_package
from chapterly.services.payment_provider import CANCELED, COMPLETED, PENDING
from chapterly.services.stripe_service import StripeService, stripe_value

WEBHOOK_SECRET = "whsec_test_secret"


def _service(api_key="sk_test_123"):
    return StripeService(api_key=api_key, webhook_secret=WEBHOOK_SECRET, currency="usd")


def _session(**overrides):
    session = {
        "id": "cs_test_1",
        "status": "complete",
        "payment_status": "paid",
        "amount_total": 499,
        "currency": "usd",
        "client_reference_id": "user-1",
        "metadata": {"userId": "user-1", "packageId": "500", "productId": "credits_500"},
        "payment_intent": {"id": "pi_1", "status": "succeeded"},
    }
    session.update(overrides)
    return session


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed_payload = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class TestStatusMapping:

    def test_paid_session_is_completed(self):
        transaction = _service().session_to_transaction(_session())

        assert transaction.state == COMPLETED
        assert transaction.marker == "cs_test_1"
        assert transaction.amount == 499
        assert (transaction.package_id, transaction.product_id) == ("500", "credits_500")
        assert transaction.account_id == "user-1"

    def test_open_unpaid_session_is_pending(self):
        transaction = _service().session_to_transaction(
            _session(status="open", payment_status="unpaid", payment_intent=None)
        )
        assert transaction.state == PENDING

    def test_expired_session_is_canceled(self):
        transaction = _service().session_to_transaction(
            _session(status="expired", payment_status="unpaid")
        )
        assert transaction.state == CANCELED

    def test_canceled_intent_cancels_session(self):
        transaction = _service().session_to_transaction(
            _session(status="open", payment_status="unpaid", payment_intent={"status": "canceled"})
        )
        assert transaction.state == CANCELED

    def test_client_reference_used_when_metadata_lacks_user(self):
        transaction = _service().session_to_transaction(
            _session(metadata={"packageId": "500", "productId": "credits_500"})
        )
        assert transaction.account_id == "user-1"

    @pytest.mark.parametrize(
        "status,state",
        [("succeeded", COMPLETED), ("canceled", CANCELED), ("processing", PENDING),
         ("requires_payment_method", PENDING)],
    )
    def test_intent_status_mapping(self, status, state):
        transaction = _service().intent_to_transaction({
            "id": "pi_1",
            "status": status,
            "amount": 499,
            "currency": "usd",
            "metadata": {"userId": "u1", "packageId": "500", "productId": "credits_500"},
        })
        assert transaction.state == state
        assert transaction.raw_status == status

    def test_stripe_value_reads_dicts_and_objects(self):
        assert stripe_value({"id": "x"}, "id") == "x"
        assert stripe_value(MagicMock(id="y"), "id") == "y"
        assert stripe_value(None, "id") is None


class TestPricing:

    @pytest.mark.asyncio
    async def test_expected_amount_uses_stripe_price(self):
        package = find_package("500")
        with patch.object(stripe.Price, "retrieve", return_value={"unit_amount": 459, "currency": "usd"}) as retrieve:
            amount, currency = await _service().expected_amount(package)

        assert (amount, currency) == (459, "usd")
        assert retrieve.call_args.args == (package.price_id,)
        assert retrieve.call_args.kwargs["api_key"] == "sk_test_123"

    @pytest.mark.asyncio
    async def test_expected_amount_falls_back_to_catalog(self):
        package = find_package("1000")
        with patch.object(stripe.Price, "retrieve", side_effect=stripe.APIConnectionError("down")):
            amount, currency = await _service().expected_amount(package)

        assert (amount, currency) == (999, "usd")


class TestErrorTranslation:

    @pytest.mark.asyncio
    async def test_missing_session_maps_to_transaction_not_found(self):
        error = stripe.InvalidRequestError("No such checkout session", "id", code="resource_missing")
        with patch.object(stripe.checkout.Session, "retrieve", side_effect=error):
            with pytest.raises(TransactionNotFoundError):
                await _service().fetch_checkout_session("cs_missing")

    @pytest.mark.asyncio
    async def test_network_failure_maps_to_unreachable(self):
        with patch.object(stripe.PaymentIntent, "retrieve", side_effect=stripe.APIConnectionError("timeout")):
            with pytest.raises(ProviderUnreachableError):
                await _service().fetch_payment_intent("pi_1")

    @pytest.mark.asyncio
    async def test_bad_credentials_map_to_provider_error(self):
        with patch.object(stripe.PaymentIntent, "retrieve", side_effect=stripe.AuthenticationError("bad key")):
            with pytest.raises(ProviderError) as exc_info:
                await _service().fetch_payment_intent("pi_1")

        assert not isinstance(exc_info.value, ProviderUnreachableError)

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_refuses_calls(self):
        with pytest.raises(ProviderError) as exc_info:
            await _service(api_key="").fetch_payment_intent("pi_1")

        assert exc_info.value.message == "Stripe is not configured on the server."

    @pytest.mark.asyncio
    async def test_unknown_reference_prefix(self):
        with pytest.raises(TransactionNotFoundError):
            await _service().fetch_transaction("ch_123")

    @pytest.mark.asyncio
    async def test_fetch_checkout_session_expands_intent(self):
        with patch.object(stripe.checkout.Session, "retrieve", return_value=_session()) as retrieve:
            transaction = await _service().fetch_transaction("cs_test_1")

        assert transaction.is_completed
        assert retrieve.call_args.kwargs["expand"] == ["payment_intent"]


class TestCheckoutCreation:

    @pytest.mark.asyncio
    async def test_checkout_session_carries_purchase_metadata(self):
        package = find_package("200")
        created = {"id": "cs_new", "url": "https://checkout.stripe.com/c/pay/cs_new"}
        with patch.object(stripe.checkout.Session, "create", return_value=created) as create:
            session = await _service().create_checkout_session(
                package, "user-1", success_url="https://ok", cancel_url="https://cancel"
            )

        assert session == created
        kwargs = create.call_args.kwargs
        assert kwargs["line_items"] == [{"price": package.price_id, "quantity": 1}]
        assert kwargs["metadata"] == {"userId": "user-1", "packageId": "200", "productId": "credits_200"}
        assert kwargs["client_reference_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_payment_intent_charges_expected_amount(self):
        package = find_package("500")
        with patch.object(stripe.Price, "retrieve", return_value={"unit_amount": 499, "currency": "usd"}), \
             patch.object(stripe.PaymentIntent, "create", return_value={"id": "pi_new"}) as create:
            await _service().create_payment_intent(package, "user-1")

        assert create.call_args.kwargs["amount"] == 499
        assert create.call_args.kwargs["currency"] == "usd"


class TestWebhookSignature:

    def test_valid_signature_parses_event(self):
        payload = json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1", "object": "checkout.session"}},
        }).encode()

        event = _service().construct_event(payload, _signed(payload))

        assert stripe_value(event, "type") == "checkout.session.completed"

    def test_wrong_secret_rejected(self):
        payload = b'{"id": "evt_1", "object": "event"}'

        with pytest.raises(ValidationError) as exc_info:
            _service().construct_event(payload, _signed(payload, secret="whsec_other"))

        assert exc_info.value.message == "Invalid webhook signature"

    def test_missing_signature_rejected(self):
        with pytest.raises(ValidationError):
            _service().construct_event(b"{}", None)

    def test_unconfigured_secret_is_a_server_error(self):
        service = StripeService(api_key="sk_test_123", webhook_secret="")

        with pytest.raises(ProviderError):
            service.construct_event(b"{}", "t=1,v1=abc")
