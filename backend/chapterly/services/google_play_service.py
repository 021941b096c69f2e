"""
Chapterly Backend — Google Play Billing Gateway
=================================================

What:  Verifies in-app product purchases with the Android Publisher API and
       acknowledges/consumes them after the credit is committed.
Why:   Purchase tokens come from the client and must never be trusted as-is;
       only Google can say whether a token is a completed purchase.
How:   A service account (google-auth) mints an OAuth token; REST calls go
       through the shared httpx.AsyncClient.

Purchase state mapping (ProductPurchase.purchaseState):
    0 → completed, 1 → canceled, 2 → pending

After crediting:
    one-time products  → :acknowledge (stays owned on the Play side)
    repeatable bundles → :consume     (can be bought again)
    Google refunds purchases that stay unacknowledged for three days, so the
    call is retried; a final failure is logged and never fails the request.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx
from google.auth.exceptions import GoogleAuthError, TransportError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chapterly.config import settings
from chapterly.exceptions import (
    ProviderError,
    ProviderUnreachableError,
    TransactionNotFoundError,
)
from chapterly.services.payment_provider import (
    CANCELED,
    COMPLETED,
    PENDING,
    PaymentProvider,
    ProviderTransaction,
)

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
ANDROID_PUBLISHER_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3"

_PURCHASE_STATES = {0: COMPLETED, 1: CANCELED, 2: PENDING}


def load_service_account_info(raw: str) -> Optional[Dict[str, Any]]:
    """Parse GOOGLE_SERVICE_ACCOUNT_JSON. Returns None when unset or malformed."""
    if not raw:
        return None
    try:
        info = json.loads(raw)
    except ValueError:
        logger.error("GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON; Google Play is disabled")
        return None
    if not isinstance(info, dict):
        logger.error("GOOGLE_SERVICE_ACCOUNT_JSON must be a JSON object; Google Play is disabled")
        return None
    return info


class GooglePlayService(PaymentProvider):
    """Google Play implementation of PaymentProvider."""

    name = "google_play"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        package_name: str,
        service_account_info: Optional[Dict[str, Any]] = None,
        credentials: Any = None,
    ):
        self._http = http_client
        self.package_name = package_name
        self._credentials = credentials
        if self._credentials is None and service_account_info:
            self._credentials = service_account.Credentials.from_service_account_info(
                service_account_info, scopes=[ANDROID_PUBLISHER_SCOPE]
            )
        if self.is_configured():
            logger.info("GooglePlayService initialized (package: %s)", package_name)
        else:
            logger.warning("GooglePlayService initialized without credentials; Google Play is disabled")

    def is_configured(self) -> bool:
        return bool(self.package_name and self._credentials is not None)

    async def _access_token(self) -> str:
        if not self.is_configured():
            raise ProviderError(message="Google Play is not configured on the server.", provider=self.name)
        if not self._credentials.valid:
            try:
                # google-auth refresh is blocking I/O
                await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
            except TransportError as e:
                logger.error("Google token endpoint unreachable: %s", str(e))
                raise ProviderUnreachableError(
                    message="Payment provider is unreachable. Please try again.",
                    provider=self.name,
                )
            except GoogleAuthError as e:
                logger.error("Google service account rejected: %s", str(e))
                raise ProviderError(message="Payment provider configuration error", provider=self.name)
        return self._credentials.token

    def _purchase_url(self, product_id: str, token: str) -> str:
        return (
            f"{ANDROID_PUBLISHER_BASE}/applications/{self.package_name}"
            f"/purchases/products/{product_id}/tokens/{token}"
        )

    async def _request(self, method: str, url: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        try:
            return await self._http.request(method, url, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Google Play request failed: %s %s", type(e).__name__, str(e))
            raise ProviderUnreachableError(
                message="Payment provider is unreachable. Please try again.",
                provider=self.name,
            )

    # ══════════════════════════════════════════════════════════════════════
    # Verification
    # ══════════════════════════════════════════════════════════════════════

    async def fetch_transaction(
        self, reference: str, product_id: Optional[str] = None
    ) -> ProviderTransaction:
        """Look up a purchase token. `product_id` is required by the API."""
        if not product_id:
            raise TransactionNotFoundError(message="Product ID is required", provider=self.name)

        response = await self._request("GET", self._purchase_url(product_id, reference))

        if response.status_code in (400, 404, 410):
            logger.info("Google Play does not know token for %s (HTTP %d)", product_id, response.status_code)
            raise TransactionNotFoundError(
                message="Purchase not found",
                provider=self.name,
                context={"product_id": product_id, "status": response.status_code},
            )
        if response.status_code in (401, 403):
            logger.error("Google Play rejected our credentials (HTTP %d)", response.status_code)
            raise ProviderError(message="Payment provider configuration error", provider=self.name)
        if response.status_code >= 400:
            raise ProviderError(
                message="Payment provider error",
                provider=self.name,
                context={"status": response.status_code, "body": response.text[:500]},
            )

        purchase = response.json()
        state_code = purchase.get("purchaseState")
        return ProviderTransaction(
            provider=self.name,
            reference=reference,
            state=_PURCHASE_STATES.get(state_code, PENDING),
            raw_status=f"purchaseState={state_code}",
            product_id=purchase.get("productId") or product_id,
            account_id=purchase.get("obfuscatedExternalAccountId"),
            acknowledged=purchase.get("acknowledgementState") == 1,
            consumed=purchase.get("consumptionState") == 1,
            metadata={
                "orderId": purchase.get("orderId"),
                "acknowledgementState": purchase.get("acknowledgementState"),
                "consumptionState": purchase.get("consumptionState"),
                "purchaseType": purchase.get("purchaseType"),
            },
        )

    # ══════════════════════════════════════════════════════════════════════
    # Acknowledgement
    # ══════════════════════════════════════════════════════════════════════

    async def acknowledge(self, transaction: ProviderTransaction, one_time: bool) -> bool:
        action = "acknowledge" if one_time else "consume"
        if transaction.is_delivered(one_time):
            return True
        try:
            await self._post_purchase_action(transaction.product_id, transaction.reference, action)
        except (ProviderError, RetryError) as e:
            logger.error(
                "Google Play %s failed for product %s after retries: %s",
                action, transaction.product_id, str(e),
            )
            return False
        logger.info("Google Play purchase %sd: product=%s", action, transaction.product_id)
        return True

    @retry(
        retry=retry_if_exception_type(ProviderError),
        stop=stop_after_attempt(settings.ack_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.ack_retry_min_wait,
            max=settings.ack_retry_max_wait,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _post_purchase_action(self, product_id: str, token: str, action: str) -> None:
        url = f"{self._purchase_url(product_id, token)}:{action}"
        response = await self._request("POST", url)
        if response.status_code >= 400:
            raise ProviderError(
                message=f"Google Play {action} failed",
                provider=self.name,
                context={"status": response.status_code, "body": response.text[:500]},
            )
