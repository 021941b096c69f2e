"""
Chapterly Backend — Abstract Payment Provider Interface
=========================================================

What:  The contract PurchaseService uses to talk to Stripe or Google Play.
Why:   Verification is the same five steps for every provider (fetch, check
       state, check amount, check owner, credit). Only fetching and
       acknowledging differ, so those live behind this interface.
How:   Concrete gateways translate their SDK/API objects into a
       ProviderTransaction and their SDK errors into ProviderError subclasses.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Normalized transaction states
PENDING = "pending"
COMPLETED = "completed"
CANCELED = "canceled"


@dataclass(frozen=True)
class ProviderTransaction:
    """
    One provider-side payment, normalized.

    Attributes:
        reference:   session id, payment intent id or purchase token
        state:       pending / completed / canceled
        raw_status:  provider's own status string, for logs and error context
        amount:      charged amount in minor units; None when the provider
                     does not report one (Google Play)
        account_id:  owner recorded on the transaction, if any
        acknowledged, consumed:
                     provider already marked the purchase as delivered; a
                     delivered purchase can only be replayed, never redeemed anew
    """

    provider: str
    reference: str
    state: str
    raw_status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    package_id: Optional[str] = None
    product_id: Optional[str] = None
    account_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    consumed: bool = False

    @property
    def is_completed(self) -> bool:
        return self.state == COMPLETED

    def is_delivered(self, one_time: bool) -> bool:
        """One-time products are acknowledged on delivery, bundles consumed."""
        return self.acknowledged if one_time else self.consumed

    @property
    def marker(self) -> str:
        """Idempotency key, recorded per account and in redeemed_transactions."""
        prefix = MARKER_PREFIXES.get(self.provider, "")
        return f"{prefix}{self.reference}"


# Stripe ids are already globally unique ("cs_", "pi_"); Play tokens are not prefixed
MARKER_PREFIXES = {"google_play": "gp:"}


class PaymentProvider(ABC):
    """
    Interface for payment providers.

    Contract:
        - fetch_transaction() never returns None: unknown references raise
          TransactionNotFoundError, network failures ProviderUnreachableError
        - acknowledge() never raises; it returns False when it gave up
    """

    name: str = "provider"

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials are present."""
        ...

    @abstractmethod
    async def fetch_transaction(
        self, reference: str, product_id: Optional[str] = None
    ) -> ProviderTransaction:
        """Retrieve and normalize a transaction from the provider."""
        ...

    @abstractmethod
    async def acknowledge(self, transaction: ProviderTransaction, one_time: bool) -> bool:
        """
        Tell the provider the purchase was delivered (best effort).

        Called only after the credit is committed.
        """
        ...
