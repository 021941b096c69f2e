"""
Chapterly Backend — Custom Exception Hierarchy
================================================

What:  Application-specific exceptions for every failure the API can report.
Why:   Services raise typed errors; global handlers (registered in main.py)
       turn them into `{"error": message, ...}` JSON bodies with the right
       HTTP status, so no route needs its own try/except.
How:   Each exception carries a user-safe message and an optional context
       dict that is logged server-side but never returned to the client.

Exception Hierarchy:
    ChapterlyError (base)
    ├── ValidationError              → 400 Bad Request
    ├── InsufficientFundsError       → 400 (with required/current)
    ├── PurchaseRejectedError        → 400
    │   ├── PurchaseNotCompletedError
    │   ├── AmountMismatchError
    │   ├── OwnershipMismatchError
    │   └── AlreadyRedeemedError
    ├── ProviderError                → 500
    │   ├── ProviderUnreachableError → 500
    │   ├── TransactionNotFoundError → 400
    │   └── IdentityProviderError    → 400 (provider message passed through)
    ├── UnauthorizedError            → 401
    ├── NotFoundError                → 404
    ├── PersistenceError             → 500 (retryable)
    └── RateLimitExceededError       → 429
"""

from typing import Any, Dict, Optional


class ChapterlyError(Exception):
    """
    Base exception for all Chapterly application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    code = "server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(ChapterlyError):
    """
    Raised when client input fails validation.

    When:    Missing userId/bookId/chapterNum, unknown package, bad amount.
    HTTP:    400 Bad Request
    """

    code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class InsufficientFundsError(ChapterlyError):
    """
    Raised when a debit would take an account balance below zero.

    The check runs before anything is written, so the stored balance is
    unchanged when this is raised.
    HTTP:    400 with `required` and `current` in the body.
    """

    code = "insufficient_credits"

    def __init__(self, required: int, current: int, context: Optional[Dict[str, Any]] = None):
        super().__init__(message="Insufficient credits", context=context)
        self.required = required
        self.current = current


class PurchaseRejectedError(ChapterlyError):
    """Base for provider transactions that exist but must not be credited. HTTP 400."""

    code = "purchase_rejected"


class PurchaseNotCompletedError(PurchaseRejectedError):
    """Provider reports the transaction as pending or canceled."""

    code = "purchase_not_completed"

    def __init__(self, state: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        if state:
            ctx["state"] = state
        super().__init__(message="Payment not completed yet", context=ctx)
        self.state = state


class AmountMismatchError(PurchaseRejectedError):
    """Charged amount differs from the package price (tampered client request)."""

    code = "amount_mismatch"

    def __init__(self, expected: int, actual: Optional[int], context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx.update({"expected": expected, "actual": actual})
        super().__init__(message="Payment amount does not match the package price", context=ctx)


class OwnershipMismatchError(PurchaseRejectedError):
    """The transaction was made for a different account."""

    code = "ownership_mismatch"

    def __init__(self, message: str = "Transaction does not belong to this user",
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class AlreadyRedeemedError(PurchaseRejectedError):
    """The transaction was already credited to another account, or delivered without us."""

    code = "already_redeemed"

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__(message="Purchase has already been redeemed", context=context)



class ProviderError(ChapterlyError):
    """
    Raised when an external provider (Stripe, Google Play, Supabase Auth) fails.

    HTTP:    500 unless a subclass says otherwise. The provider's raw error is
             kept in context for the logs.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str = "Payment provider error",
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if provider:
            ctx["provider"] = provider
        super().__init__(message=message, context=ctx)
        self.provider = provider


class ProviderUnreachableError(ProviderError):
    """Network failure or timeout talking to a provider."""

    code = "provider_unreachable"


class TransactionNotFoundError(ProviderError):
    """The provider does not know the session / intent / purchase token. HTTP 400."""

    code = "transaction_not_found"


class IdentityProviderError(ProviderError):
    """Supabase Auth rejected the request (bad OTP, bad email). HTTP 400."""

    code = "auth_error"


class UnauthorizedError(ChapterlyError):
    """Missing, malformed or expired bearer token. HTTP 401."""

    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class NotFoundError(ChapterlyError):
    """
    Raised when a requested resource does not exist.

    SQLAlchemy returns None for missing rows; services convert that into
    this exception so routes stay free of status-code logic.
    HTTP:    404 Not Found
    """

    code = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"{resource.capitalize()} not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class PersistenceError(ChapterlyError):
    """
    Raised when a database operation fails or loses a concurrent update.

    The caller may retry: ledger writes are idempotent through markers.
    Security: the client only ever sees the generic message.
    HTTP:    500
    """

    code = "persistence_error"

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(ChapterlyError):
    """Client exceeded the per-IP request rate limit. HTTP 429."""

    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int = 60, context: Optional[Dict[str, Any]] = None):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
