"""
Chapterly Backend — Auth Service (Business Logic Layer)
=========================================================

What:  Magic-link sign in, profile lookup, guest accounts and account deletion.
Why:   Supabase owns identities; this service keeps the `users` / `guests`
       profile rows consistent with them.
How:   IdentityService for everything that touches Supabase Auth, SQLAlchemy
       for the profile rows, LedgerService for guest creation.

Profile creation:
    The first successful verify inserts the `users` row with the signup
    bonus. Later sign-ins hit ON CONFLICT DO NOTHING, so an existing balance
    is never reset.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.config import settings
from chapterly.database import insert_ignore
from chapterly.exceptions import (
    NotFoundError,
    PersistenceError,
    UnauthorizedError,
    ValidationError,
)
from chapterly.models.account import GuestAccount, UserAccount
from chapterly.services.identity_service import IdentityService
from chapterly.services.ledger_service import LedgerService, ledger_service

logger = logging.getLogger(__name__)

# Keys of the GoTrue verify payload that make up the client session
SESSION_KEYS = ("access_token", "refresh_token", "expires_in", "expires_at", "token_type")


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError(message="Unauthorized")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise UnauthorizedError(message="Unauthorized")
    return token


class AuthService:

    def __init__(self, identity: IdentityService, ledger: LedgerService = ledger_service):
        self.identity = identity
        self.ledger = ledger

    # ══════════════════════════════════════════════════════════════════════
    # Sign in
    # ══════════════════════════════════════════════════════════════════════

    async def request_magic_link(self, email: Optional[str]) -> None:
        if not email:
            raise ValidationError(message="Email is required", field="email")
        await self.identity.send_otp(email, redirect_to=settings.frontend_url)
        logger.info("Magic link requested")

    async def verify_magic_link(
        self, db: AsyncSession, email: Optional[str], token: Optional[str]
    ) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
        """
        Exchange the emailed code for a session and make sure a profile exists.

        Returns:
            (user, session) as reported by Supabase Auth
        """
        if not token or not email:
            raise ValidationError(message="Token and email are required")

        payload = await self.identity.verify_otp(email, token)
        user = payload.get("user")
        session = {key: payload[key] for key in SESSION_KEYS if key in payload}

        if user and user.get("id"):
            await self._create_profile(db, user["id"], user.get("email") or email)
        return user, session

    async def _create_profile(self, db: AsyncSession, user_id: str, email: str) -> None:
        values = {
            "id": user_id,
            "authid": user_id,
            "email": email,
            "number_of_credits": settings.signup_bonus_credits,
            "bookmarks": [],
            "settings": {},
            "paid_chapters": [],
        }
        try:
            # Savepoint: a failed insert must not poison the request transaction
            async with db.begin_nested():
                result = await db.execute(insert_ignore(db, UserAccount, values))
        except SQLAlchemyError as e:
            logger.error("Error creating user profile %s: %s", user_id, str(e))
            return
        if result.rowcount:
            logger.info("Created profile %s with %d signup credits", user_id, settings.signup_bonus_credits)

    # ══════════════════════════════════════════════════════════════════════
    # Profile & guests
    # ══════════════════════════════════════════════════════════════════════

    async def get_profile(
        self, db: AsyncSession, authorization: Optional[str]
    ) -> Tuple[Dict[str, Any], UserAccount]:
        user = await self.identity.get_user(bearer_token(authorization))
        try:
            result = await db.execute(select(UserAccount).where(UserAccount.id == user.get("id")))
            profile = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to load profile: %s", str(e))
            raise PersistenceError(message="Failed to get user")
        if profile is None:
            raise NotFoundError(resource="user profile", resource_id=user.get("id"))
        return user, profile

    async def create_guest(self, db: AsyncSession, guest_id: Optional[str] = None) -> Tuple[str, int]:
        """Reuse the account behind `guest_id` if any, else create a fresh guest."""
        account_id = guest_id or str(uuid.uuid4())
        handle = await self.ledger.ensure_account(db, account_id)
        return account_id, handle.account.credits

    # ══════════════════════════════════════════════════════════════════════
    # Deletion
    # ══════════════════════════════════════════════════════════════════════

    async def _delete_everything(self, db: AsyncSession, user_id: str) -> None:
        """Remove profile rows in both partitions, then the identity."""
        try:
            await db.execute(delete(UserAccount).where(UserAccount.id == user_id))
            await db.execute(delete(GuestAccount).where(GuestAccount.id == user_id))
        except SQLAlchemyError as e:
            logger.error("Failed to delete profile %s: %s", user_id, str(e))
            raise PersistenceError(message="Failed to delete account")
        # A failure here rolls the row deletes back with the request
        await self.identity.delete_user(user_id)
        logger.info("Account %s deleted", user_id)

    async def delete_account(self, db: AsyncSession, authorization: Optional[str]) -> None:
        user = await self.identity.get_user(bearer_token(authorization))
        await self._delete_everything(db, user["id"])

    async def request_deletion_code(self, db: AsyncSession, email: Optional[str]) -> None:
        if not email:
            raise ValidationError(message="Email is required", field="email")
        try:
            result = await db.execute(select(UserAccount.id).where(UserAccount.email == email).limit(1))
            exists = result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            logger.error("Failed to look up account by email: %s", str(e))
            raise PersistenceError(message="Failed to send deletion code")
        if not exists:
            raise ValidationError(message="No account found for this email", field="email")
        await self.identity.send_otp(email, create_user=False)

    async def confirm_deletion(self, db: AsyncSession, email: Optional[str], token: Optional[str]) -> None:
        if not email or not token:
            raise ValidationError(message="Email and code are required")
        payload = await self.identity.verify_otp(email, token)
        user = payload.get("user") or {}
        if not user.get("id"):
            raise UnauthorizedError(message="Invalid code")
        await self._delete_everything(db, user["id"])
