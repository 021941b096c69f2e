"""
Chapterly Backend — Credit Ledger
===================================

What:  Applies balance-changing operations to an account exactly once per
       logical event: chapter unlocks (debits) and purchases (credits).
Why:   Clients and payment providers retry. Each change carries a marker
       (a chapter key or a provider transaction reference) that is stored in
       the same row as the balance, so a retried request is a no-op.
How:   Every operation is a read-modify-write of one account row:
           1. resolve the account (users first, then guests) and lock the row
              with SELECT ... FOR UPDATE
           2. check the marker, then the balance; a credit marker is also
              claimed in redeemed_transactions so one provider transaction
              credits one account only
           3. write balance and markers together with a compare-and-swap
              UPDATE ... WHERE number_of_credits = <value read in step 1>
       A lost race or any database failure raises PersistenceError and the
       request transaction is rolled back as a whole.

Outcomes:
    LedgerResult.applied == True   → balance changed, marker recorded
    LedgerResult.applied == False  → marker already present (AlreadyApplied),
                                     nothing written
    AlreadyRedeemedError           → credit marker belongs to another account
    InsufficientFundsError         → debit rejected before any write
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.database import insert_ignore
from chapterly.exceptions import (
    AlreadyRedeemedError,
    InsufficientFundsError,
    PersistenceError,
    ValidationError,
)
from chapterly.models.account import Account, AccountPartition
from chapterly.models.transaction import RedeemedTransaction

logger = logging.getLogger(__name__)

# Lookup order for account resolution: registered accounts take precedence
PARTITION_ORDER = (AccountPartition.REGISTERED, AccountPartition.GUEST)


@dataclass
class AccountHandle:
    """A resolved account plus the partition it must be written back to."""

    partition: AccountPartition
    account: Account
    created: bool = False


@dataclass
class LedgerResult:
    """Outcome of a debit or credit."""

    applied: bool
    balance: int
    amount: int = 0
    account: Optional[Account] = None
    markers: List[str] = field(default_factory=list)


class LedgerService:
    """
    Credit ledger over the `users` / `guests` tables.

    Stateless: every method receives the request's AsyncSession. Commit is
    left to the caller (the request dependency, or PurchaseService before it
    acknowledges a provider transaction).
    """

    # ══════════════════════════════════════════════════════════════════════
    # Account resolution
    # ══════════════════════════════════════════════════════════════════════

    async def ensure_account(
        self,
        db: AsyncSession,
        account_id: str,
        lock: bool = False,
    ) -> AccountHandle:
        """
        Return the existing account or create a default guest account.

        Registered accounts win over guests with the same ID. Creation uses
        INSERT ... ON CONFLICT (id) DO NOTHING followed by a re-read, so two
        concurrent first requests for one ID end up sharing a single row.
        """
        if not account_id:
            raise ValidationError(message="User ID is required", field="userId")

        try:
            handle = await self._find(db, account_id, lock=lock)
            if handle is not None:
                return handle

            inserted = await db.execute(self._insert_guest_ignore(db, account_id))
            handle = await self._find(db, account_id, lock=lock)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch or create account %s: %s", account_id, str(e))
            raise PersistenceError(
                message="Failed to fetch or create account",
                context={"account_id": account_id, "error_type": type(e).__name__},
            )

        if handle is None:
            raise PersistenceError(
                message="Failed to fetch or create account",
                context={"account_id": account_id},
            )

        # rowcount 0: a concurrent request inserted the row first
        if inserted.rowcount == 1:
            logger.info("Created guest account %s", account_id)
            handle.created = True
        return handle

    async def find_account(self, db: AsyncSession, account_id: str) -> Optional[AccountHandle]:
        """Resolve without creating. Returns None when neither partition has the ID."""
        try:
            return await self._find(db, account_id, lock=False)
        except SQLAlchemyError as e:
            logger.error("Failed to look up account %s: %s", account_id, str(e))
            raise PersistenceError(context={"account_id": account_id})

    async def _find(
        self, db: AsyncSession, account_id: str, lock: bool
    ) -> Optional[AccountHandle]:
        for partition in PARTITION_ORDER:
            model = partition.model
            # populate_existing: rows may already sit in the identity map from
            # an earlier read in this transaction
            query = (
                select(model)
                .where(model.id == account_id)
                .execution_options(populate_existing=True)
            )
            if lock:
                query = query.with_for_update()
            result = await db.execute(query)
            row = result.scalar_one_or_none()
            if row is not None:
                return AccountHandle(partition=partition, account=Account.from_row(partition, row))
        return None

    @staticmethod
    def _insert_guest_ignore(db: AsyncSession, account_id: str):
        values = {
            "id": account_id,
            "email": None,
            "number_of_credits": 0,
            "bookmarks": [],
            "settings": {},
            "paid_chapters": [],
        }
        return insert_ignore(db, AccountPartition.GUEST.model, values)

    # ══════════════════════════════════════════════════════════════════════
    # Balance-changing operations
    # ══════════════════════════════════════════════════════════════════════

    async def debit(
        self,
        db: AsyncSession,
        account_id: str,
        amount: int,
        marker: str,
    ) -> LedgerResult:
        """
        Spend `amount` credits once per `marker` (a "bookId:chapter" key).

        Raises:
            InsufficientFundsError: balance < amount; nothing written
            PersistenceError: store failure or concurrent modification
        """
        self._validate_amount(amount)
        if not marker:
            raise ValidationError(message="A marker is required for a debit", field="marker")

        handle = await self.ensure_account(db, account_id, lock=True)
        account = handle.account

        if marker in account.unlocked_chapters:
            logger.info("Debit %s for %s already applied; balance %d", marker, account_id, account.credits)
            return LedgerResult(
                applied=False,
                balance=account.credits,
                account=account,
                markers=account.paid_chapters,
            )

        if account.credits < amount:
            logger.info(
                "Debit %s for %s rejected: %d required, %d available",
                marker, account_id, amount, account.credits,
            )
            raise InsufficientFundsError(
                required=amount,
                current=account.credits,
                context={"account_id": account_id, "marker": marker},
            )

        expected = account.credits
        account.credits = expected - amount
        account.unlocked_chapters.add(marker)
        await self._write_back(db, handle, expected)

        logger.info(
            "Debited %d from %s for %s; new balance %d",
            amount, account_id, marker, account.credits,
        )
        return LedgerResult(
            applied=True,
            balance=account.credits,
            amount=amount,
            account=account,
            markers=account.paid_chapters,
        )

    async def credit(
        self,
        db: AsyncSession,
        account_id: str,
        amount: int,
        marker: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> LedgerResult:
        """
        Add `amount` credits, once per `marker` when one is given.

        Args:
            marker: idempotency key, normally the provider transaction reference
            product_id: one-time product to record as owned alongside the credit

        A product that is already recorded does not block the credit: the
        marker decides idempotency, the product set only gates new checkouts.

        Raises:
            AlreadyRedeemedError: another account already redeemed `marker`
            PersistenceError: store failure or concurrent modification
        """
        self._validate_amount(amount)

        handle = await self.ensure_account(db, account_id, lock=True)
        account = handle.account

        if marker and marker in account.processed_transactions:
            logger.info("Credit %s for %s already applied; balance %d", marker, account_id, account.credits)
            return LedgerResult(
                applied=False,
                balance=account.credits,
                account=account,
                markers=account.purchased_products_list,
            )

        if marker and not await self._claim_marker(db, account_id, marker, amount):
            logger.info("Credit %s already redeemed by %s; balance %d", marker, account_id, account.credits)
            return LedgerResult(
                applied=False,
                balance=account.credits,
                account=account,
                markers=account.purchased_products_list,
            )

        if product_id and product_id in account.purchased_products:
            logger.warning(
                "Provider confirmed a new transaction %s for one-time product %s that %s "
                "already owns; crediting anyway",
                marker, product_id, account_id,
            )

        expected = account.credits
        account.credits = expected + amount
        if marker:
            account.processed_transactions.add(marker)
        if product_id:
            account.purchased_products.add(product_id)
        await self._write_back(db, handle, expected)

        logger.info(
            "Credited %d to %s (marker=%s); new balance %d",
            amount, account_id, marker, account.credits,
        )
        return LedgerResult(
            applied=True,
            balance=account.credits,
            amount=amount,
            account=account,
            markers=account.purchased_products_list,
        )

    async def get_balance(self, db: AsyncSession, account_id: str) -> Account:
        """
        Read-only view of an account.

        Unknown IDs get an unsaved zero-balance guest; the row is only
        created by the first balance-changing operation.
        """
        if not account_id:
            raise ValidationError(message="User ID is required", field="userId")
        handle = await self.find_account(db, account_id)
        if handle is None:
            return Account(id=account_id, partition=AccountPartition.GUEST)
        return handle.account

    async def _claim_marker(self, db: AsyncSession, account_id: str, marker: str, amount: int) -> bool:
        """
        Claim `marker` for `account_id` in redeemed_transactions.

        Returns False when this account claimed it earlier (a recreated
        account with a reused ID). Raises AlreadyRedeemedError when another
        account holds it; a concurrent claimer blocks on the primary key
        until the first transaction commits.
        """
        values = {"marker": marker, "account_id": account_id, "credits": amount}
        try:
            inserted = await db.execute(
                insert_ignore(db, RedeemedTransaction, values, index_elements=("marker",))
            )
            if inserted.rowcount == 1:
                return True
            owner = await db.scalar(
                select(RedeemedTransaction.account_id).where(RedeemedTransaction.marker == marker)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to claim %s for %s: %s", marker, account_id, str(e))
            raise PersistenceError(
                context={"account_id": account_id, "marker": marker, "error_type": type(e).__name__},
            )

        if owner == account_id:
            return False
        logger.warning("Refused %s for %s: already redeemed by %s", marker, account_id, owner)
        raise AlreadyRedeemedError(context={"marker": marker, "account_id": account_id})

    async def _write_back(
self, db: AsyncSession, handle: AccountHandle, expected_credits: int) -> None:
        """
        Persist balance and markers in one compare-and-swap UPDATE.

        Zero matched rows means another transaction changed the balance after
        we read it; the caller's transaction is rolled back and the client may
        retry.
        """
        account = handle.account
        model = handle.partition.model
        statement = (
            update(model)
            .where(model.id == account.id, model.number_of_credits == expected_credits)
            .values(**account.row_values())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await db.execute(statement)
        except SQLAlchemyError as e:
            logger.error("Ledger write failed for %s: %s", account.id, str(e))
            raise PersistenceError(
                context={"account_id": account.id, "error_type": type(e).__name__},
            )

        if result.rowcount != 1:
            logger.warning("Concurrent balance change detected for %s", account.id)
            raise PersistenceError(
                message="The account was modified concurrently. Please retry.",
                context={"account_id": account.id, "partition": handle.partition.value},
            )

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(message="Amount must be a positive integer", field="amount")


ledger_service = LedgerService()
