"""
Chapterly Backend — Account Models
====================================

What:  ORM models for the two account partitions (`users`, `guests`) and the
       in-memory `Account` value the ledger works with.
Why:   Registered and guest accounts live in different Supabase tables with
       the same credit columns. Services resolve an ID to one partition and
       then operate on a single `Account` shape.
How:   `Account.from_row()` decodes a row; `Account.row_values()` encodes it
       back. The settings blob is only parsed/serialized here.

Settings blob layout (JSON object, sometimes stored as a JSON string):
    {
        "purchasedProducts": ["credits_200"],
        "processedTransactions": ["cs_test_...", "pi_...", "gp:<token>"],
        ... any other client preferences, passed through untouched ...
    }
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Type, Union

from sqlalchemy import JSON, CheckConstraint, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chapterly.database import Base

logger = logging.getLogger(__name__)

# JSONB on Supabase, plain JSON elsewhere (SQLite in tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

PURCHASED_PRODUCTS_KEY = "purchasedProducts"
PROCESSED_TRANSACTIONS_KEY = "processedTransactions"


class AccountColumnsMixin:
    """Columns shared by both account tables."""

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    number_of_credits: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    bookmarks: Mapped[Any] = mapped_column(JsonColumn, nullable=True, default=list)
    settings: Mapped[Any] = mapped_column(JsonColumn, nullable=True, default=dict)
    paid_chapters: Mapped[Any] = mapped_column(JsonColumn, nullable=True, default=list)


class UserAccount(AccountColumnsMixin, Base):
    """A registered (email-authenticated) account. `authid` mirrors auth.users.id."""

    __tablename__ = "users"

    authid: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("number_of_credits >= 0", name="ck_users_credits_non_negative"),
    )


class GuestAccount(AccountColumnsMixin, Base):
    """An anonymous account identified by a client-held guest ID."""

    __tablename__ = "guests"

    __table_args__ = (
        CheckConstraint("number_of_credits >= 0", name="ck_guests_credits_non_negative"),
    )


AccountRow = Union[UserAccount, GuestAccount]


class AccountPartition(str, enum.Enum):
    """Which table an account lives in. Lookup order is REGISTERED, then GUEST."""

    REGISTERED = "users"
    GUEST = "guests"

    @property
    def model(self) -> Type[AccountRow]:
        return UserAccount if self is AccountPartition.REGISTERED else GuestAccount


def parse_settings(raw: Any) -> Dict[str, Any]:
    """
    Decode the settings blob into a dict.

    Older clients stored the blob as a JSON string. Anything that is not a
    JSON object decodes to an empty dict (and is logged) rather than failing
    the request.
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            logger.error("Failed to parse settings JSON; treating as empty")
            return {}
        if isinstance(decoded, dict):
            return decoded
    logger.error("Settings blob has unexpected type %s; treating as empty", type(raw).__name__)
    return {}


def _string_set(values: Any) -> Set[str]:
    if not isinstance(values, (list, tuple, set)):
        return set()
    return {str(v) for v in values if v is not None}


def _ordered(existing: List[str], values: Set[str]) -> List[str]:
    """Keep stored order for stable JSON, append new entries sorted."""
    kept = [v for v in existing if v in values]
    kept_set = set(kept)
    return kept + sorted(v for v in values if v not in kept_set)


@dataclass
class Account:
    """
    Decoded account state used by the ledger.

    Invariant: credits >= 0. Markers are plain string sets; the ledger is the
    only writer of all four balance-related fields.
    """

    id: str
    partition: AccountPartition
    credits: int = 0
    unlocked_chapters: Set[str] = field(default_factory=set)
    purchased_products: Set[str] = field(default_factory=set)
    processed_transactions: Set[str] = field(default_factory=set)
    settings: Dict[str, Any] = field(default_factory=dict)
    email: Optional[str] = None
    # Stored order of paid_chapters, kept so the API returns them as unlocked
    _chapter_order: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_row(cls, partition: AccountPartition, row: AccountRow) -> "Account":
        blob = parse_settings(row.settings)
        chapters = row.paid_chapters if isinstance(row.paid_chapters, list) else []
        return cls(
            id=row.id,
            partition=partition,
            credits=int(row.number_of_credits or 0),
            unlocked_chapters=_string_set(chapters),
            purchased_products=_string_set(blob.pop(PURCHASED_PRODUCTS_KEY, None)),
            processed_transactions=_string_set(blob.pop(PROCESSED_TRANSACTIONS_KEY, None)),
            settings=blob,
            email=row.email,
            _chapter_order=[str(c) for c in chapters if c is not None],
        )

    @property
    def paid_chapters(self) -> List[str]:
        """Unlocked chapter keys in unlock order."""
        return _ordered(self._chapter_order, self.unlocked_chapters)

    @property
    def purchased_products_list(self) -> List[str]:
        return sorted(self.purchased_products)

    def settings_blob(self) -> Dict[str, Any]:
        """Re-embed the marker sets into the opaque settings map."""
        blob = dict(self.settings)
        blob[PURCHASED_PRODUCTS_KEY] = sorted(self.purchased_products)
        blob[PROCESSED_TRANSACTIONS_KEY] = sorted(self.processed_transactions)
        return blob

    def row_values(self) -> Dict[str, Any]:
        """Column values for the single combined ledger UPDATE."""
        return {
            "number_of_credits": self.credits,
            "paid_chapters": self.paid_chapters,
            "settings": self.settings_blob(),
        }
