"""
Chapterly Backend — Redeemed Transaction Model
================================================

What:  One row per provider transaction that has been credited, keyed by the
       idempotency marker ("cs_...", "pi_...", "gp:<token>").
Why:   Each account also records its markers in settings.processedTransactions,
       but that only stops the same account from redeeming twice. The primary
       key here stops a second account from redeeming the same purchase.
How:   The ledger claims the marker with INSERT ... ON CONFLICT DO NOTHING in
       the same transaction as the balance update. Zero inserted rows means
       another account already owns it.
"""

from datetime import datetime, timezone

from sqlalchemy import Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TIMESTAMP

from chapterly.database import Base


class RedeemedTransaction(Base):

    __tablename__ = "redeemed_transactions"

    marker: Mapped[str] = mapped_column(String(512), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_redeemed_transactions_account", "account_id"),
    )

    def __repr__(self) -> str:
        return f"<RedeemedTransaction(marker='{self.marker}', account_id='{self.account_id}')>"
