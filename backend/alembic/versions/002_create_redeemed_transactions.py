"""Create redeemed_transactions table

Revision ID: 002
Revises: 001
Create Date: 2025-04-10 00:00:00.000000+00:00

What:  One row per credited provider transaction, keyed by its marker.
Why:   The per-account processedTransactions list cannot stop a second
       account from redeeming the same purchase token; a primary key can.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "redeemed_transactions",
        sa.Column(
            "marker",
            sa.String(512),
            nullable=False,
            comment="cs_... / pi_... / gp:<purchase token>",
        ),
        sa.Column("account_id", sa.String(255), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column(
            "redeemed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("marker"),
    )
    # Support lookups of everything one account redeemed
    op.create_index("idx_redeemed_transactions_account", "redeemed_transactions", ["account_id"])


def downgrade() -> None:
    op.drop_index("idx_redeemed_transactions_account", table_name="redeemed_transactions")
    op.drop_table("redeemed_transactions")
