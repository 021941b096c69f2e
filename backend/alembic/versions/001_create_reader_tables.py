"""Create reader tables

Revision ID: 001
Revises: None
Create Date: 2025-03-02 00:00:00.000000+00:00

What:  Creates `books`, `chapters`, `users` and `guests`.
Why:   Mirrors the Supabase schema so local and staging databases match what
       the ORM models in chapterly/models expect.
How:   JSONB for the account blobs, CHECK constraints keep balances
       non-negative, chapters are unique per (book_id, chapter_number).

Rollback: downgrade() drops all four tables (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _account_columns():
    """Columns shared by users and guests; see models/account.py."""
    return [
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column(
            "number_of_credits",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Spendable credit balance, never negative",
        ),
        sa.Column("bookmarks", postgresql.JSONB(), nullable=True),
        sa.Column(
            "settings",
            postgresql.JSONB(),
            nullable=True,
            comment="Client preferences plus purchasedProducts / processedTransactions",
        ),
        sa.Column(
            "paid_chapters",
            postgresql.JSONB(),
            nullable=True,
            comment="Unlocked chapter keys '<book_id>:<chapter_number>'",
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "books",
        sa.Column("book_id", sa.String(255), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("author", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cover_url", sa.Text(), nullable=True),
        sa.Column("genre", sa.String(100), nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("views", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "date_uploaded",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("book_id"),
    )
    # Listing is always newest first
    op.create_index("idx_books_date_uploaded", "books", [sa.text("date_uploaded DESC")])

    op.create_table(
        "chapters",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("book_id", sa.String(255), nullable=False),
        sa.Column("chapter_number", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column(
            "date_uploaded",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["book_id"], ["books.book_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_chapters_book_number",
        "chapters",
        ["book_id", "chapter_number"],
        unique=True,
    )

    op.create_table(
        "users",
        *_account_columns(),
        sa.Column("authid", sa.String(255), nullable=True, comment="auth.users.id"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("number_of_credits >= 0", name="ck_users_credits_non_negative"),
    )

    op.create_table(
        "guests",
        *_account_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("number_of_credits >= 0", name="ck_guests_credits_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("guests")
    op.drop_table("users")
    op.drop_index("idx_chapters_book_number", table_name="chapters")
    op.drop_table("chapters")
    op.drop_index("idx_books_date_uploaded", table_name="books")
    op.drop_table("books")
