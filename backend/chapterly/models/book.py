"""
Chapterly Backend — Book and Chapter SQLAlchemy Models
========================================================

What:  ORM models for the `books` and `chapters` tables in Supabase.
Why:   Type-safe reads for the catalog endpoints and an atomic view counter.
Who:   Used by BookService and ChapterService.

Table Notes:
    - book_id is a text slug chosen by the content team, not a generated key
    - views is incremented in SQL (views = views + 1) so concurrent readers
      never lose a count
    - chapters are addressed by (book_id, chapter_number); the uuid id is only
      the row's primary key
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TIMESTAMP, Uuid

from chapterly.database import Base


class Book(Base):
    """A serialized story. Listed newest first by date_uploaded."""

    __tablename__ = "books"

    book_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    author: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cover_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    genre: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    views: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    date_uploaded: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_books_date_uploaded", date_uploaded.desc()),
    )

    def __repr__(self) -> str:
        return f"<Book(book_id='{self.book_id}', views={self.views})>"


class Chapter(Base):
    """One installment of a book. Content is plain text or markdown."""

    __tablename__ = "chapters"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    book_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("books.book_id", ondelete="CASCADE"),
        nullable=False,
    )
    chapter_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    date_uploaded: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_chapters_book_number", "book_id", "chapter_number", unique=True),
    )

    def __repr__(self) -> str:
        return f"<Chapter(book_id='{self.book_id}', chapter_number={self.chapter_number})>"
