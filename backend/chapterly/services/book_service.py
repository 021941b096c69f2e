"""
Chapterly Backend — Book Service
==================================

What:  Read access to the `books` table and the view counter.
Why:   Keeps SQL out of the route handlers.
How:   Plain SELECTs; the view counter is a single UPDATE ... RETURNING so
       concurrent views are never lost to a read-then-write race.
"""

import logging
from typing import List

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.exceptions import NotFoundError, PersistenceError
from chapterly.models.book import Book

logger = logging.getLogger(__name__)


class BookService:
    """Stateless; every call receives the request's session."""

    async def list_books(self, db: AsyncSession) -> List[Book]:
        """All books, newest upload first."""
        try:
            result = await db.execute(select(Book).order_by(desc(Book.date_uploaded)))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list books: %s", str(e))
            raise PersistenceError(message="Failed to fetch books")

    async def get_book(self, db: AsyncSession, book_id: str) -> Book:
        try:
            result = await db.execute(select(Book).where(Book.book_id == book_id))
            book = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch book %s: %s", book_id, str(e))
            raise PersistenceError(message="Failed to fetch book")

        if book is None:
            raise NotFoundError(resource="book", resource_id=book_id)
        return book

    async def record_view(self, db: AsyncSession, book_id: str) -> int:
        """
        Increment the view counter and return the new count.

        Raises:
            NotFoundError: no book with this id (no row matched the UPDATE)
        """
        statement = (
            update(Book)
            .where(Book.book_id == book_id)
            .values(views=func.coalesce(Book.views, 0) + 1)
            .returning(Book.views)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await db.execute(statement)
            views = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to log view for book %s: %s", book_id, str(e))
            raise PersistenceError(message="Failed to log view")

        if views is None:
            raise NotFoundError(resource="book", resource_id=book_id)
        logger.debug("Book %s viewed; %d views", book_id, views)
        return views


book_service = BookService()
