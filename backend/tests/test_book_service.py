"""
Chapterly Backend — Book Service Tests
========================================

What:  Book listing order, detail lookup and the view counter.
"""

import pytest

from chapterly.exceptions import NotFoundError
from chapterly.services.book_service import BookService


class TestBookService:

    def setup_method(self):
        self.service = BookService()

    @pytest.mark.asyncio
    async def test_list_books_newest_first(self, db_session, make_book):
        await make_book("old", age_days=30)
        await make_book("new", age_days=0)
        await make_book("middle", age_days=5)

        books = await self.service.list_books(db_session)

        assert [b.book_id for b in books] == ["new", "middle", "old"]

    @pytest.mark.asyncio
    async def test_list_books_empty(self, db_session):
        assert await self.service.list_books(db_session) == []

    @pytest.mark.asyncio
    async def test_get_book(self, db_session, make_book):
        await make_book("book-a", title="The Long Night")

        book = await self.service.get_book(db_session, "book-a")

        assert book.title == "The Long Night"

    @pytest.mark.asyncio
    async def test_get_unknown_book_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError) as exc_info:
            await self.service.get_book(db_session, "missing")

        assert exc_info.value.message == "Book not found"

    @pytest.mark.asyncio
    async def test_record_view_increments(self, db_session, make_book):
        await make_book("book-a", views=41)

        assert await self.service.record_view(db_session, "book-a") == 42
        assert await self.service.record_view(db_session, "book-a") == 43

    @pytest.mark.asyncio
    async def test_record_view_unknown_book(self, db_session):
        with pytest.raises(NotFoundError):
            await self.service.record_view(db_session, "missing")
