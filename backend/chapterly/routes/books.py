"""
Chapterly Backend — Book Route Handlers
=========================================

What:  GET /api/books, GET /api/books/{book_id}, POST /api/books/{book_id}/view
Who:   Library and book detail screens of the reader app.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.database import get_db_session
from chapterly.dependencies import get_book_service
from chapterly.schemas.book import BookResponse, ViewResponse
from chapterly.schemas.common import ErrorResponse
from chapterly.services.book_service import BookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/books", tags=["Books"])


@router.get(
    "",
    response_model=List[BookResponse],
    responses={500: {"model": ErrorResponse}},
    summary="List all books, newest first",
)
async def list_books(
    db: AsyncSession = Depends(get_db_session),
    books: BookService = Depends(get_book_service),
) -> List[BookResponse]:
    rows = await books.list_books(db)
    return [BookResponse.model_validate(row) for row in rows]


@router.get(
    "/{book_id}",
    response_model=BookResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get a single book",
)
async def get_book(
    book_id: str,
    db: AsyncSession = Depends(get_db_session),
    books: BookService = Depends(get_book_service),
) -> BookResponse:
    return BookResponse.model_validate(await books.get_book(db, book_id))


@router.post(
    "/{book_id}/view",
    response_model=ViewResponse,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Count a view of a book",
)
async def record_view(
    book_id: str,
    db: AsyncSession = Depends(get_db_session),
    books: BookService = Depends(get_book_service),
) -> ViewResponse:
    views = await books.record_view(db, book_id)
    return ViewResponse(success=True, views=views)
