"""
Chapterly Backend — Chapter Route Handlers
============================================

What:  Chapter listing/reading and POST /api/chapters/unlock.
Who:   Reader screen. Unlock is called before opening a paid chapter.

Unlock responses:
    200 {"success": true, "credits": 1200, "paidChapters": ["book:6"]}
    200 {"success": true, "message": "Chapter is free", "credits": null, ...}
    400 {"error": "Insufficient credits", "required": 50, "current": 49, ...}
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.database import get_db_session
from chapterly.dependencies import get_chapter_service
from chapterly.schemas.book import ChapterResponse, UnlockRequest, UnlockResponse
from chapterly.schemas.common import ErrorResponse
from chapterly.services.chapter_service import ChapterService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chapters", tags=["Chapters"])


@router.get(
    "/book/{book_id}",
    response_model=List[ChapterResponse],
    responses={500: {"model": ErrorResponse}},
    summary="List the chapters of a book in reading order",
)
async def list_chapters(
    book_id: str,
    db: AsyncSession = Depends(get_db_session),
    chapters: ChapterService = Depends(get_chapter_service),
) -> List[ChapterResponse]:
    rows = await chapters.list_chapters(db, book_id)
    return [ChapterResponse.model_validate(row) for row in rows]


@router.get(
    "/book/{book_id}/chapter/{chapter_number}",
    response_model=ChapterResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get one chapter",
)
async def get_chapter(
    book_id: str,
    chapter_number: int,
    db: AsyncSession = Depends(get_db_session),
    chapters: ChapterService = Depends(get_chapter_service),
) -> ChapterResponse:
    return ChapterResponse.model_validate(await chapters.get_chapter(db, book_id, chapter_number))


@router.post(
    "/unlock",
    response_model=UnlockResponse,
    response_model_exclude_none=False,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Spend credits to unlock a chapter",
)
async def unlock_chapter(
    body: UnlockRequest,
    db: AsyncSession = Depends(get_db_session),
    chapters: ChapterService = Depends(get_chapter_service),
) -> UnlockResponse:
    return await chapters.unlock(db, body.user_id, body.book_id, body.chapter_num)
