"""
Chapterly Backend — Chapter Service
=====================================

What:  Chapter reads and the chapter-unlock purchase.
Why:   Unlocking is the one place readers spend credits; the pricing rules
       (free threshold, flat cost) live here, the balance bookkeeping in the
       ledger.
How:   Reads are plain SELECTs. unlock() applies the free-chapter rule, then
       delegates to LedgerService.debit() with the "bookId:chapterNum" key as
       marker so a retried unlock never charges twice.

Unlock outcomes:
    chapter_num < FREE_CHAPTER_THRESHOLD → free, ledger untouched
    key already in paid_chapters         → "Chapter already unlocked", no charge
    balance < CHAPTER_UNLOCK_COST        → InsufficientFundsError (400)
    otherwise                            → balance - cost, key recorded
"""

import logging
from typing import List, Optional

from sqlalchemy import asc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.config import settings
from chapterly.exceptions import NotFoundError, PersistenceError, ValidationError
from chapterly.models.book import Chapter
from chapterly.schemas.book import UnlockResponse
from chapterly.services.ledger_service import LedgerService, ledger_service

logger = logging.getLogger(__name__)


def chapter_key(book_id: str, chapter_num: int) -> str:
    """Marker stored in paid_chapters, e.g. "the-long-night:7"."""
    return f"{book_id}:{chapter_num}"


class ChapterService:

    def __init__(
        self,
        ledger: LedgerService = ledger_service,
        free_threshold: Optional[int] = None,
        unlock_cost: Optional[int] = None,
    ):
        self.ledger = ledger
        self.free_threshold = free_threshold if free_threshold is not None else settings.free_chapter_threshold
        self.unlock_cost = unlock_cost if unlock_cost is not None else settings.chapter_unlock_cost

    # ── Reads ─────────────────────────────────────────────────────────────

    async def list_chapters(self, db: AsyncSession, book_id: str) -> List[Chapter]:
        try:
            result = await db.execute(
                select(Chapter)
                .where(Chapter.book_id == book_id)
                .order_by(asc(Chapter.chapter_number))
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to list chapters for %s: %s", book_id, str(e))
            raise PersistenceError(message="Failed to fetch chapters")

    async def get_chapter(self, db: AsyncSession, book_id: str, chapter_number: int) -> Chapter:
        try:
            result = await db.execute(
                select(Chapter).where(
                    Chapter.book_id == book_id,
                    Chapter.chapter_number == chapter_number,
                )
            )
            chapter = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch chapter %s/%s: %s", book_id, chapter_number, str(e))
            raise PersistenceError(message="Failed to fetch chapter")

        if chapter is None:
            raise NotFoundError(resource="chapter", resource_id=chapter_key(book_id, chapter_number))
        return chapter

    # ── Unlock ────────────────────────────────────────────────────────────

    def is_free(self, chapter_num: int) -> bool:
        return chapter_num < self.free_threshold

    async def unlock(
        self,
        db: AsyncSession,
        user_id: Optional[str],
        book_id: Optional[str],
        chapter_num: Optional[int],
    ) -> UnlockResponse:
        if not user_id or not book_id or not chapter_num:
            raise ValidationError(message="User ID, book ID, and chapter number are required")
        if chapter_num < 1:
            raise ValidationError(message="Chapter number must be at least 1", field="chapterNum")

        if self.is_free(chapter_num):
            return UnlockResponse(success=True, message="Chapter is free", credits=None, paid_chapters=None)

        key = chapter_key(book_id, chapter_num)
        result = await self.ledger.debit(db, user_id, self.unlock_cost, marker=key)

        if not result.applied:
            return UnlockResponse(
                success=True,
                message="Chapter already unlocked",
                credits=result.balance,
                paid_chapters=result.markers,
            )

        logger.info(
            "Chapter unlocked: %s for %s; %d credits deducted, new total %d",
            key, user_id, self.unlock_cost, result.balance,
        )
        return UnlockResponse(success=True, credits=result.balance, paid_chapters=result.markers)


chapter_service = ChapterService()
