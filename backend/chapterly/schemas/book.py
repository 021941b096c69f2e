"""
Chapterly Backend — Book & Chapter Schemas
============================================

Books and chapters are returned with their column names (snake_case), the
same shape the clients have always read straight from the table.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from chapterly.schemas.common import CamelModel


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class BookResponse(BaseModel):
    book_id: str
    title: str
    author: Optional[str] = None
    description: Optional[str] = None
    cover_url: Optional[str] = None
    genre: Optional[str] = None
    status: Optional[str] = None
    views: int = 0
    date_uploaded: datetime

    model_config = {"from_attributes": True}


class ChapterResponse(BaseModel):
    id: uuid.UUID
    book_id: str
    chapter_number: int
    title: Optional[str] = None
    content: Optional[str] = None
    date_uploaded: datetime

    model_config = {"from_attributes": True}


class ViewResponse(BaseModel):
    success: bool = True
    views: int


# ══════════════════════════════════════════════════════════════════════════
# Chapter unlock
# ══════════════════════════════════════════════════════════════════════════


class UnlockRequest(CamelModel):
    """
    Body of POST /api/chapters/unlock.

    Fields are optional at the schema level so missing ones produce the
    service's own 400 message rather than a generic validation error.
    """
    user_id: Optional[str] = None
    book_id: Optional[str] = None
    chapter_num: Optional[int] = Field(default=None, description="1-based chapter number")


class UnlockResponse(CamelModel):
    """
    Outcomes:
        free chapter     → credits/paidChapters null, message "Chapter is free"
        already unlocked → current balance, message "Chapter already unlocked"
        newly unlocked   → new balance, no message
    """
    success: bool = True
    credits: Optional[int] = None
    paid_chapters: Optional[List[str]] = None
    message: Optional[str] = None
