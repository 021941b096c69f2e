"""
Chapterly Backend — Auth Schemas
==================================

`user` and `session` are passed through from Supabase Auth untouched, so
they are typed as plain dicts.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel

from chapterly.schemas.common import CamelModel


class EmailRequest(CamelModel):
    email: Optional[str] = None


class VerifyRequest(CamelModel):
    email: Optional[str] = None
    token: Optional[str] = None


class GuestRequest(CamelModel):
    guest_id: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class VerifyResponse(BaseModel):
    message: str = "Authentication successful"
    user: Optional[Dict[str, Any]] = None
    session: Optional[Dict[str, Any]] = None


class ProfileResponse(BaseModel):
    """A `users` row as stored."""
    id: str
    authid: Optional[str] = None
    email: Optional[str] = None
    number_of_credits: int = 0
    bookmarks: Any = None
    settings: Any = None
    paid_chapters: Any = None

    model_config = {"from_attributes": True}


class MeResponse(BaseModel):
    user: Dict[str, Any]
    profile: ProfileResponse


class GuestResponse(CamelModel):
    guest_id: str
    credits: int


class DeleteResponse(BaseModel):
    success: bool = True
    message: str = "Account deleted"
