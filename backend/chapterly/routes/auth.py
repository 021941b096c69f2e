"""
Chapterly Backend — Auth Route Handlers
=========================================

What:  Magic-link sign in, current profile, guest accounts, account deletion.
Who:   Sign-in and settings screens of the reader app.

Deletion can be started two ways: with a valid session (DELETE /delete), or
from the website without one (POST /delete-otp, then /delete-confirm with
the emailed code).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from chapterly.database import get_db_session
from chapterly.dependencies import get_auth_service
from chapterly.schemas.auth import (
    DeleteResponse,
    EmailRequest,
    GuestRequest,
    GuestResponse,
    MeResponse,
    MessageResponse,
    ProfileResponse,
    VerifyRequest,
    VerifyResponse,
)
from chapterly.schemas.common import ErrorResponse
from chapterly.services.auth_service import AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post(
    "/magiclink",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Email a one-time sign-in link",
)
async def send_magic_link(
    body: EmailRequest,
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.request_magic_link(body.email)
    return MessageResponse(message="Magic link sent to email")


@router.post(
    "/verify",
    response_model=VerifyResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Exchange the emailed code for a session",
)
async def verify(
    body: VerifyRequest,
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> VerifyResponse:
    user, session = await auth.verify_magic_link(db, body.email, body.token)
    return VerifyResponse(message="Authentication successful", user=user, session=session)


@router.get(
    "/me",
    response_model=MeResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Current user and profile",
)
async def me(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> MeResponse:
    user, profile = await auth.get_profile(db, authorization)
    return MeResponse(user=user, profile=ProfileResponse.model_validate(profile))


@router.post(
    "/guest",
    response_model=GuestResponse,
    responses={500: {"model": ErrorResponse}},
    summary="Create or resume a guest account",
)
async def create_guest(
    body: Optional[GuestRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> GuestResponse:
    guest_id, credits = await auth.create_guest(db, body.guest_id if body else None)
    return GuestResponse(guest_id=guest_id, credits=credits)


@router.delete(
    "/delete",
    response_model=DeleteResponse,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Delete the signed-in account",
)
async def delete_account(
    authorization: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> DeleteResponse:
    await auth.delete_account(db, authorization)
    return DeleteResponse(success=True, message="Account deleted")


@router.post(
    "/delete-otp",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Email a code that confirms account deletion",
)
async def send_deletion_code(
    body: EmailRequest,
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await auth.request_deletion_code(db, body.email)
    return MessageResponse(message="Deletion code sent to email")


@router.post(
    "/delete-confirm",
    response_model=DeleteResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Delete an account with the emailed code",
)
async def confirm_deletion(
    body: VerifyRequest,
    db: AsyncSession = Depends(get_db_session),
    auth: AuthService = Depends(get_auth_service),
) -> DeleteResponse:
    await auth.confirm_deletion(db, body.email, body.token)
    return DeleteResponse(success=True, message="Account deleted")
