"""
Chapterly Backend — FastAPI Dependencies
==========================================

What:  Providers for the gateway-backed services used by route handlers.
Why:   Gateways are built once in the lifespan (main.py) and stored on
       app.state. Routes receive them through Depends, so tests swap them via
       app.dependency_overrides without touching module globals.
"""

from fastapi import Depends, Request

from chapterly.services.auth_service import AuthService
from chapterly.services.book_service import BookService, book_service
from chapterly.services.chapter_service import ChapterService, chapter_service
from chapterly.services.google_play_service import GooglePlayService
from chapterly.services.identity_service import IdentityService
from chapterly.services.purchase_service import PurchaseService
from chapterly.services.stripe_service import StripeService


def get_stripe_service(request: Request) -> StripeService:
    return request.app.state.stripe_service


def get_google_play_service(request: Request) -> GooglePlayService:
    return request.app.state.google_play_service


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def get_purchase_service(
    stripe: StripeService = Depends(get_stripe_service),
    google_play: GooglePlayService = Depends(get_google_play_service),
) -> PurchaseService:
    return PurchaseService(stripe=stripe, google_play=google_play)


def get_auth_service(identity: IdentityService = Depends(get_identity_service)) -> AuthService:
    return AuthService(identity=identity)


def get_book_service() -> BookService:
    return book_service


def get_chapter_service() -> ChapterService:
    return chapter_service
