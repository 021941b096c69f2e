"""
Chapterly Backend — Supabase Auth Client
==========================================

What:  Thin async client for the Supabase Auth (GoTrue) REST API.
Why:   Sign-in is passwordless: an emailed one-time code / magic link. The
       identity itself lives in Supabase; we only keep the profile row.
How:   Shared httpx.AsyncClient, the anon key for public endpoints and the
       service role key for admin deletion.

Endpoints used:
    POST   /auth/v1/otp                 send magic link / code
    POST   /auth/v1/verify              exchange code for a session
    GET    /auth/v1/user                resolve an access token
    DELETE /auth/v1/admin/users/{id}    delete an identity (service role)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from chapterly.exceptions import (
    IdentityProviderError,
    ProviderError,
    ProviderUnreachableError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    """GoTrue has used msg, error_description, message and error over time."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class IdentityService:
    """Supabase Auth REST client."""

    provider = "supabase"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        anon_key: str,
        service_role_key: str = "",
    ):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._service_role_key = service_role_key

    def is_configured(self) -> bool:
        return bool(self._base_url and self._anon_key)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        bearer: Optional[str] = None,
        admin: bool = False,
    ) -> httpx.Response:
        if not self.is_configured():
            raise ProviderError(message="Authentication is not configured on the server.", provider=self.provider)
        if admin and not self._service_role_key:
            raise ProviderError(message="Account deletion is not configured on the server.", provider=self.provider)

        key = self._service_role_key if admin else self._anon_key
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {bearer or key}",
        }
        try:
            return await self._http.request(
                method, f"{self._base_url}{path}", json=json, params=params, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error("Supabase Auth request failed: %s %s", type(e).__name__, str(e))
            raise ProviderUnreachableError(
                message="Authentication service is unreachable. Please try again.",
                provider=self.provider,
            )

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.status_code < 400:
            return
        message = _error_message(response)
        logger.info("Supabase Auth %s failed (HTTP %d): %s", operation, response.status_code, message)
        if response.status_code >= 500:
            raise ProviderError(
                message="Authentication service error",
                provider=self.provider,
                context={"status": response.status_code, "detail": message},
            )
        raise IdentityProviderError(
            message=message,
            provider=self.provider,
            context={"status": response.status_code, "operation": operation},
        )

    # ── Operations ────────────────────────────────────────────────────────

    async def send_otp(
        self, email: str, redirect_to: Optional[str] = None, create_user: bool = True
    ) -> None:
        """Email a magic link / one-time code."""
        params = {"redirect_to": redirect_to} if redirect_to else None
        response = await self._request(
            "POST",
            "/auth/v1/otp",
            json={"email": email, "create_user": create_user},
            params=params,
        )
        self._raise_for_status(response, "send_otp")

    async def verify_otp(self, email: str, token: str, otp_type: str = "magiclink") -> Dict[str, Any]:
        """
        Exchange an emailed code for a session.

        Returns the GoTrue session payload: access_token, refresh_token,
        expires_in, token_type and user.
        """
        response = await self._request(
            "POST",
            "/auth/v1/verify",
            json={"type": otp_type, "email": email, "token": token},
        )
        self._raise_for_status(response, "verify_otp")
        return response.json()

    async def get_user(self, access_token: str) -> Dict[str, Any]:
        """Resolve an access token to its user. Bad or expired tokens → UnauthorizedError."""
        if not access_token:
            raise UnauthorizedError(message="No token provided")
        response = await self._request("GET", "/auth/v1/user", bearer=access_token)
        if response.status_code in (401, 403):
            raise UnauthorizedError(message="Invalid token")
        self._raise_for_status(response, "get_user")
        return response.json()

    async def delete_user(self, user_id: str) -> None:
        response = await self._request("DELETE", f"/auth/v1/admin/users/{user_id}", admin=True)
        self._raise_for_status(response, "delete_user")
        logger.info("Deleted auth identity %s", user_id)
