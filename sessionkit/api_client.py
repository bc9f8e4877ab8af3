"""
Backend API Client.

Thin async wrapper over the identity endpoints of the backend
(``/auth/login``, ``/auth/register``, ``/auth/google``,
``/auth/refresh``, ``/auth/profile``).  Every non-success response is
raised as ``ApiError``; a transport failure is ``ApiError`` with
``status == 0``.  A 401 on a request that carried a bearer token is
also announced on the ``SessionEventBus``.

Response keys are normalised to snake_case before validation, so user
records are accepted in either naming style.
"""

from __future__ import annotations

from typing import Optional

import httpx
from pydantic import ValidationError

from sessionkit.errors import ApiError
from sessionkit.events import SessionEventBus
from sessionkit.logger import StructuredLogger
from sessionkit.models.auth_models import (
    ApiUser,
    AuthResponse,
    GoogleLoginPayload,
    TokenPair,
)
from sessionkit.utils.string_helpers import normalize_keys, string_or_none

JsonObject = dict[str, object]

_DEFAULT_HEADERS: dict[str, str] = {
    "Content-Type": "application/json",
    # Skips the interstitial page of ngrok tunnels used in development.
    "ngrok-skip-browser-warning": "true",
}


class BackendClient:
    """Async client for the backend identity endpoints.

    Parameters
    ----------
    base_url:
        Backend root, e.g. ``http://localhost:3000``.  Trailing slashes
        are ignored.
    events:
        Bus notified when an authenticated request is rejected with 401.
    logger:
        Structured logger.
    timeout_s:
        Per-request timeout.
    transport:
        Optional ``httpx`` transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_url: str,
        events: SessionEventBus,
        logger: StructuredLogger,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url: str = (base_url or "").rstrip("/")
        self._events: SessionEventBus = events
        self._logger: StructuredLogger = logger
        self._timeout_s: float = timeout_s
        self._transport: Optional[httpx.AsyncBaseTransport] = transport

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def login_with_credentials(
        self,
        password: str,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> AuthResponse:
        body: JsonObject = {"password": password}
        if email:
            body["email"] = email.strip().lower()
        if phone_number:
            body["phone_number"] = phone_number.strip()
        data = await self._request("POST", "/auth/login", json=body)
        return self._parse_auth_response(data)

    async def register(
        self,
        full_name: str,
        email: str,
        password: str,
        phone_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> AuthResponse:
        body: JsonObject = {
            "full_name": full_name,
            "email": email,
            "password": password,
        }
        trimmed_phone = (phone_number or "").strip()
        if trimmed_phone:
            body["phone_number"] = trimmed_phone
        if country:
            body["country"] = country
        data = await self._request("POST", "/auth/register", json=body)
        return self._parse_auth_response(data)

    async def login_with_google(self, payload: GoogleLoginPayload) -> AuthResponse:
        """Exchange Google tokens for backend tokens (camelCase body)."""
        body = payload.model_dump(by_alias=True, exclude_none=True)
        data = await self._request("POST", "/auth/google", json=body)
        return self._parse_auth_response(data)

    async def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Exchange *refresh_token* for a new pair.

        Raises
        ------
        ApiError
            On a non-success response or when the body lacks either token.
        """
        data = await self._request(
            "POST", "/auth/refresh", json={"refreshToken": refresh_token},
        )
        access = string_or_none(data.get("accessToken")) or string_or_none(data.get("token"))
        refresh = string_or_none(data.get("refreshToken"))
        if access is None or refresh is None:
            raise ApiError("Refresh response is missing tokens.", 200, data)
        return TokenPair(access_token=access, refresh_token=refresh)

    async def get_profile(self, access_token: str) -> ApiUser:
        data = await self._request("GET", "/auth/profile", access_token=access_token)
        return self._parse_user(data)

    async def update_profile(
        self,
        access_token: str,
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        country: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> ApiUser:
        body: JsonObject = {}
        if full_name is not None:
            body["full_name"] = full_name.strip()
        if phone_number is not None:
            body["phone_number"] = phone_number.strip()
        if country is not None:
            body["country"] = country
        if profile_image is not None:
            body["profile_image"] = profile_image
        data = await self._request(
            "PUT", "/auth/profile", json=body, access_token=access_token,
        )
        return self._parse_user(data)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[JsonObject] = None,
        access_token: Optional[str] = None,
    ) -> JsonObject:
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = dict(_DEFAULT_HEADERS)
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self._logger.debug("API request %s %s", method, path)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s, transport=self._transport,
            ) as client:
                response = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as exc:
            self._logger.warning(
                "API request %s %s failed: %s", method, path, exc,
                extra={"event": "API_TRANSPORT_ERROR"},
            )
            raise ApiError(str(exc) or "Network request failed.", 0, exc) from exc

        data = self._decode_body(response)
        if response.is_error:
            message = (
                str(data["message"])
                if isinstance(data, dict) and "message" in data
                else f"Request failed with status {response.status_code}"
            )
            self._logger.warning(
                "API request %s %s returned %d: %s",
                method, path, response.status_code, message,
            )
            if response.status_code == 401 and access_token:
                self._events.handle_unauthorized()
            raise ApiError(message, response.status_code, data)

        if not isinstance(data, dict):
            raise ApiError("Unexpected response from server.", response.status_code, data)
        return data

    @staticmethod
    def _decode_body(response: httpx.Response) -> object:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _parse_auth_response(data: JsonObject) -> AuthResponse:
        try:
            return AuthResponse.model_validate(normalize_keys(data))
        except ValidationError as exc:
            raise ApiError("Unexpected response from server.", 200, data) from exc

    @staticmethod
    def _parse_user(data: JsonObject) -> ApiUser:
        raw_user = data.get("user", data)
        try:
            return ApiUser.model_validate(normalize_keys(raw_user))
        except ValidationError as exc:
            raise ApiError("Unexpected response from server.", 200, data) from exc
