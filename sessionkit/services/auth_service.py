"""
Authentication Service.

Single orchestrator for every authentication flow the UI drives:
credential login, registration, Google sign-in (native or web relay),
token refresh, profile update and logout.

Sits between the UI layer and the backend / session layer so screens
stay thin form handlers.  All flows return typed ``AuthResult`` or
``ValidationResult`` models; the UI never inspects raw exceptions.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Optional

from sessionkit.api_client import BackendClient
from sessionkit.base_service import BaseService
from sessionkit.errors import (
    ApiError,
    ConfigurationError,
    OAuthCancelledError,
    OAuthError,
    StorageError,
)
from sessionkit.jwt_auth import require_auth
from sessionkit.logger import StructuredLogger
from sessionkit.mapping import build_full_name, map_auth_response_to_user, merge_profile_sync
from sessionkit.models.auth_models import (
    API_STATUS_ERROR_MAP,
    AuthErrorCode,
    AuthResponse,
    AuthResult,
    GoogleLoginPayload,
    GoogleProfile,
    GoogleWebSignInResult,
    ValidationResult,
)
from sessionkit.models.enums import AuthProvider
from sessionkit.models.user import User
from sessionkit.oauth.native import NativeGoogleSignIn, detect_native_google_sign_in
from sessionkit.oauth.web_relay import GoogleWebRelay
from sessionkit.session import SessionManager

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_MIN_PASSWORD_LENGTH: int = 8

# Matches C0 controls (U+0000–U+001F), DEL (U+007F), and C1 controls (U+0080–U+009F).
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

NativeDetector = Callable[[str, StructuredLogger], Optional[NativeGoogleSignIn]]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuthService(BaseService):
    """Centralised authentication service.

    Parameters
    ----------
    client:
        Backend identity API client.
    session:
        The session facade that owns the current user.
    logger:
        Structured JSON logger for audit-grade logging.
    web_relay:
        Google web relay; ``None`` when this context cannot run it.
    native_module:
        Module name providing native Google Sign-In; empty disables it.
    native_detector:
        Capability detection function.  Called at most once, on the
        first Google sign-in.
    """

    def __init__(
        self,
        client: BackendClient,
        session: SessionManager,
        logger: StructuredLogger,
        web_relay: Optional[GoogleWebRelay] = None,
        native_module: str = "",
        native_detector: NativeDetector = detect_native_google_sign_in,
    ) -> None:
        super().__init__(logger)
        self._client: BackendClient = client
        self._session: SessionManager = session
        self._web_relay: Optional[GoogleWebRelay] = web_relay
        self._native_module: str = native_module
        self._native_detector: NativeDetector = native_detector
        self._native: Optional[NativeGoogleSignIn] = None
        self._native_resolved: bool = False

        self.update_profile = require_auth(session)(self._update_profile)

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Validate the shape of an email address.

        Parameters
        ----------
        email:
            The raw email string to validate.

        Returns
        -------
        ValidationResult
            ``is_valid=True`` if the email matches, otherwise a
            human-readable ``error_message``.
        """
        if not email or not email.strip():
            return ValidationResult(
                is_valid=False,
                error_message="Email address is required.",
            )
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False,
                error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Enforce the minimum password length accepted by the backend."""
        if len(password) < _MIN_PASSWORD_LENGTH:
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"Password must be at least {_MIN_PASSWORD_LENGTH} characters."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_name(name: str, field_label: str) -> ValidationResult:
        """Validate a name field.

        Rejects control characters (U+0000–U+001F, U+007F–U+009F)
        including newlines and tabs to prevent log injection and
        display corruption.

        Parameters
        ----------
        name:
            The raw name string.
        field_label:
            Human label for the error message (e.g. ``"Full name"``).

        Returns
        -------
        ValidationResult
        """
        stripped = name.strip()
        if not stripped:
            return ValidationResult(
                is_valid=False,
                error_message=f"{field_label} is required.",
            )
        if len(stripped) < 2:
            return ValidationResult(
                is_valid=False,
                error_message=f"{field_label} must be at least 2 characters.",
            )
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"{field_label} contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        """Normalise an email address: strip whitespace and lowercase."""
        return email.strip().lower()

    # ==================================================================
    # Login / registration
    # ==================================================================

    async def login(self, identifier: str, password: str) -> AuthResult:
        """Sign in with an email address (or phone number) and password.

        Parameters
        ----------
        identifier:
            Email address, or a phone number when it contains no ``@``.
        password:
            The raw password entered by the user.

        Returns
        -------
        AuthResult
            ``success=True`` once the session is stored, otherwise a
            structured error.
        """
        identifier = identifier.strip()
        email: Optional[str] = None
        phone: Optional[str] = None
        if "@" in identifier:
            check = self.validate_email(identifier)
            if not check.is_valid:
                return self._validation_failure(check)
            email = self.normalize_email(identifier)
        elif identifier:
            phone = identifier
        else:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="Email address or phone number is required.",
            )

        check = self.validate_password(password)
        if not check.is_valid:
            return self._validation_failure(check)

        try:
            response = await self._client.login_with_credentials(
                password=password, email=email, phone_number=phone,
            )
        except ApiError as exc:
            return self._classify_api_error(exc, "LOGIN_FAILED")

        return await self._complete_login(response, AuthProvider.EMAIL)

    async def register(
        self,
        full_name: str,
        email: str,
        password: str,
        phone_number: Optional[str] = None,
        country: Optional[str] = None,
    ) -> AuthResult:
        """Create an account.

        When the backend answers with tokens the user is logged in right
        away; otherwise the account exists but still needs verification
        and the session is left untouched.
        """
        for check in (
            self.validate_name(full_name, "Full name"),
            self.validate_email(email),
            self.validate_password(password),
        ):
            if not check.is_valid:
                return self._validation_failure(check)

        normalized = self.normalize_email(email)
        try:
            response = await self._client.register(
                full_name=full_name.strip(),
                email=normalized,
                password=password,
                phone_number=phone_number,
                country=country,
            )
        except ApiError as exc:
            return self._classify_api_error(exc, "REGISTRATION_FAILED")

        if response.resolved_access_token:
            return await self._complete_login(response, AuthProvider.EMAIL)

        self._audit(
            "REGISTERED", "Account registered for %s; verification pending.",
            normalized,
        )
        return AuthResult(
            success=True,
            user_id=response.user.id,
            email=response.user.email or normalized,
            full_name=response.user.full_name or full_name.strip(),
            provider=AuthProvider.EMAIL,
        )

    # ==================================================================
    # Google
    # ==================================================================

    @property
    def native_google_sign_in(self) -> Optional[NativeGoogleSignIn]:
        """Native capability, detected once on first access."""
        if not self._native_resolved:
            self._native = self._native_detector(self._native_module, self._logger)
            self._native_resolved = True
        return self._native

    async def sign_in_with_google(self) -> AuthResult:
        """Start (or, natively, complete) a Google sign-in.

        Returns
        -------
        AuthResult
            - natively: the final result;
            - via the web relay: ``success=True, pending=True``; the
              outcome arrives through ``complete_google_sign_in``;
            - otherwise ``NOT_SUPPORTED``.
        """
        native = self.native_google_sign_in
        if native is not None:
            try:
                result = await native.sign_in()
            except OAuthCancelledError:
                return self._cancelled()
            except OAuthError as exc:
                return self._oauth_failure(exc)
            except Exception as exc:
                self._logger.warning(
                    "Native Google sign-in failed: %s", exc,
                    extra={"event": "GOOGLE_SIGNIN_FAILED"},
                )
                return AuthResult(
                    success=False,
                    error_code=AuthErrorCode.PROVIDER_ERROR,
                    error_message="Google sign-in failed. Please try again.",
                )
            if result is None:
                return self._cancelled()
            return await self._exchange_google(result)

        relay = self._web_relay
        if relay is not None and relay.is_available:
            try:
                await relay.initiate()
            except ConfigurationError as exc:
                return AuthResult(
                    success=False,
                    error_code=AuthErrorCode.CONFIGURATION_ERROR,
                    error_message=str(exc),
                )
            return AuthResult(success=True, pending=True, provider=AuthProvider.GOOGLE)

        if relay is not None:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.CONFIGURATION_ERROR,
                error_message="Google sign-in is not configured.",
            )
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.NOT_SUPPORTED,
            error_message="Google sign-in is not available on this device.",
        )

    async def complete_google_sign_in(self) -> Optional[AuthResult]:
        """Finish a web handshake: consume the redirect or drain the mailbox.

        Returns ``None`` when nothing is pending.
        """
        if self._web_relay is None:
            return None
        try:
            result = await self._web_relay.consume_pending()
        except OAuthCancelledError:
            return self._cancelled()
        except OAuthError as exc:
            return self._oauth_failure(exc)
        if result is None:
            return None
        return await self._exchange_google(result)

    async def complete_google_result(self, result: GoogleWebSignInResult) -> AuthResult:
        """Exchange a result already drained by ``GoogleWebRelay.watch``."""
        return await self._exchange_google(result)

    async def _exchange_google(self, result: GoogleWebSignInResult) -> AuthResult:
        id_token = result.id_token.strip()
        if not id_token:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.MISSING_ID_TOKEN,
                error_message="Google did not return an ID token.",
            )

        profile: GoogleProfile = result.user
        payload = GoogleLoginPayload(
            id_token=id_token,
            access_token=result.access_token,
            email=profile.email or None,
            full_name=build_full_name(profile),
            given_name=profile.given_name,
            family_name=profile.family_name,
            photo=profile.photo,
        )
        try:
            response = await self._client.login_with_google(payload)
        except ApiError as exc:
            return self._classify_api_error(exc, "GOOGLE_LOGIN_FAILED")

        return await self._complete_login(response, AuthProvider.GOOGLE, profile)

    # ==================================================================
    # Token refresh
    # ==================================================================

    async def refresh_session_token(self) -> AuthResult:
        """Refresh the access token when it has expired.

        Returns
        -------
        AuthResult
            ``success=True`` when no action was needed or the refresh
            succeeded.  ``SESSION_EXPIRED`` when the refresh failed; the
            session has already been logged out.
        """
        if not self._session.is_authenticated:
            return AuthResult(success=True)
        if not self._session.is_token_expired:
            return AuthResult(success=True)

        if await self._session.refresh_user_tokens():
            return AuthResult(success=True)
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.SESSION_EXPIRED,
            error_message="Your session has expired. Please sign in again.",
        )

    # ==================================================================
    # Profile
    # ==================================================================

    async def _update_profile(
        self,
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        country: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> AuthResult:
        """Update the profile on the backend and merge it into the session.

        Exposed as ``update_profile``, guarded by ``require_auth``.
        """
        if full_name is not None:
            check = self.validate_name(full_name, "Full name")
            if not check.is_valid:
                return self._validation_failure(check)

        current = self._session.get_current_user()
        access_token = current.auth_token or ""
        try:
            api_user = await self._client.update_profile(
                access_token,
                full_name=full_name,
                phone_number=phone_number,
                country=country,
                profile_image=profile_image,
            )
        except ApiError as exc:
            return self._classify_api_error(exc, "PROFILE_UPDATE_FAILED")

        synced = merge_profile_sync(current, api_user)
        try:
            updated = await self._session.update_user({
                "first_name": synced.first_name,
                "last_name": synced.last_name,
                "email": synced.email,
                "phone": synced.phone,
                "avatar": synced.avatar,
                "country": synced.country,
            })
        except StorageError as exc:
            self._logger.error("Updated profile could not be saved: %s", exc)
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message="Your profile was updated but could not be saved on this device.",
            )
        if updated is None:
            # Logged out while the request was in flight.
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Your session has expired. Please sign in again.",
            )
        return self._user_result(updated)

    # ==================================================================
    # Logout
    # ==================================================================

    async def logout(self) -> None:
        """Sign out of the native provider (best effort) and end the session."""
        user = self._session.user
        if self._native is not None:
            try:
                await self._native.sign_out()
            except Exception as exc:
                self._logger.warning("Native Google sign-out failed: %s", exc)

        await self._session.logout()
        self._logger.info(
            "User logged out: %s",
            user.email if user else "unknown",
            extra={"event": "LOGOUT", "user_id": user.id if user else "unknown"},
        )

    # ==================================================================
    # Private helpers
    # ==================================================================

    async def _complete_login(
        self,
        response: AuthResponse,
        provider: AuthProvider,
        profile: Optional[GoogleProfile] = None,
    ) -> AuthResult:
        user = map_auth_response_to_user(response, provider, profile)
        if not user.has_api_session:
            self._logger.warning(
                "Backend response carried no access token for %s.", user.email,
                extra={"event": "LOGIN_FAILED"},
            )
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message="The server did not return a session. Please try again.",
            )

        try:
            await self._session.login(user)
        except StorageError as exc:
            self._logger.error("Session could not be saved: %s", exc)
            await self._session.logout()
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message="Your session could not be saved on this device.",
            )
        return self._user_result(user)

    @staticmethod
    def _user_result(user: User) -> AuthResult:
        return AuthResult(
            success=True,
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
            provider=user.provider,
        )

    @staticmethod
    def _validation_failure(check: ValidationResult) -> AuthResult:
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.VALIDATION_ERROR,
            error_message=check.error_message,
        )

    def _cancelled(self) -> AuthResult:
        self._logger.info("Google sign-in cancelled.", extra={"event": "OAUTH_CANCELLED"})
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.CANCELLED,
            error_message="Google sign-in was cancelled.",
            provider=AuthProvider.GOOGLE,
        )

    def _oauth_failure(self, exc: OAuthError) -> AuthResult:
        self._logger.warning(
            "Google sign-in failed (%s): %s", exc.code.value, exc,
            extra={"event": "GOOGLE_SIGNIN_FAILED"},
        )
        return AuthResult(
            success=False,
            error_code=exc.code,
            error_message=str(exc) or "Google sign-in failed. Please try again.",
            provider=AuthProvider.GOOGLE,
        )

    def _classify_api_error(self, exc: ApiError, event: str) -> AuthResult:
        """Map an ``ApiError`` to a structured ``AuthResult``.

        Known statuses use the fixed human message from
        ``API_STATUS_ERROR_MAP``; validation errors prefer the server's
        own message, which names the offending field.
        """
        mapped = API_STATUS_ERROR_MAP.get(exc.status)
        self._logger.warning(
            "Backend error (%d): %s", exc.status, exc,
            extra={"event": event, "status": exc.status},
        )
        if mapped is None:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message="An unexpected error occurred. Please try again later.",
            )
        error_code, human_message = mapped
        if error_code == AuthErrorCode.VALIDATION_ERROR and str(exc):
            human_message = str(exc)
        return AuthResult(
            success=False,
            error_code=error_code,
            error_message=human_message,
        )
