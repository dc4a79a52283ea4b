"""
Authentication provider interface and Supabase (GoTrue) implementation.

The provider owns the credential session and notifies listeners of session
changes (sign-in, sign-out, token refresh, external user edits). Listeners
are async callables ``(event, subject_id)``; ``subject_id`` is None when the
session ended.

Example:
    provider = SupabaseAuthProvider(url=settings.SUPABASE_URL, api_key=settings.SUPABASE_KEY)
    unsubscribe = provider.on_session_change(store.handle_session_change)
    session = await provider.sign_in("resident@example.com", "secret")
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import Settings
from ..core.jwt_validator import JWTValidationError, JWTValidator
from ..exceptions import AccountExistsError, AuthProviderError, InvalidCredentialError

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    """Session change notifications emitted by a provider."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


SessionListener = Callable[[SessionEvent, Optional[str]], Awaitable[None]]


@dataclass
class AuthSession:
    """An authenticated credential session."""

    subject: str
    email: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    def is_expired(self, leeway: float = 30.0) -> bool:
        if self.expires_at is None:
            return False
        return time.time() >= self.expires_at - leeway


class AuthProvider(ABC):
    """
    Credential backend consumed by the session resolver and identity store.

    Subclasses implement the credential calls; the listener registry and
    notification fan-out live here.
    """

    def __init__(self) -> None:
        self._listeners: List[SessionListener] = []

    @abstractmethod
    async def sign_in(self, email: str, secret: str) -> AuthSession:
        """
        Authenticate an e-mail/secret pair and make it the current session.

        Raises:
            InvalidCredentialError: If the backend rejects the credential
            AuthProviderError: If the backend is unavailable
        """

    @abstractmethod
    async def sign_up(self, email: str, secret: str, *, establish_session: bool = True) -> AuthSession:
        """
        Create a credential.

        Args:
            establish_session: When False the new credential does not replace
                the current session and no event is emitted

        Raises:
            AccountExistsError: If the e-mail is already registered
            AuthProviderError: If the backend is unavailable or refuses
        """

    @abstractmethod
    async def sign_out(self) -> None:
        """End the current session."""

    @abstractmethod
    async def get_current_session_subject(self) -> Optional[str]:
        """Return the subject id of the current session, or None."""

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register a session change listener.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: SessionEvent, subject: Optional[str]) -> None:
        """Notify listeners in registration order."""
        logger.debug(f"Session event {event.value} for subject {subject}")
        for listener in list(self._listeners):
            try:
                await listener(event, subject)
            except Exception as e:
                # A failing listener must not break the credential flow that
                # triggered the notification.
                logger.error(f"Session listener failed on {event.value}: {e}", exc_info=True)

    async def close(self) -> None:
        """Release transport resources."""
        self._listeners.clear()


class SupabaseAuthProvider(AuthProvider):
    """
    GoTrue REST client.

    Endpoints:
    - POST /auth/v1/token?grant_type=password        sign in
    - POST /auth/v1/signup                           sign up
    - POST /auth/v1/logout                           sign out
    - POST /auth/v1/token?grant_type=refresh_token   refresh
    """

    MAX_RETRIES = 3

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        jwt_secret: str = "",
        timeout: float = 10.0,
    ):
        """
        Initialize the provider.

        Args:
            url: Project URL (e.g. https://xyz.supabase.co)
            api_key: Anon/public API key
            client: Optional preconfigured HTTP client (tests inject a mock transport)
            jwt_secret: Project JWT secret; enables access-token verification
            timeout: Per-request timeout in seconds
        """
        super().__init__()
        if not url:
            raise ValueError("Supabase URL is required")
        self._base_url = url.rstrip("/") + "/auth/v1"
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._validator = JWTValidator(jwt_secret) if jwt_secret else None
        self._session: Optional[AuthSession] = None

        logger.info(f"SupabaseAuthProvider initialized: {self._base_url}")

    @classmethod
    def from_settings(cls, config: Settings) -> "SupabaseAuthProvider":
        return cls(
            url=config.SUPABASE_URL,
            api_key=config.SUPABASE_KEY,
            jwt_secret=config.SUPABASE_JWT_SECRET,
            timeout=config.AUTH_HTTP_TIMEOUT,
        )

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _post(
        self,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> httpx.Response:
        """POST with exponential backoff on transport errors."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.MAX_RETRIES),
                wait=wait_exponential(multiplier=0.5, max=4),
                retry=retry_if_exception_type(httpx.TransportError),
            ):
                with attempt:
                    return await self._client.post(
                        f"{self._base_url}{path}",
                        params=params,
                        json=json,
                        headers=self._headers(access_token),
                    )
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"Auth backend unreachable for {path}: {cause}")
            raise AuthProviderError(f"Auth backend unreachable: {cause}") from cause
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"msg": response.text}
        return body if isinstance(body, dict) else {"msg": str(body)}

    @staticmethod
    def _error_text(body: Dict[str, Any]) -> str:
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
        return "unknown error"

    def _session_from_payload(self, body: Dict[str, Any], email: str) -> AuthSession:
        user = body.get("user") or {}
        subject = user.get("id") or body.get("id")
        if not subject:
            raise AuthProviderError("Auth backend response carries no user id")

        access_token = body.get("access_token")
        if access_token and self._validator is not None:
            try:
                token_subject = self._validator.extract_subject(access_token)
            except JWTValidationError as e:
                raise AuthProviderError(f"Access token rejected: {e}") from e
            if token_subject != subject:
                raise AuthProviderError(
                    f"Access token subject {token_subject} does not match user {subject}"
                )

        expires_at = body.get("expires_at")
        if expires_at is None and body.get("expires_in"):
            expires_at = time.time() + float(body["expires_in"])

        return AuthSession(
            subject=subject,
            email=(user.get("email") or body.get("email") or email).lower(),
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
        )

    # ------------------------------------------------------------------
    # AuthProvider
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, secret: str) -> AuthSession:
        response = await self._post(
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": secret},
        )

        if response.status_code in (400, 401):
            body = self._error_body(response)
            code = body.get("error_code") or body.get("error")
            if code == "email_not_confirmed":
                raise AuthProviderError(
                    "E-mail not confirmed",
                    status_code=response.status_code,
                    user_message="Please confirm your e-mail address before signing in.",
                )
            logger.info(f"Sign in rejected for {email}: {self._error_text(body)}")
            raise InvalidCredentialError(self._error_text(body))
        if response.status_code >= 400:
            body = self._error_body(response)
            raise AuthProviderError(
                f"Sign in failed: {self._error_text(body)}",
                status_code=response.status_code,
            )

        session = self._session_from_payload(response.json(), email)
        self._session = session
        logger.info(f"Signed in subject {session.subject}")
        await self._emit(SessionEvent.SIGNED_IN, session.subject)
        return session

    async def sign_up(self, email: str, secret: str, *, establish_session: bool = True) -> AuthSession:
        response = await self._post(
            "/signup",
            json={"email": email, "password": secret},
        )

        if response.status_code >= 400:
            body = self._error_body(response)
            code = body.get("error_code") or ""
            text = self._error_text(body)
            if code in ("user_already_exists", "email_exists") or "already registered" in text.lower():
                raise AccountExistsError(email)
            raise AuthProviderError(f"Sign up failed: {text}", status_code=response.status_code)

        body = response.json()
        session = self._session_from_payload(body, email)

        if not establish_session:
            logger.info(f"Created credential {session.subject} without switching session")
            return session

        if not session.access_token:
            raise AuthProviderError(
                "Sign up returned no session (e-mail confirmation enabled)",
                user_message="E-mail confirmation is required before this account can be used.",
            )

        self._session = session
        logger.info(f"Signed up and signed in subject {session.subject}")
        await self._emit(SessionEvent.SIGNED_IN, session.subject)
        return session

    async def sign_out(self) -> None:
        session = self._session
        if session is None:
            return
        if session.access_token:
            response = await self._post("/logout", access_token=session.access_token)
            # 401: the token is already invalid server side, the session is gone anyway
            if response.status_code >= 400 and response.status_code != 401:
                body = self._error_body(response)
                raise AuthProviderError(
                    f"Sign out failed: {self._error_text(body)}",
                    status_code=response.status_code,
                )
        self._session = None
        logger.info(f"Signed out subject {session.subject}")
        await self._emit(SessionEvent.SIGNED_OUT, None)

    async def refresh_session(self) -> Optional[AuthSession]:
        """
        Exchange the refresh token for a new access token.

        Returns:
            The refreshed session, or None if the refresh token was rejected
            (the session is then ended and SIGNED_OUT is emitted)
        """
        session = self._session
        if session is None or not session.refresh_token:
            return None

        response = await self._post(
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session.refresh_token},
        )
        if response.status_code in (400, 401):
            logger.warning(f"Refresh token rejected for subject {session.subject}")
            self._session = None
            await self._emit(SessionEvent.SIGNED_OUT, None)
            return None
        if response.status_code >= 400:
            body = self._error_body(response)
            raise AuthProviderError(
                f"Token refresh failed: {self._error_text(body)}",
                status_code=response.status_code,
            )

        refreshed = self._session_from_payload(response.json(), session.email)
        self._session = refreshed
        await self._emit(SessionEvent.TOKEN_REFRESHED, refreshed.subject)
        return refreshed

    def restore_session(self, subject: str, email: str, refresh_token: str) -> None:
        """Seed a persisted session; the next subject probe refreshes it."""
        self._session = AuthSession(
            subject=subject,
            email=email.lower(),
            refresh_token=refresh_token,
            expires_at=0.0,
        )

    async def get_current_session_subject(self) -> Optional[str]:
        session = self._session
        if session is None:
            return None
        if session.is_expired():
            session = await self.refresh_session()
            if session is None:
                return None
        return session.subject

    async def close(self) -> None:
        await super().close()
        if self._owns_client:
            await self._client.aclose()
