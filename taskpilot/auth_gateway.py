import abc
import asyncio
import base64
import hashlib
import json
import logging
import secrets # For a cryptographically strong random number generator
import webbrowser
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode, quote_plus

import aiohttp

from .constants import (
    AUTHORIZE_PATH,
    LOGOUT_PATH,
    TOKEN_PATH,
    AuthRejected,
    AuthUnavailable,
    InputValidationError,
    NetworkError,
    TaskPilotError,
    UpstreamError,
)
from .models import AuthEvent, Session, extract_session
from .settings import DEFAULT_SESSION_FILE, Settings

logger = logging.getLogger(__name__)

AuthCallback = Callable[[AuthEvent, Optional[Session]], None]


# PKCE Helper Functions
def generate_code_verifier(length: int = 64) -> str:
    """
    Generates a cryptographically secure random string to be used as the PKCE code verifier.
    The length should be between 43 and 128 characters.
    """
    if not (43 <= length <= 128):
        raise ValueError("Code verifier length must be between 43 and 128 characters.")
    return secrets.token_urlsafe(length)[:length]

def generate_code_challenge(verifier: str) -> str:
    """
    Generates the PKCE code challenge from a given code verifier.
    The challenge is the BASE64 URL-encoded SHA256 hash of the verifier.
    """
    sha256_hash = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(sha256_hash).decode('utf-8').rstrip('=')


class Subscription:
    """Handle returned by AuthGateway.subscribe()."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._release()


class AuthGateway(abc.ABC):
    """
    Identity-provider operations the controller depends on.

    Session transitions are pushed to subscribers in the order they happen.
    """

    def __init__(self):
        self._subscribers: List[AuthCallback] = []

    @abc.abstractmethod
    async def get_current_session(self) -> Optional[Session]:
        """Return the current session or None. Raises AuthUnavailable on lookup failure."""

    @abc.abstractmethod
    def sign_in(self, provider: str) -> str:
        """Start the redirect flow for `provider` and return the authorization URL."""

    @abc.abstractmethod
    async def sign_out(self) -> None:
        ...

    async def close(self) -> None:
        self._subscribers.clear()

    def subscribe(self, callback: AuthCallback) -> Subscription:
        self._subscribers.append(callback)

        def release() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return Subscription(release)

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        logger.info(f"Auth event: {event.value}")
        for callback in list(self._subscribers):
            try:
                callback(event, session)
            except Exception as e:
                logger.error(f"Auth subscriber failed on {event.value}: {e}", exc_info=True)


class SupabaseAuthGateway(AuthGateway):
    """
    AuthGateway backed by a Supabase (GoTrue) auth server using the OAuth PKCE flow.

    The session is persisted to a JSON file so a later process can restore it.
    """

    def __init__(self,
                 auth_url: str,
                 public_key: str,
                 redirect_uri: str = None,
                 session_file: str = None,
                 http_session: Optional[aiohttp.ClientSession] = None,
                 request_timeout: float = 30.0,
                 open_browser: bool = True):
        super().__init__()
        if not auth_url:
            raise ValueError("Identity provider URL is required.")
        if not public_key:
            raise ValueError("Identity provider public key is required.")

        self.auth_url = auth_url.rstrip("/")
        self.public_key = public_key
        self.redirect_uri = redirect_uri
        self.session_file_path = Path(session_file or DEFAULT_SESSION_FILE).resolve()
        self.request_timeout = request_timeout
        self.open_browser = open_browser

        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._code_verifier: Optional[str] = None
        self._session: Optional[Session] = None

        self._load_session()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "SupabaseAuthGateway":
        return cls(
            auth_url=settings.auth_url,
            public_key=settings.auth_public_key,
            redirect_uri=settings.redirect_uri,
            session_file=settings.session_file,
            request_timeout=settings.request_timeout,
            **kwargs,
        )

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_http_session = True
        return self._http_session

    def _timeout(self) -> aiohttp.ClientTimeout:
        # Applied per request so a borrowed session still honours request_timeout
        return aiohttp.ClientTimeout(total=self.request_timeout)

    def _headers(self, access_token: str = None) -> Dict[str, str]:
        headers = {
            "apikey": self.public_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def get_authorization_url(self, provider: str) -> tuple[str, str]:
        """
        Generates the authorization URL for `provider` and the matching code_verifier.
        """
        code_verifier = generate_code_verifier()
        params = {
            "provider": provider,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "s256",
        }
        if self.redirect_uri:
            params["redirect_to"] = self.redirect_uri
        auth_url = f"{self.auth_url}{AUTHORIZE_PATH}?{urlencode(params, quote_via=quote_plus)}"
        return auth_url, code_verifier

    def sign_in(self, provider: str) -> str:
        """
        Starts the OAuth redirect flow. The resulting session is delivered to subscribers
        once exchange_code_for_session() is called with the code from the redirect.
        """
        auth_url, self._code_verifier = self.get_authorization_url(provider)
        logger.info(f"Generated authorization URL for provider '{provider}' (first 80 chars): {auth_url[:80]}...")
        if self.open_browser:
            try:
                webbrowser.open(auth_url)
            except webbrowser.Error as e:
                logger.warning(f"Could not open browser: {e}")
        return auth_url

    @property
    def sign_in_pending(self) -> bool:
        return self._code_verifier is not None

    async def exchange_code_for_session(self, code: str) -> Session:
        """
        Completes sign-in with the authorization code from the redirect.

        Raises:
            InputValidationError: If no sign-in is in progress or the code is empty.
            AuthRejected, UpstreamError, NetworkError: If the exchange fails.
        """
        if not code:
            raise InputValidationError("Authorization code is empty.")
        if not self._code_verifier:
            raise InputValidationError("No sign-in in progress; call sign_in() first.")

        session = await self._request_token(
            "pkce", {"auth_code": code, "code_verifier": self._code_verifier}
        )
        self._code_verifier = None
        self._session = session
        self._save_session()
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def refresh_session(self) -> Session:
        if not self._session or not self._session.refresh_token:
            raise AuthRejected("No refresh token available to refresh the session.")

        session = await self._request_token(
            "refresh_token", {"refresh_token": self._session.refresh_token}
        )
        self._session = session
        self._save_session()
        self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def get_current_session(self) -> Optional[Session]:
        """
        Returns the persisted session, refreshing it first if it has expired.

        Raises:
            AuthUnavailable: If the provider cannot be reached to refresh the session.
        """
        if self._session is None:
            return None
        if not self._session.is_expired():
            return self._session

        if not self._session.refresh_token:
            logger.info("Stored session expired and has no refresh token. Clearing it.")
            self.clear_session()
            return None

        try:
            return await self.refresh_session()
        except AuthRejected as e:
            logger.warning(f"Session refresh was rejected: {e}. Signing out.")
            self.clear_session()
            self._emit(AuthEvent.SIGNED_OUT, None)
            return None
        except TaskPilotError as e:
            raise AuthUnavailable(f"Could not refresh the stored session: {e}") from e

    async def sign_out(self) -> None:
        """
        Forgets the local session immediately, then revokes it with the provider.
        """
        session = self._session
        self.clear_session()
        self._emit(AuthEvent.SIGNED_OUT, None)
        if session is None:
            return

        url = f"{self.auth_url}{LOGOUT_PATH}"
        http_session = await self._get_http_session()
        try:
            async with http_session.post(url, headers=self._headers(session.access_token), timeout=self._timeout()) as response:
                if response.status in (200, 204):
                    logger.info("Session revoked with identity provider.")
                elif response.status in (401, 403):
                    # Token was already invalid; nothing left to revoke
                    logger.info(f"Identity provider reported the session as already invalid ({response.status}).")
                else:
                    error_text = await self._error_text(response)
                    raise UpstreamError(f"Error signing out: {response.status} - {error_text}", status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"AIOHTTP client error during sign-out: {e}")
            raise NetworkError("Could not reach identity provider to sign out") from e

    async def close(self) -> None:
        await super().close()
        if self._owns_http_session and self._http_session is not None and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    async def _request_token(self, grant_type: str, payload: Dict[str, Any]) -> Session:
        url = f"{self.auth_url}{TOKEN_PATH}?grant_type={grant_type}"
        http_session = await self._get_http_session()
        try:
            async with http_session.post(url, json=payload, headers=self._headers(), timeout=self._timeout()) as response:
                if response.status == 200:
                    try:
                        result = json.loads(await response.read())
                    except ValueError: # JSONDecodeError or undecodable bytes
                        text_response = await response.text(errors="replace")
                        raise UpstreamError(
                            f"Token endpoint returned 200 OK but non-JSON response: {text_response[:200]}", status=200
                        )
                    session = extract_session(result)
                    if session is None:
                        raise UpstreamError("Token endpoint response did not contain a usable session", status=200)
                    return session

                error_text = await self._error_text(response)
                logger.error(f"Token endpoint error for grant '{grant_type}': {response.status} - {error_text}")
                if response.status in (400, 401, 403):
                    raise AuthRejected(f"Token request ({grant_type}) rejected: {response.status} - {error_text}")
                raise UpstreamError(
                    f"Token request ({grant_type}) failed: {response.status} - {error_text}", status=response.status
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"AIOHTTP client error during token request ({grant_type}): {e}")
            raise NetworkError(f"Could not reach identity provider for token request ({grant_type})") from e

    @staticmethod
    async def _error_text(response: aiohttp.ClientResponse) -> str:
        text = await response.text(errors="replace")
        try:
            error_details = json.loads(text)
        except json.JSONDecodeError:
            return text[:200]
        if isinstance(error_details, dict):
            return str(
                error_details.get("error_description")
                or error_details.get("msg")
                or error_details.get("error")
                or error_details
            )
        return str(error_details)

    def _save_session(self) -> None:
        if self._session is None:
            return

        data = {
            "auth_url": self.auth_url, # Bind the file to the provider that issued it
            "session": self._session.model_dump(mode="json"),
        }
        try:
            self.session_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.session_file_path, "w") as f:
                json.dump(data, f, indent=4)
        except OSError as e:
            logger.warning(f"Could not save session to file {self.session_file_path}: {e}")

    def _load_session(self) -> None:
        if not self.session_file_path.exists():
            return

        try:
            with open(self.session_file_path, "r") as f:
                loaded_data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Error decoding session file {self.session_file_path}: {e}. Deleting corrupted file.")
            self.clear_session()
            return
        except OSError as e:
            logger.warning(f"Could not read session file {self.session_file_path}: {e}")
            return

        if not isinstance(loaded_data, dict) or loaded_data.get("auth_url") != self.auth_url:
            logger.warning(f"Session in {self.session_file_path} belongs to a different identity provider. Clearing it.")
            self.clear_session()
            return

        session = extract_session(loaded_data)
        if session is None:
            logger.warning(f"Invalid or incomplete session data in {self.session_file_path}. Clearing it.")
            self.clear_session()
            return
        self._session = session

    def clear_session(self) -> None:
        """Forgets the in-memory session and removes the session file."""
        self._session = None
        try:
            if self.session_file_path.exists():
                self.session_file_path.unlink()
        except OSError as e:
            logger.warning(f"Could not delete session file {self.session_file_path}: {e}")
