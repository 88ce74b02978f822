"""
Passkey Sessions client

Async client for the HTTP surface. The session cookie travels in the
httpx cookie jar; the bearer token from the last successful ceremony is
sent as well, so cross-origin deployments without cookies keep working.
"""

import logging
from typing import Any, Optional, Protocol

import httpx

from ..errors import AuthError, InvalidUsername, StorageUnavailable, error_from_detail
from ..schema.login import LoginResponse
from ..schema.register import RegisterResponse
from ..schema.session import LogoutResponse, Profile, SessionStatus

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    """
    The local WebAuthn ceremony.

    ``create`` receives PublicKeyCredentialCreationOptions and ``get``
    PublicKeyCredentialRequestOptions, both in JSON form, and each returns
    the credential JSON. A user dismissing the prompt raises UserCancelled.
    """

    async def create(self, options: dict) -> dict: ...

    async def get(self, options: dict) -> dict: ...


def _is_username_error(item: Any) -> bool:
    loc = item.get("loc") if isinstance(item, dict) else None
    return bool(loc) and loc[-1] == "username"


def error_from_response(response: httpx.Response) -> AuthError:
    """
    Rebuild the server's rejection as an AuthError subclass
    """
    try:
        body: Any = response.json()
    except ValueError:
        body = {}
    detail = body.get("detail") if isinstance(body, dict) else None

    if isinstance(detail, dict):
        return error_from_detail(detail)
    if isinstance(detail, list) and response.status_code == 422:
        messages = [item.get("msg", "Invalid request") for item in detail if isinstance(item, dict)]
        if detail and all(_is_username_error(item) for item in detail):
            return InvalidUsername(messages)
        return AuthError("Invalid request: " + "; ".join(messages))
    if response.status_code >= 500:
        return StorageUnavailable(f"Server error: {response.status_code}")
    return AuthError(f"API error: {response.status_code}")


class AuthClient:
    """
    Client for the passkey session API

    Arguments:
        http: httpx.AsyncClient whose base_url points at the API host
        authenticator: Performs the local ceremony
        prefix: Path prefix the routers are mounted under
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        authenticator: Optional[Authenticator] = None,
        prefix: str = "/api",
    ):
        self.http = http
        self.authenticator = authenticator
        self.prefix = prefix
        self.session_token: Optional[str] = None

    async def _call(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        headers = {}
        if self.session_token:
            headers["Authorization"] = f"Bearer {self.session_token}"
        try:
            response = await self.http.request(method, self.prefix + path, json=body, headers=headers)
        except httpx.TransportError as err:
            logger.warning("Passkey API unreachable: %s", err)
            raise StorageUnavailable(f"Network error: {err}") from err
        if response.is_error:
            raise error_from_response(response)
        return response.json()

    def _require_authenticator(self) -> Authenticator:
        if self.authenticator is None:
            raise RuntimeError("AuthClient needs an authenticator to run a ceremony")
        return self.authenticator

    # --- Sessions ---

    async def status(self) -> SessionStatus:
        return SessionStatus(**await self._call("GET", "/auth/status"))

    async def profile(self) -> Profile:
        return Profile(**await self._call("GET", "/auth/me"))

    async def refresh(self) -> SessionStatus:
        return SessionStatus(**await self._call("POST", "/auth/refresh"))

    async def logout(self) -> LogoutResponse:
        try:
            return LogoutResponse(**await self._call("POST", "/auth/logout"))
        finally:
            self.session_token = None

    # --- Ceremonies ---

    async def register(self, username: str) -> RegisterResponse:
        """
        Begin, run the local ceremony, complete.

        Raises:
            InvalidUsername, UserCancelled, InvalidOrExpiredChallenge,
            VerificationFailed, UsernameTaken, StorageUnavailable
        """
        authenticator = self._require_authenticator()
        username = username.strip()
        begin = await self._call("POST", "/register/begin", {"username": username})
        # UserCancelled propagates unlogged
        credential = await authenticator.create(begin["publicKey"])
        result = RegisterResponse(
            **await self._call(
                "POST",
                "/register/complete",
                {
                    "username": username,
                    "credential": credential,
                    "challengeToken": begin["challengeToken"],
                },
            )
        )
        if result.sessionToken:
            self.session_token = result.sessionToken
        return result

    async def login(self) -> LoginResponse:
        """
        Discoverable-credential login.

        Raises:
            UserCancelled, CredentialNotFound, InvalidOrExpiredChallenge,
            VerificationFailed, StorageUnavailable
        """
        authenticator = self._require_authenticator()
        begin = await self._call("POST", "/authenticate/begin")
        credential = await authenticator.get(begin["publicKey"])
        result = LoginResponse(
            **await self._call(
                "POST",
                "/authenticate/complete",
                {"credential": credential, "challengeToken": begin["challengeToken"]},
            )
        )
        self.session_token = result.sessionToken
        return result
