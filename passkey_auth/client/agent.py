"""
Client session agent

Keeps a local mirror of the server session for UI code. The mirror is
advisory: the server's status endpoint is always authoritative, and the
agent reconciles with it periodically and shortly after every login.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..errors import AuthError
from ..helpers import Clock, to_timestamp, utcnow
from ..schema.session import Profile, SessionStatus
from .api import AuthClient

logger = logging.getLogger(__name__)

LOGIN = "login"
LOGOUT = "logout"
SESSION_CHANGE = "sessionChange"
SESSION_EXPIRED = "sessionExpired"
SESSION_INITIALIZED = "sessionInitialized"

RECONCILE_MAX_SECONDS = 300
RECONCILE_MIN_SECONDS = 30
RECONCILE_LEAD_SECONDS = 60


@dataclass(frozen=True)
class SessionEvent:
    type: str
    session: SessionStatus
    profile: Optional[Profile] = None


Listener = Callable[[SessionEvent], None]


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


class ClientSessionAgent:
    """
    Mirrors session state and publishes changes

    Listeners receive SessionEvent(type, session, profile) for login,
    logout, sessionChange, sessionExpired and sessionInitialized.

    Arguments:
        client: AuthClient talking to the API
        reconcile_delay: Seconds after login/register before the
            authoritative status is pulled
        clock: Source of the current time
    """

    def __init__(self, client: AuthClient, reconcile_delay: float = 2.0, clock: Clock = utcnow):
        self.client = client
        self.reconcile_delay = reconcile_delay
        self.clock = clock
        self._session = SessionStatus(authenticated=False)
        self._profile: Optional[Profile] = None
        self._listeners: list[Listener] = []
        self._expiration_handle: Optional[asyncio.TimerHandle] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._destroyed = False

    # --- State ---

    @property
    def session(self) -> SessionStatus:
        return self._session.model_copy()

    @property
    def profile(self) -> Optional[Profile]:
        return self._profile.model_copy() if self._profile is not None else None

    @property
    def is_authenticated(self) -> bool:
        return self._session.authenticated

    def time_until_expiration(self) -> Optional[float]:
        """
        Seconds until the mirrored session expires, or None when signed out
        """
        if not self._session.authenticated or not self._session.expiresAt:
            return None
        remaining = (_parse(self._session.expiresAt) - self.clock()).total_seconds()
        return max(0.0, remaining)

    def format_time_until_expiration(self) -> Optional[str]:
        remaining = self.time_until_expiration()
        if not remaining:
            return None
        days, rest = divmod(int(remaining), 86400)
        hours, rest = divmod(rest, 3600)
        minutes = rest // 60
        if days > 0:
            return f"{_plural(days, 'day')}, {_plural(hours, 'hour')}"
        if hours > 0:
            return f"{_plural(hours, 'hour')}, {_plural(minutes, 'minute')}"
        return _plural(minutes, "minute")

    # --- Publish / subscribe ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener; returns a function that unregisters it
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("Session event listener failed")

    # --- Transitions ---

    def _set_session(self, session: SessionStatus, event_type: str) -> None:
        was_authenticated = self._session.authenticated
        self._session = session
        if not session.authenticated:
            self._profile = None

        self._schedule_expiration()
        if session.authenticated and not was_authenticated:
            self._start_monitoring()
        elif not session.authenticated and was_authenticated:
            self._stop_monitoring()

        self._emit(SessionEvent(type=event_type, session=self.session, profile=self.profile))

    def _schedule_expiration(self) -> None:
        if self._expiration_handle is not None:
            self._expiration_handle.cancel()
            self._expiration_handle = None
        remaining = self.time_until_expiration()
        if remaining is None:
            return
        loop = asyncio.get_running_loop()
        if remaining <= 0:
            self._expiration_handle = loop.call_soon(self._handle_expiration)
        else:
            self._expiration_handle = loop.call_later(remaining, self._handle_expiration)

    def _handle_expiration(self) -> None:
        self._expiration_handle = None
        if self._session.authenticated:
            logger.info("Session for %s expired", self._session.username)
            self._set_session(SessionStatus(authenticated=False), SESSION_EXPIRED)

    def _reconcile_interval(self) -> float:
        remaining = self.time_until_expiration() or 0.0
        return min(
            RECONCILE_MAX_SECONDS,
            max(remaining - RECONCILE_LEAD_SECONDS, RECONCILE_MIN_SECONDS),
        )

    async def _monitor(self) -> None:
        while self._session.authenticated:
            await asyncio.sleep(self._reconcile_interval())
            await self.refresh_session()

    def _start_monitoring(self) -> None:
        self._stop_monitoring()
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitor())

    def _stop_monitoring(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None

    def _spawn(self, coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delayed_refresh(self) -> None:
        await asyncio.sleep(self.reconcile_delay)
        await self.refresh_session()

    async def _pull(self) -> tuple[SessionStatus, Optional[Profile]]:
        session = await self.client.status()
        profile = None
        if session.authenticated:
            try:
                profile = await self.client.profile()
            except AuthError as err:
                logger.warning("Failed to fetch user profile: %s", err)
        return session, profile

    # --- Public operations ---

    async def start(self) -> SessionStatus:
        """
        Pull the authoritative session and announce it
        """
        try:
            session, profile = await self._pull()
        except AuthError as err:
            logger.warning("Failed to initialize session: %s", err)
            session, profile = SessionStatus(authenticated=False), None
        self._profile = profile
        self._set_session(session, SESSION_INITIALIZED)
        return self.session

    async def refresh_session(self) -> SessionStatus:
        """
        Reconcile the mirror with the server's status
        """
        if self._destroyed:
            return self.session
        try:
            session, profile = await self._pull()
        except AuthError as err:
            logger.warning("Failed to refresh session: %s", err)
            session, profile = SessionStatus(authenticated=False), None
        self._profile = profile
        self._set_session(session, SESSION_CHANGE)
        return self.session

    async def extend_session(self) -> SessionStatus:
        """
        Ask the server to extend the session, then mirror the new expiry
        """
        session = await self.client.refresh()
        self._set_session(session, SESSION_CHANGE)
        return self.session

    def _accept(self, username: str, expires_at: str) -> None:
        # Taken from the ceremony response; corrected by the delayed refresh
        session = SessionStatus(
            authenticated=True,
            username=username,
            loginTime=to_timestamp(self.clock()),
            expiresAt=expires_at,
        )
        self._set_session(session, LOGIN)
        self._spawn(self._delayed_refresh())

    async def login(self) -> str:
        """
        Run a discoverable-credential login; returns the username.
        """
        result = await self.client.login()
        self._accept(result.username, result.expiresAt)
        return result.username

    async def register(self, username: str):
        """
        Register a passkey for a username; returns the server's response.
        """
        result = await self.client.register(username)
        # Already registered without a session: the user must sign in
        if result.sessionToken:
            self._accept(result.username, result.expiresAt)
        return result

    async def logout(self) -> None:
        """
        Log out on the server; the local session is cleared regardless.
        """
        try:
            await self.client.logout()
        except AuthError as err:
            logger.error("Logout API call failed: %s", err)
        finally:
            self._set_session(SessionStatus(authenticated=False), LOGOUT)

    def destroy(self) -> None:
        """
        Stop timers and drop every listener
        """
        self._destroyed = True
        if self._expiration_handle is not None:
            self._expiration_handle.cancel()
            self._expiration_handle = None
        self._stop_monitoring()
        for task in list(self._background):
            task.cancel()
        self._listeners = []
