"""
Session Store

Sessions are addressable two ways: by a bearer token usable cross-origin,
and by a session id carried in a transport-managed cookie. The record is
stored once, under the token; the session id is an alias to the token.
Both expire together.
"""

import json
import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from ..errors import StorageUnavailable
from ..helpers import Clock, utcnow
from .base import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_PREFIX = "passkey:session:"
SESSION_ID_PREFIX = "passkey:session-id:"
SESSION_TTL_SECONDS = 7 * 24 * 60 * 60
TOKEN_LENGTH_BYTES = 32
MINT_ATTEMPTS = 3


@dataclass(frozen=True)
class SessionRecord:
    """
    An issued session.

    Attributes:
        token: Opaque bearer token
        session_id: Opaque id carried by the session cookie
        user_id: Owning user
        username: Owning user's normalised username
        created_at: Issue time
        expires_at: Fixed expiry, moved only by an explicit refresh
        last_refresh_at: Time of the last explicit refresh
    """

    token: str
    session_id: str
    user_id: int
    username: str
    created_at: datetime
    expires_at: datetime
    last_refresh_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def dumps(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "user_id": self.user_id,
                "username": self.username,
                "created_at": self.created_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
                "last_refresh_at": self.last_refresh_at.isoformat(),
            }
        )

    @classmethod
    def loads(cls, token: str, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        return cls(
            token=token,
            session_id=data["session_id"],
            user_id=data["user_id"],
            username=data["username"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            last_refresh_at=datetime.fromisoformat(data["last_refresh_at"]),
        )


class SessionStore:
    """
    TTL session store

    Arguments:
        kv: KeyValueStore backend
        ttl: Session lifetime in seconds
        clock: Source of the current time
    """

    def __init__(self, kv: KeyValueStore, ttl: int = SESSION_TTL_SECONDS, clock: Clock = utcnow):
        self.kv = kv
        self.ttl = ttl
        self.clock = clock

    async def _rewrite(self, record: SessionRecord) -> bool:
        # Both keys are only overwritten while present, so a concurrent
        # destroy is never undone
        remaining = (record.expires_at - self.clock()).total_seconds()
        if not await self.kv.replace(SESSION_PREFIX + record.token, record.dumps(), remaining):
            return False
        if not await self.kv.replace(SESSION_ID_PREFIX + record.session_id, record.token, remaining):
            await self.kv.delete(SESSION_PREFIX + record.token)
            return False
        return True

    async def create(self, user_id: int, username: str) -> SessionRecord:
        """
        Mint a session for a user.

        Raises:
            StorageUnavailable
        """
        for _ in range(MINT_ATTEMPTS):
            now = self.clock()
            record = SessionRecord(
                token=secrets.token_urlsafe(TOKEN_LENGTH_BYTES),
                session_id=secrets.token_urlsafe(TOKEN_LENGTH_BYTES),
                user_id=user_id,
                username=username,
                created_at=now,
                expires_at=now + timedelta(seconds=self.ttl),
                last_refresh_at=now,
            )
            if not await self.kv.add(SESSION_PREFIX + record.token, record.dumps(), self.ttl):
                continue
            if not await self.kv.add(SESSION_ID_PREFIX + record.session_id, record.token, self.ttl):
                await self.kv.delete(SESSION_PREFIX + record.token)
                continue
            logger.info("Issued session %s... for user %s", record.token[:8], username)
            return record
        raise StorageUnavailable("Could not allocate a session token")

    async def validate(self, token: Optional[str]) -> Optional[SessionRecord]:
        """
        Return the session for a bearer token if present and unexpired.
        """
        if not token:
            return None
        raw = await self.kv.get(SESSION_PREFIX + token)
        if raw is None:
            return None
        record = SessionRecord.loads(token, raw)
        if not record.is_valid(self.clock()):
            await self.kv.delete(SESSION_PREFIX + token, SESSION_ID_PREFIX + record.session_id)
            logger.info("Session %s... expired for user %s", token[:8], record.username)
            return None
        return record

    async def validate_cookie(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """
        Return the session addressed by a cookie session id.
        """
        if not session_id:
            return None
        token = await self.kv.get(SESSION_ID_PREFIX + session_id)
        record = await self.validate(token)
        if record is None or record.session_id != session_id:
            return None
        return record

    async def refresh(self, token: str) -> Optional[SessionRecord]:
        """
        Re-base a valid session's expiry on the current time.

        Returns None when the session is gone, including one destroyed
        while the refresh was in flight.
        """
        record = await self.validate(token)
        if record is None:
            return None
        now = self.clock()
        record = replace(record, expires_at=now + timedelta(seconds=self.ttl), last_refresh_at=now)
        if not await self._rewrite(record):
            logger.info("Session %s... destroyed during refresh", token[:8])
            return None
        logger.info("Refreshed session %s... for user %s", token[:8], record.username)
        return record

    async def destroy(self, token: Optional[str]) -> Optional[SessionRecord]:
        """
        Remove a session by bearer token. Idempotent.

        Returns the removed session if it was still present.
        """
        if not token:
            return None
        raw = await self.kv.pop(SESSION_PREFIX + token)
        if raw is None:
            return None
        record = SessionRecord.loads(token, raw)
        await self.kv.delete(SESSION_ID_PREFIX + record.session_id)
        logger.info("Destroyed session %s... for user %s", token[:8], record.username)
        return record

    async def destroy_cookie(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """
        Remove a session by cookie session id. Idempotent.
        """
        if not session_id:
            return None
        token = await self.kv.pop(SESSION_ID_PREFIX + session_id)
        return await self.destroy(token)
