"""
Challenge Store

Mints single-use WebAuthn challenges and consumes them exactly once.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from ..errors import StorageUnavailable
from ..helpers import Clock, base64url_to_bytes, bytes_to_base64url, utcnow
from .base import KeyValueStore

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "passkey:challenge:"
CHALLENGE_TTL_SECONDS = 300
CHALLENGE_LENGTH_BYTES = 32
TOKEN_LENGTH_BYTES = 32
MINT_ATTEMPTS = 3


class ChallengeKind(str, Enum):
    """
    Ceremony a challenge was minted for
    """

    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class ChallengeRecord:
    """
    A stored challenge.

    Attributes:
        token: Opaque lookup token handed to the client
        challenge: Raw bytes sent into the ceremony
        kind: registration or authentication
        created_at: Mint time
        expires_at: created_at + TTL
        user_id: User the challenge is bound to, if any
    """

    token: str
    challenge: bytes
    kind: ChallengeKind
    created_at: datetime
    expires_at: datetime
    user_id: Optional[int] = None

    def dumps(self) -> str:
        return json.dumps(
            {
                "challenge": bytes_to_base64url(self.challenge),
                "kind": self.kind.value,
                "created_at": self.created_at.isoformat(),
                "expires_at": self.expires_at.isoformat(),
                "user_id": self.user_id,
            }
        )

    @classmethod
    def loads(cls, token: str, raw: str) -> "ChallengeRecord":
        data = json.loads(raw)
        return cls(
            token=token,
            challenge=base64url_to_bytes(data["challenge"]),
            kind=ChallengeKind(data["kind"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            user_id=data.get("user_id"),
        )


class ChallengeStore:
    """
    Single-use challenge store over a TTL key/value backend

    Arguments:
        kv: KeyValueStore backend
        ttl: Challenge lifetime in seconds
        clock: Source of the current time
    """

    def __init__(self, kv: KeyValueStore, ttl: int = CHALLENGE_TTL_SECONDS, clock: Clock = utcnow):
        self.kv = kv
        self.ttl = ttl
        self.clock = clock

    async def mint(self, kind: ChallengeKind, user_id: Optional[int] = None) -> ChallengeRecord:
        """
        Generate a random challenge and an independent random token, and
        store the pair for ``ttl`` seconds.

        Raises:
            StorageUnavailable
        """
        kind = ChallengeKind(kind)
        for _ in range(MINT_ATTEMPTS):
            now = self.clock()
            record = ChallengeRecord(
                token=secrets.token_urlsafe(TOKEN_LENGTH_BYTES),
                challenge=secrets.token_bytes(CHALLENGE_LENGTH_BYTES),
                kind=kind,
                created_at=now,
                expires_at=now + timedelta(seconds=self.ttl),
                user_id=user_id,
            )
            if await self.kv.add(CHALLENGE_PREFIX + record.token, record.dumps(), self.ttl):
                logger.info("Minted %s challenge %s...", kind.value, record.token[:8])
                return record
        # Unreachable with a working random source
        raise StorageUnavailable("Could not allocate a challenge token")

    async def consume(
        self, token: str, kind: Optional[ChallengeKind] = None
    ) -> Optional[ChallengeRecord]:
        """
        Atomically read and delete a challenge.

        Returns None when the token is absent, expired, already consumed or
        was minted for a different kind. A mismatched record is still
        consumed.

        Raises:
            StorageUnavailable
        """
        if not token:
            return None
        raw = await self.kv.pop(CHALLENGE_PREFIX + token)
        if raw is None:
            logger.info("Challenge %s... absent, expired or already consumed", token[:8])
            return None
        record = ChallengeRecord.loads(token, raw)
        if self.clock() >= record.expires_at:
            logger.info("Challenge %s... expired", token[:8])
            return None
        if kind is not None and record.kind != ChallengeKind(kind):
            logger.warning(
                "Challenge %s... minted for %s presented for %s",
                token[:8],
                record.kind.value,
                ChallengeKind(kind).value,
            )
            return None
        logger.info("Consumed %s challenge %s...", record.kind.value, token[:8])
        return record
