"""
Passkey Sessions Configuration

All settings are read from the environment once and cached.
"""

import os
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Optional


class Insert(Enum):
    """
    Insert type enumerator
    """

    ORIGIN = "uri"
    RP_ID = "rp_id"


def get_host_name(hostname: str, of: Insert = Insert.ORIGIN) -> str:
    """
    Returns the origin or the RP-ID for a configured hostname

    Arguments:
        hostname: Full origin, e.g. https://example.com:8443
        of: What HostType to return
    """
    if of == Insert.RP_ID:
        # The RP_ID should just be the hostname, so we need to remove http(s),
        # ports, and trailing addresses
        return hostname.split("//", 1)[-1].split(":", 1)[0].split("/", 1)[0]
    return hostname.rstrip("/")


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings

    Attributes:
        origin: Expected WebAuthn origin
        rp_id: Relying party identifier
        rp_name: Relying party display name
        database_url: SQLAlchemy engine URL for users and credentials
        redis_url: Redis URL for challenges and sessions, or None for in-process
        challenge_ttl: Challenge lifetime in seconds
        session_ttl: Session lifetime in seconds
        session_cookie_name: Name of the transport-bound session cookie
        sign_count_policy: "flag" or "reject" on a non-increasing counter
    """

    origin: str = "http://localhost:8000"
    rp_id: str = "localhost"
    rp_name: str = "Passkeys Demo"
    database_url: str = "sqlite:///db.sqlite3"
    redis_url: Optional[str] = None
    challenge_ttl: int = 300
    session_ttl: int = 604800
    session_cookie_name: str = "passkey_session"
    sign_count_policy: str = "flag"

    @property
    def secure_cookies(self) -> bool:
        """Cookies are marked Secure whenever the origin is served over TLS."""
        return self.origin.startswith("https://")


def settings_from_env() -> Settings:
    """
    Build Settings from environment variables
    """
    hostname = os.getenv("HOSTNAME", "http://localhost:8000")
    if "//" not in hostname:
        # Bare host names are assumed to be served over TLS unless local
        if hostname.startswith("localhost") or hostname.startswith("127.0.0.1"):
            hostname = f"http://{hostname}"
        else:
            hostname = f"https://{hostname}"

    policy = os.getenv("SIGN_COUNT_POLICY", "flag").lower()
    if policy not in ("flag", "reject"):
        raise ValueError(f"SIGN_COUNT_POLICY must be 'flag' or 'reject', not {policy!r}")

    return Settings(
        origin=get_host_name(hostname, Insert.ORIGIN),
        rp_id=os.getenv("RP_ID") or get_host_name(hostname, Insert.RP_ID),
        rp_name=os.getenv("APP_NAME", "Passkeys Demo"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///db.sqlite3"),
        redis_url=os.getenv("REDIS_URL") or None,
        challenge_ttl=int(os.getenv("CHALLENGE_TTL_SECONDS", "300")),
        session_ttl=int(os.getenv("SESSION_TTL_SECONDS", "604800")),
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME", "passkey_session"),
        sign_count_policy=policy,
    )


@lru_cache
def get_settings() -> Settings:
    """Cached Settings for the running process."""
    return settings_from_env()
