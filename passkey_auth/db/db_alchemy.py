"""
Transactional credential registry using SQLAlchemy ORM

Uniqueness is enforced by the database, never by an in-process lock:
usernames are unique (stored lowercase), credential ids and raw ids are
unique, and a user owns at most one credential per relying party.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from pydantic import BaseModel, field_validator
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    case,
    create_engine,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import DuplicateCredential, StorageUnavailable, UsernameTaken
from ..helpers import Clock, base64url_to_bytes, normalize_base64url, utcnow
from ..validation import normalize_username

logger = logging.getLogger(__name__)

Base = declarative_base()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; every stored value is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class User(Base):
    """
    User table
    """

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("username = lower(username)", name="chk_username_lowercase"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Credential(Base):
    """
    Passkey credential table
    """

    __tablename__ = "passkey_credentials"
    __table_args__ = (UniqueConstraint("user_id", "rp_id", name="unique_user_rp"),)

    id = Column(String(1024), primary_key=True)
    raw_id = Column(LargeBinary, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    public_key = Column(LargeBinary, nullable=False)
    rp_id = Column(String(255), index=True, nullable=False)
    sign_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)


class CredentialValidator(BaseModel):
    """
    Validates a credential before it is written
    """

    credential_id: str
    user_id: int
    public_key: bytes
    rp_id: str
    sign_count: int = 0

    model_config = {"extra": "forbid"}

    @field_validator("credential_id", "rp_id")
    @classmethod
    def non_empty(cls, v):
        """
        Determines that credential_id and rp_id are not empty
        """
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v

    @field_validator("sign_count")
    @classmethod
    def non_negative(cls, v):
        """
        Determines that sign_count cannot be less than 0
        """
        if v < 0:
            raise ValueError("sign_count must be >= 0")
        return v


@dataclass(frozen=True)
class StoredUser:
    """A user row detached from its session."""

    id: int
    username: str
    created_at: datetime


@dataclass(frozen=True)
class StoredCredential:
    """A credential row joined with its owner's username."""

    id: str
    raw_id: bytes
    user_id: int
    username: str
    public_key: bytes
    rp_id: str
    sign_count: int
    created_at: datetime
    last_used_at: Optional[datetime]


def _user(row: User) -> StoredUser:
    return StoredUser(id=row.id, username=row.username, created_at=_aware(row.created_at))


def _credential(row: Credential, username: str) -> StoredCredential:
    return StoredCredential(
        id=row.id,
        raw_id=row.raw_id,
        user_id=row.user_id,
        username=username,
        public_key=row.public_key,
        rp_id=row.rp_id,
        sign_count=row.sign_count,
        created_at=_aware(row.created_at),
        last_used_at=_aware(row.last_used_at),
    )


def create_registry_engine(database_url: str):
    """
    Create an engine usable from the threadpool the async layer runs us on.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class CredentialRegistry:
    """
    Users and their passkey credentials

    Methods are synchronous; async callers run them in a worker thread.

    Arguments:
        database_url: SQLAlchemy Engine Creation String
        clock: Source of created_at / last_used_at timestamps
    """

    def __init__(self, database_url: str = "sqlite:///db.sqlite3", clock: Clock = utcnow):
        self.engine = create_registry_engine(database_url)
        self.session_local = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.clock = clock
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.session_local() as session:
                yield session
        except OperationalError as err:
            logger.error("Credential database unavailable: %s", err)
            raise StorageUnavailable() from err

    def ping(self) -> bool:
        with self._session() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()

    # --- Users ---

    def get_user(self, username: str) -> Optional[StoredUser]:
        """
        Case-insensitive user lookup
        """
        with self._session() as session:
            row = session.execute(
                select(User).where(User.username == normalize_username(username))
            ).scalar_one_or_none()
            return _user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> Optional[StoredUser]:
        with self._session() as session:
            row = session.get(User, user_id)
            return _user(row) if row is not None else None

    def find_or_create_user(self, username: str) -> StoredUser:
        """
        Return the user for a username, creating it on a miss.

        A concurrent creator winning the insert surfaces as an
        IntegrityError, after which the row is re-fetched.
        """
        normalized = normalize_username(username)
        existing = self.get_user(normalized)
        if existing is not None:
            return existing

        with self._session() as session:
            try:
                row = User(username=normalized, created_at=self.clock())
                session.add(row)
                session.commit()
                logger.info("Created user %s", normalized)
                return _user(row)
            except IntegrityError:
                session.rollback()
                logger.info("User %s created concurrently, re-fetching", normalized)

        existing = self.get_user(normalized)
        if existing is None:
            raise StorageUnavailable(f"User '{normalized}' vanished after a conflicting insert")
        return existing

    # --- Credentials ---

    def credentials_for(self, user_id: int) -> list[StoredCredential]:
        with self._session() as session:
            rows = session.execute(
                select(Credential, User.username)
                .join(User, Credential.user_id == User.id)
                .where(Credential.user_id == user_id)
                .order_by(Credential.created_at)
            ).all()
            return [_credential(row, username) for row, username in rows]

    def excluded_credentials_for(self, user_id: int) -> list[str]:
        """
        Credential ids a registration ceremony must exclude for this user
        """
        return [credential.id for credential in self.credentials_for(user_id)]

    def has_credential_for(self, user_id: int, rp_id: str) -> bool:
        with self._session() as session:
            count = session.execute(
                select(func.count())
                .select_from(Credential)
                .where(Credential.user_id == user_id, Credential.rp_id == rp_id)
            ).scalar_one()
            return count > 0

    def lookup_by_credential_id(self, credential_id: str) -> Optional[StoredCredential]:
        with self._session() as session:
            found = session.execute(
                select(Credential, User.username)
                .join(User, Credential.user_id == User.id)
                .where(Credential.id == credential_id)
            ).first()
            if found is None:
                return None
            row, username = found
            return _credential(row, username)

    def lookup(self, credential_id: str, raw_id: Optional[str] = None) -> Optional[StoredCredential]:
        """
        Resolve a ceremony's credential: primary id first, then the
        normalised base64url form of its raw id.
        """
        if credential_id:
            found = self.lookup_by_credential_id(credential_id)
            if found is not None:
                return found
        if raw_id:
            try:
                normalized = normalize_base64url(raw_id)
            except ValueError:
                return None
            if normalized != credential_id:
                return self.lookup_by_credential_id(normalized)
        return None

    def save(
        self,
        credential_id: str,
        user_id: int,
        public_key: bytes,
        rp_id: str,
        sign_count: int = 0,
    ) -> StoredCredential:
        """
        Insert a credential.

        Raises:
            DuplicateCredential: the credential id is already stored
            UsernameTaken: the user already owns another credential for rp_id
        """
        model = CredentialValidator(
            credential_id=credential_id,
            user_id=user_id,
            public_key=public_key,
            rp_id=rp_id,
            sign_count=sign_count,
        )
        now = self.clock()

        with self._session() as session:
            try:
                row = Credential(
                    id=model.credential_id,
                    raw_id=base64url_to_bytes(model.credential_id),
                    user_id=model.user_id,
                    public_key=model.public_key,
                    rp_id=model.rp_id,
                    sign_count=model.sign_count,
                    created_at=now,
                    last_used_at=now,
                )
                session.add(row)
                session.commit()
            except IntegrityError as err:
                session.rollback()
                conflict = err
            else:
                owner = session.get(User, user_id)
                logger.info("Saved credential %s... for user %s", credential_id[:12], owner.username)
                return _credential(row, owner.username)

        existing = self.lookup_by_credential_id(credential_id)
        if existing is not None:
            raise DuplicateCredential(credential_id, existing.user_id) from conflict
        raise UsernameTaken("This account already has a passkey for this site") from conflict

    def update_counter(self, credential_id: str, new_counter: int) -> None:
        """
        Record a successful authentication. The stored counter never decreases.
        """
        with self._session() as session:
            session.execute(
                update(Credential)
                .where(Credential.id == credential_id)
                .values(
                    sign_count=case(
                        (Credential.sign_count < new_counter, new_counter),
                        else_=Credential.sign_count,
                    ),
                    last_used_at=self.clock(),
                )
            )
            session.commit()
