"""
Passkey ceremony orchestration

Each registration and authentication attempt moves through

    Idle -> ChallengeIssued -> ChallengeConsumed -> Verified -> SessionIssued
                            \\-> Rejected | Expired

Every rejection is terminal for the attempt: a client recovers by calling
begin again, never by replaying complete with the same challenge token.
Within an attempt, consume happens before verify, verify before any
registry write, and registry writes before the session is issued.

The orchestrator owns no state of its own. Blocking registry and
verification calls run in the threadpool so one request never stalls
the event loop.
"""

import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Optional

from starlette.concurrency import run_in_threadpool
from webauthn import generate_authentication_options, generate_registration_options
from webauthn.helpers import options_to_json
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .config import Settings, get_settings
from .db import create_key_value_store
from .db.base import KeyValueStore
from .db.challenges import ChallengeKind, ChallengeStore
from .db.db_alchemy import CredentialRegistry, StoredCredential
from .db.sessions import SessionRecord, SessionStore
from .errors import (
    CredentialNotFound,
    DuplicateCredential,
    InvalidOrExpiredChallenge,
    InvalidUsername,
    NotAuthenticated,
    UnknownUser,
    VerificationFailed,
)
from .helpers import Clock, base64url_to_bytes, to_timestamp, utcnow
from .schema.login import LoginCredential
from .schema.register import RegisterCredential
from .schema.session import (
    CredentialList,
    CredentialSummary,
    LogoutResponse,
    Profile,
    ProfileSession,
    ProfileUser,
    SessionStatus,
    UsernameCheckResponse,
)
from .validation import normalize_username, validate_username
from .verification import VerificationAdapter, client_data_challenge

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]
ALREADY_REGISTERED_MESSAGE = "Passkey already registered."
SIGN_IN_MESSAGE = "Passkey already registered. Sign in with it to continue."
REGISTERED_MESSAGE = "Passkey registered successfully."


@dataclass(frozen=True)
class BeginResult:
    """Ceremony options and the token addressing their challenge."""

    options: dict
    challenge_token: str
    expires_at: datetime


@dataclass(frozen=True)
class RegistrationOutcome:
    """
    Result of registration-complete.

    ``session`` is None when the credential was already registered and
    the attempt did not prove possession of its key; the client must then
    authenticate to obtain a session.
    """

    verified: bool
    credential_id: str
    username: str
    session: Optional[SessionRecord]
    already_registered: bool = False

    @property
    def message(self) -> str:
        if not self.already_registered:
            return REGISTERED_MESSAGE
        return ALREADY_REGISTERED_MESSAGE if self.session is not None else SIGN_IN_MESSAGE


@dataclass(frozen=True)
class AuthenticationOutcome:
    verified: bool
    credential_id: str
    username: str
    session: SessionRecord


class SessionResolver:
    """
    Resolves a request's session from its transport credentials.

    Strategies run in a fixed order, cookie first and bearer token second,
    and the first that yields a valid session wins. Both produce the same
    SessionRecord, so callers never branch on which transport carried it.
    """

    def __init__(self, sessions: SessionStore):
        self.sessions = sessions

    async def resolve(
        self, cookie: Optional[str] = None, bearer: Optional[str] = None
    ) -> Optional[SessionRecord]:
        strategies = (
            ("cookie", self.sessions.validate_cookie, cookie),
            ("bearer", self.sessions.validate, bearer),
        )
        for name, strategy, credential in strategies:
            if not credential:
                continue
            record = await strategy(credential)
            if record is not None:
                logger.debug("Session resolved via %s for %s", name, record.username)
                return record
        return None


def session_status(record: Optional[SessionRecord]) -> SessionStatus:
    """
    Public view of a session
    """
    if record is None:
        return SessionStatus(authenticated=False)
    return SessionStatus(
        authenticated=True,
        userId=record.user_id,
        username=record.username,
        sessionId=record.session_id,
        loginTime=to_timestamp(record.created_at),
        expiresAt=to_timestamp(record.expires_at),
    )


class AuthOrchestrator:
    """
    Sequences registration, authentication and session operations

    Arguments:
        challenges: ChallengeStore
        sessions: SessionStore
        registry: CredentialRegistry
        verifier: VerificationAdapter
        settings: Settings supplying origin, RP-ID and policies
        clock: Source of the current time
    """

    def __init__(
        self,
        challenges: ChallengeStore,
        sessions: SessionStore,
        registry: CredentialRegistry,
        verifier: VerificationAdapter,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.challenges = challenges
        self.sessions = sessions
        self.registry = registry
        self.verifier = verifier
        self.settings = settings
        self.clock = clock
        self.resolver = SessionResolver(sessions)

    # --- Registration ---

    async def begin_registration(self, username: str) -> BeginResult:
        """
        Registration-begin: validate, find or create the user, and issue a
        challenge bound to that user.

        Raises:
            InvalidUsername, StorageUnavailable
        """
        validation = validate_username(username)
        if not validation.valid:
            raise InvalidUsername(validation.errors)

        user = await run_in_threadpool(self.registry.find_or_create_user, username)
        excluded = await run_in_threadpool(self.registry.excluded_credentials_for, user.id)
        challenge = await self.challenges.mint(ChallengeKind.REGISTRATION, user_id=user.id)

        options = generate_registration_options(
            rp_id=self.settings.rp_id,
            rp_name=self.settings.rp_name,
            user_id=str(user.id).encode("utf-8"),
            user_name=user.username,
            user_display_name=user.username,
            challenge=challenge.challenge,
            timeout=self.challenges.ttl * 1000,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(credential_id))
                for credential_id in excluded
            ],
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )

        logger.info("Registration challenge issued for %s", user.username)
        return BeginResult(
            options=json.loads(options_to_json(options)),
            challenge_token=challenge.token,
            expires_at=challenge.expires_at,
        )

    async def complete_registration(
        self, username: str, credential: RegisterCredential, challenge_token: str
    ) -> RegistrationOutcome:
        """
        Registration-complete.

        A credential id that is already stored, whether seen before
        verification or lost in a race at insert time, completes as
        "already registered" rather than failing. Only a verified
        attestation carrying the stored public key is issued a session;
        credential ids are public, so a bare id proves nothing.

        Raises:
            InvalidOrExpiredChallenge, UnknownUser, VerificationFailed,
            UsernameTaken, StorageUnavailable
        """
        challenge = await self.challenges.consume(challenge_token, ChallengeKind.REGISTRATION)
        if challenge is None:
            raise InvalidOrExpiredChallenge()

        user = await run_in_threadpool(self.registry.get_user, username)
        if user is None:
            raise UnknownUser()
        if challenge.user_id is not None and challenge.user_id != user.id:
            logger.warning("Registration challenge for user %s presented for %s", challenge.user_id, user.username)
            raise InvalidOrExpiredChallenge("Challenge does not match user")

        existing = await run_in_threadpool(self.registry.lookup, credential.id, credential.rawId)
        if existing is not None:
            return await self._already_registered(existing, user.id)

        result = await run_in_threadpool(
            self.verifier.verify_registration,
            credential,
            challenge.challenge,
            self.settings.origin,
            self.settings.rp_id,
        )
        if not result.verified:
            raise VerificationFailed("Registration verification failed")

        # A concurrent completion may have inserted the credential meanwhile
        existing = await run_in_threadpool(self.registry.lookup_by_credential_id, result.credential_id)
        if existing is not None:
            return await self._already_registered(existing, user.id, result.public_key)

        try:
            await run_in_threadpool(
                self.registry.save,
                result.credential_id,
                user.id,
                result.public_key,
                self.settings.rp_id,
                result.sign_count,
            )
        except DuplicateCredential as duplicate:
            existing = await run_in_threadpool(self.registry.lookup_by_credential_id, duplicate.credential_id)
            return await self._already_registered(existing, user.id, result.public_key)

        session = await self.sessions.create(user.id, user.username)
        logger.info("Registration complete for %s", user.username)
        return RegistrationOutcome(
            verified=True,
            credential_id=result.credential_id,
            username=user.username,
            session=session,
        )

    async def _already_registered(
        self,
        existing: StoredCredential,
        user_id: int,
        attested_public_key: Optional[bytes] = None,
    ) -> RegistrationOutcome:
        if existing.user_id != user_id:
            raise VerificationFailed("This passkey is already registered to another account")
        logger.info("Credential %s... already registered for %s", existing.id[:12], existing.username)
        session = None
        if attested_public_key is not None and hmac.compare_digest(attested_public_key, existing.public_key):
            session = await self.sessions.create(existing.user_id, existing.username)
        return RegistrationOutcome(
            verified=True,
            credential_id=existing.id,
            username=existing.username,
            session=session,
            already_registered=True,
        )

    # --- Authentication ---

    async def begin_authentication(self) -> BeginResult:
        """
        Authentication-begin for discoverable credentials: no allow list,
        user verification required.

        Raises:
            StorageUnavailable
        """
        challenge = await self.challenges.mint(ChallengeKind.AUTHENTICATION)
        options = generate_authentication_options(
            rp_id=self.settings.rp_id,
            challenge=challenge.challenge,
            timeout=self.challenges.ttl * 1000,
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return BeginResult(
            options=json.loads(options_to_json(options)),
            challenge_token=challenge.token,
            expires_at=challenge.expires_at,
        )

    async def complete_authentication(
        self, credential: LoginCredential, challenge_token: str
    ) -> AuthenticationOutcome:
        """
        Authentication-complete.

        The caller's token addresses the stored challenge; the challenge
        embedded in clientDataJSON must then equal it.

        Raises:
            CredentialNotFound, InvalidOrExpiredChallenge, VerificationFailed,
            StorageUnavailable
        """
        stored = await run_in_threadpool(self.registry.lookup, credential.id, credential.rawId)
        if stored is None:
            logger.info("Authentication with unknown credential %s...", credential.id[:12])
            raise CredentialNotFound()

        embedded = client_data_challenge(credential.response.clientDataJSON)
        challenge = await self.challenges.consume(challenge_token, ChallengeKind.AUTHENTICATION)
        if challenge is None:
            raise InvalidOrExpiredChallenge()
        if embedded is None or not hmac.compare_digest(embedded, challenge.challenge):
            logger.warning("Embedded challenge mismatch for %s", stored.username)
            raise InvalidOrExpiredChallenge()

        result = await run_in_threadpool(
            self.verifier.verify_authentication,
            credential,
            challenge.challenge,
            self.settings.origin,
            stored.rp_id,
            stored.public_key,
            stored.sign_count,
        )
        if not result.verified:
            raise VerificationFailed("Authentication verification failed")

        self._check_counter(stored, result.new_counter)
        await run_in_threadpool(self.registry.update_counter, stored.id, result.new_counter)

        session = await self.sessions.create(stored.user_id, stored.username)
        logger.info("Authentication complete for %s", stored.username)
        return AuthenticationOutcome(
            verified=True,
            credential_id=stored.id,
            username=stored.username,
            session=session,
        )

    def _check_counter(self, stored: StoredCredential, new_counter: int) -> None:
        # Authenticators without a counter report 0 forever
        if new_counter == 0 and stored.sign_count == 0:
            return
        if new_counter > stored.sign_count:
            return
        if self.settings.sign_count_policy == "reject":
            logger.warning(
                "Rejecting credential %s... for %s: counter %s did not exceed %s",
                stored.id[:12],
                stored.username,
                new_counter,
                stored.sign_count,
            )
            raise VerificationFailed("Signature counter did not increase")
        logger.warning(
            "Possible cloned authenticator: credential %s... for %s reported counter %s after %s",
            stored.id[:12],
            stored.username,
            new_counter,
            stored.sign_count,
        )

    # --- Sessions ---

    async def status(self, cookie: Optional[str] = None, bearer: Optional[str] = None) -> SessionStatus:
        return session_status(await self.resolver.resolve(cookie, bearer))

    async def refresh(self, cookie: Optional[str] = None, bearer: Optional[str] = None) -> SessionRecord:
        """
        Explicit refresh: re-base the session's expiry on now.

        Raises:
            NotAuthenticated
        """
        record = await self.resolver.resolve(cookie, bearer)
        if record is not None:
            record = await self.sessions.refresh(record.token)
        if record is None:
            raise NotAuthenticated()
        return record

    async def logout(self, cookie: Optional[str] = None, bearer: Optional[str] = None) -> LogoutResponse:
        """
        Destroy whichever sessions the cookie and token address. Idempotent.
        """
        record = await self.resolver.resolve(cookie, bearer)
        destroyed = [
            await self.sessions.destroy_cookie(cookie),
            await self.sessions.destroy(bearer),
        ]
        if record is None:
            record = next((item for item in destroyed if item is not None), None)
        username = record.username if record is not None else "Unknown"
        logger.info("Logged out %s", username)
        return LogoutResponse(message="Logged out successfully", username=username)

    async def profile(self, cookie: Optional[str] = None, bearer: Optional[str] = None) -> Profile:
        """
        Raises:
            NotAuthenticated, UnknownUser
        """
        record = await self.resolver.resolve(cookie, bearer)
        if record is None:
            raise NotAuthenticated()
        user = await run_in_threadpool(self.registry.get_user_by_id, record.user_id)
        if user is None:
            raise UnknownUser()
        return Profile(
            user=ProfileUser(id=user.id, username=user.username, createdAt=to_timestamp(user.created_at)),
            session=ProfileSession(
                sessionId=record.session_id,
                loginTime=to_timestamp(record.created_at),
                expiresAt=to_timestamp(record.expires_at),
            ),
        )

    async def check_username(self, username: str) -> UsernameCheckResponse:
        """
        A username is available when well formed and not yet bound to a
        credential for this relying party.
        """
        validation = validate_username(username)
        if not validation.valid:
            return UsernameCheckResponse(available=False, errors=validation.errors)
        user = await run_in_threadpool(self.registry.get_user, username)
        if user is not None and await run_in_threadpool(
            self.registry.has_credential_for, user.id, self.settings.rp_id
        ):
            return UsernameCheckResponse(available=False, errors=["Username is already taken"])
        return UsernameCheckResponse(available=True)

    async def list_credentials(
        self, username: str, cookie: Optional[str] = None, bearer: Optional[str] = None
    ) -> CredentialList:
        """
        Credentials owned by the authenticated user.

        Raises:
            NotAuthenticated, UnknownUser
        """
        record = await self.resolver.resolve(cookie, bearer)
        if record is None or record.username != normalize_username(username):
            raise NotAuthenticated()
        user = await run_in_threadpool(self.registry.get_user, username)
        if user is None:
            raise UnknownUser()
        credentials = await run_in_threadpool(self.registry.credentials_for, user.id)
        return CredentialList(
            credentials=[
                CredentialSummary(
                    id=credential.id,
                    rpId=credential.rp_id,
                    counter=credential.sign_count,
                    createdAt=to_timestamp(credential.created_at),
                    lastUsedAt=to_timestamp(credential.last_used_at) if credential.last_used_at else None,
                )
                for credential in credentials
            ]
        )

    # --- Lifecycle ---

    def _stores(self) -> list[KeyValueStore]:
        stores = [self.challenges.kv]
        if self.sessions.kv is not self.challenges.kv:
            stores.append(self.sessions.kv)
        return stores

    async def check_storage(self) -> None:
        """
        Reach every backing store.

        Raises:
            StorageUnavailable
        """
        for kv in self._stores():
            await kv.ping()
        await run_in_threadpool(self.registry.ping)

    async def close(self) -> None:
        """Release store connections and the registry's pool."""
        for kv in self._stores():
            await kv.close()
        await run_in_threadpool(self.registry.close)
        logger.info("Passkey stores closed")


def build_orchestrator(
    settings: Settings,
    clock: Clock = utcnow,
    kv: Optional[KeyValueStore] = None,
    verifier: Optional[VerificationAdapter] = None,
) -> AuthOrchestrator:
    """
    Wire stores, registry and verifier from settings
    """
    kv = kv if kv is not None else create_key_value_store(settings, clock)
    return AuthOrchestrator(
        challenges=ChallengeStore(kv, ttl=settings.challenge_ttl, clock=clock),
        sessions=SessionStore(kv, ttl=settings.session_ttl, clock=clock),
        registry=CredentialRegistry(settings.database_url, clock=clock),
        verifier=verifier if verifier is not None else VerificationAdapter(),
        settings=settings,
        clock=clock,
    )


@lru_cache
def get_orchestrator() -> AuthOrchestrator:
    """Process-wide orchestrator, used as a FastAPI dependency."""
    return build_orchestrator(get_settings())
