"""
Shared pytest fixtures.

The verifier fixture stands in for py_webauthn: it trusts every ceremony
payload, so tests exercise the challenge/session lifecycle without real
authenticators. Payload builders embed the issued challenge in
clientDataJSON the way a browser would.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from passkey_auth.config import Settings
from passkey_auth.db.challenges import ChallengeStore
from passkey_auth.db.db_alchemy import CredentialRegistry
from passkey_auth.db.kv_dictionary import TTLDictionary
from passkey_auth.db.sessions import SessionStore
from passkey_auth.errors import VerificationFailed
from passkey_auth.helpers import bytes_to_base64url
from passkey_auth.orchestrator import AuthOrchestrator, get_orchestrator
from passkey_auth.schema.login import LoginCredential
from passkey_auth.schema.register import RegisterCredential
from passkey_auth.verification import AuthenticationResult, RegistrationResult
from sample import create_app

ORIGIN = "http://localhost:8000"
RP_ID = "localhost"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeVerifier:
    """
    Accepts any ceremony result unless told otherwise.

    Registration reports the credential's own id and, unless ``public_key``
    is set, a key derived from it; authentication reports ``next_counter``.
    """

    def __init__(self):
        self.accept = True
        self.next_counter = 1
        self.public_key = None
        self.registration_calls = 0
        self.authentication_calls = 0

    def verify_registration(self, response, expected_challenge, expected_origin, expected_rp_id):
        self.registration_calls += 1
        if not self.accept:
            raise VerificationFailed("Registration verification failed")
        return RegistrationResult(
            verified=True,
            credential_id=response.id,
            public_key=self.public_key or b"public-key:" + response.id.encode(),
            sign_count=0,
        )

    def verify_authentication(
        self,
        response,
        expected_challenge,
        expected_origin,
        expected_rp_id,
        stored_public_key,
        stored_counter,
    ):
        self.authentication_calls += 1
        if not self.accept:
            raise VerificationFailed("Authentication verification failed")
        return AuthenticationResult(verified=True, new_counter=self.next_counter)


def credential_id_for(name: str) -> str:
    return bytes_to_base64url(name.encode())


def client_data(kind: str, challenge: bytes) -> str:
    payload = {"type": kind, "challenge": bytes_to_base64url(challenge), "origin": ORIGIN}
    return bytes_to_base64url(json.dumps(payload).encode())


def registration_credential(credential_id: str, challenge: bytes = b"\x00" * 32) -> RegisterCredential:
    return RegisterCredential(
        id=credential_id,
        rawId=credential_id,
        response={
            "clientDataJSON": client_data("webauthn.create", challenge),
            "attestationObject": "o2NmbXRkbm9uZQ",
            "transports": ["internal"],
        },
        authenticatorAttachment="platform",
    )


def authentication_credential(
    credential_id: str, challenge: bytes, raw_id: Optional[str] = None
) -> LoginCredential:
    return LoginCredential(
        id=credential_id,
        rawId=raw_id or credential_id,
        response={
            "clientDataJSON": client_data("webauthn.get", challenge),
            "authenticatorData": "SZYN5YgOjGh0NBcPZHZgW4_krrmihjLHmVzzuoMdl2MFAAAAAQ",
            "signature": "MEUCIQ",
            "userHandle": "MQ",
        },
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def kv(clock) -> TTLDictionary:
    return TTLDictionary(clock=clock, warn=False)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        origin=ORIGIN,
        rp_id=RP_ID,
        rp_name="Passkeys Test",
        database_url=f"sqlite:///{tmp_path / 'registry.sqlite3'}",
    )


@pytest.fixture
def registry(settings, clock) -> CredentialRegistry:
    return CredentialRegistry(settings.database_url, clock=clock)


@pytest.fixture
def challenges(kv, clock) -> ChallengeStore:
    return ChallengeStore(kv, ttl=300, clock=clock)


@pytest.fixture
def sessions(kv, clock) -> SessionStore:
    return SessionStore(kv, ttl=7 * 24 * 60 * 60, clock=clock)


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def orchestrator(challenges, sessions, registry, verifier, settings, clock) -> AuthOrchestrator:
    return AuthOrchestrator(
        challenges=challenges,
        sessions=sessions,
        registry=registry,
        verifier=verifier,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def app(orchestrator):
    application = create_app()
    application.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return application


@pytest.fixture
def client(app) -> TestClient:
    with TestClient(app) as test_client:
        yield test_client
