"""
WebAuthn verification adapter

Thin wrapper over py_webauthn. Cryptographic verification is trusted to
the library; this module only converts ceremony payloads into its
dataclasses and its outcomes into ours.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel
from webauthn import verify_authentication_response, verify_registration_response
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticationCredential,
    AuthenticatorAssertionResponse,
    AuthenticatorAttachment,
    AuthenticatorAttestationResponse,
    AuthenticatorTransport,
    PublicKeyCredentialType,
    RegistrationCredential,
)

from .errors import VerificationFailed
from .helpers import base64url_to_bytes, bytes_to_base64url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of a verified attestation."""

    verified: bool
    credential_id: str
    public_key: bytes
    sign_count: int


@dataclass(frozen=True)
class AuthenticationResult:
    """Outcome of a verified assertion."""

    verified: bool
    new_counter: int


def _as_dict(credential: Union[BaseModel, dict]) -> dict:
    if isinstance(credential, BaseModel):
        return credential.model_dump()
    return credential


def _attachment(value: Optional[str]) -> Optional[AuthenticatorAttachment]:
    # Map authenticatorAttachment -> authenticator_attachment enum if present
    if value == "platform":
        return AuthenticatorAttachment.PLATFORM
    if value == "cross-platform":
        return AuthenticatorAttachment.CROSS_PLATFORM
    return None


def _transports(values: Optional[list]) -> Optional[list[AuthenticatorTransport]]:
    if not values:
        return None
    known = {transport.value for transport in AuthenticatorTransport}
    return [AuthenticatorTransport(value) for value in values if value in known]


def to_registration_credential(credential: Union[BaseModel, dict]) -> RegistrationCredential:
    """
    Convert a registration ceremony result into a py_webauthn dataclass.
    """
    credential = _as_dict(credential)
    resp_dict = credential["response"]
    attestation_response = AuthenticatorAttestationResponse(
        client_data_json=base64url_to_bytes(resp_dict["clientDataJSON"]),
        attestation_object=base64url_to_bytes(resp_dict["attestationObject"]),
        transports=_transports(resp_dict.get("transports")),
    )
    return RegistrationCredential(
        id=credential["id"],
        raw_id=base64url_to_bytes(credential["rawId"]),
        response=attestation_response,
        authenticator_attachment=_attachment(credential.get("authenticatorAttachment")),
        type=PublicKeyCredentialType.PUBLIC_KEY,
    )


def to_authentication_credential(credential: Union[BaseModel, dict]) -> AuthenticationCredential:
    """
    Convert an authentication ceremony result into a py_webauthn dataclass.
    """
    credential = _as_dict(credential)
    resp_dict = credential["response"]
    assertion_response = AuthenticatorAssertionResponse(
        client_data_json=base64url_to_bytes(resp_dict["clientDataJSON"]),
        authenticator_data=base64url_to_bytes(resp_dict["authenticatorData"]),
        signature=base64url_to_bytes(resp_dict["signature"]),
        user_handle=(
            base64url_to_bytes(resp_dict["userHandle"]) if resp_dict.get("userHandle") else None
        ),
    )
    return AuthenticationCredential(
        id=credential["id"],
        raw_id=base64url_to_bytes(credential["rawId"]),
        response=assertion_response,
        authenticator_attachment=_attachment(credential.get("authenticatorAttachment")),
        type=PublicKeyCredentialType.PUBLIC_KEY,
    )


def client_data_challenge(client_data_json: str) -> Optional[bytes]:
    """
    Extract the challenge embedded in a base64url clientDataJSON payload.

    Returns None when the payload cannot be decoded.
    """
    try:
        client_data: Any = json.loads(base64url_to_bytes(client_data_json).decode("utf-8"))
        return base64url_to_bytes(client_data["challenge"])
    except (ValueError, KeyError, TypeError, UnicodeDecodeError):
        return None


class VerificationAdapter:
    """
    Verifies registration and authentication ceremony results with py_webauthn
    """

    def __init__(self, require_user_verification: bool = True):
        self.require_user_verification = require_user_verification

    def verify_registration(
        self,
        response: Union[BaseModel, dict],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationResult:
        """
        Raises:
            VerificationFailed
        """
        try:
            verification = verify_registration_response(
                credential=to_registration_credential(response),
                expected_challenge=expected_challenge,
                expected_rp_id=expected_rp_id,
                expected_origin=expected_origin,
                require_user_verification=self.require_user_verification,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as err:
            logger.warning("Passkey registration verification failed: %s", err)
            raise VerificationFailed(f"Registration verification failed: {err}") from err

        return RegistrationResult(
            verified=True,
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=verification.credential_public_key,
            sign_count=verification.sign_count,
        )

    def verify_authentication(
        self,
        response: Union[BaseModel, dict],
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        stored_public_key: bytes,
        stored_counter: int,
    ) -> AuthenticationResult:
        """
        Raises:
            VerificationFailed
        """
        try:
            verification = verify_authentication_response(
                credential=to_authentication_credential(response),
                expected_challenge=expected_challenge,
                expected_rp_id=expected_rp_id,
                expected_origin=expected_origin,
                credential_public_key=stored_public_key,
                credential_current_sign_count=stored_counter,
                require_user_verification=self.require_user_verification,
            )
        except (WebAuthnException, ValueError, KeyError, TypeError) as err:
            logger.warning("Passkey authentication verification failed: %s", err)
            raise VerificationFailed(f"Authentication verification failed: {err}") from err

        if self.require_user_verification and not verification.user_verified:
            raise VerificationFailed("User verification failed")

        return AuthenticationResult(verified=True, new_counter=verification.new_sign_count)
