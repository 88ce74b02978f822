"""
Tests for VerificationAdapter.

py_webauthn itself is patched out; these tests cover payload conversion
and how library outcomes are mapped.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from webauthn.helpers.exceptions import InvalidAuthenticationResponse, InvalidRegistrationResponse
from webauthn.helpers.structs import AuthenticatorAttachment, AuthenticatorTransport

from conftest import ORIGIN, RP_ID, authentication_credential, credential_id_for, registration_credential
from passkey_auth.errors import VerificationFailed
from passkey_auth.helpers import bytes_to_base64url
from passkey_auth.verification import (
    VerificationAdapter,
    client_data_challenge,
    to_authentication_credential,
    to_registration_credential,
)

CHALLENGE = b"c" * 32


class TestConversion:
    def test_registration_credential(self):
        credential = to_registration_credential(registration_credential(credential_id_for("key"), CHALLENGE))

        assert credential.id == credential_id_for("key")
        assert credential.raw_id == b"key"
        assert credential.response.transports == [AuthenticatorTransport.INTERNAL]
        assert credential.authenticator_attachment == AuthenticatorAttachment.PLATFORM

    def test_registration_credential_drops_unknown_transports(self):
        payload = registration_credential(credential_id_for("key"), CHALLENGE).model_dump()
        payload["response"]["transports"] = ["internal", "carrier-pigeon"]

        credential = to_registration_credential(payload)

        assert credential.response.transports == [AuthenticatorTransport.INTERNAL]

    def test_authentication_credential(self):
        credential = to_authentication_credential(authentication_credential(credential_id_for("key"), CHALLENGE))

        assert credential.raw_id == b"key"
        assert credential.response.user_handle == b"1"
        assert credential.authenticator_attachment is None


class TestClientDataChallenge:
    def test_extracts_challenge(self):
        client_data = registration_credential(credential_id_for("key"), CHALLENGE).response.clientDataJSON

        assert client_data_challenge(client_data) == CHALLENGE

    @pytest.mark.parametrize(
        "payload",
        [
            bytes_to_base64url(b"not json"),
            bytes_to_base64url(json.dumps({"type": "webauthn.get"}).encode()),
            bytes_to_base64url(b"\xff\xfe"),
        ],
    )
    def test_undecodable_payload(self, payload):
        assert client_data_challenge(payload) is None


class TestVerifyRegistration:
    @patch("passkey_auth.verification.verify_registration_response")
    def test_success(self, mock_verify):
        mock_verify.return_value = MagicMock(
            credential_id=b"\x01\x02", credential_public_key=b"public-key", sign_count=0
        )

        result = VerificationAdapter().verify_registration(
            registration_credential(credential_id_for("key"), CHALLENGE), CHALLENGE, ORIGIN, RP_ID
        )

        assert result.verified
        assert result.credential_id == "AQI"
        assert result.public_key == b"public-key"
        kwargs = mock_verify.call_args.kwargs
        assert kwargs["expected_challenge"] == CHALLENGE
        assert kwargs["expected_origin"] == ORIGIN
        assert kwargs["expected_rp_id"] == RP_ID
        assert kwargs["require_user_verification"] is True

    @patch("passkey_auth.verification.verify_registration_response")
    def test_failure(self, mock_verify):
        mock_verify.side_effect = InvalidRegistrationResponse("bad attestation")

        with pytest.raises(VerificationFailed):
            VerificationAdapter().verify_registration(
                registration_credential(credential_id_for("key"), CHALLENGE), CHALLENGE, ORIGIN, RP_ID
            )


class TestVerifyAuthentication:
    def _verify(self, adapter=None):
        adapter = adapter or VerificationAdapter()
        return adapter.verify_authentication(
            authentication_credential(credential_id_for("key"), CHALLENGE),
            CHALLENGE,
            ORIGIN,
            RP_ID,
            b"public-key",
            4,
        )

    @patch("passkey_auth.verification.verify_authentication_response")
    def test_success(self, mock_verify):
        mock_verify.return_value = MagicMock(new_sign_count=7, user_verified=True)

        result = self._verify()

        assert result.new_counter == 7
        kwargs = mock_verify.call_args.kwargs
        assert kwargs["credential_public_key"] == b"public-key"
        assert kwargs["credential_current_sign_count"] == 4

    @patch("passkey_auth.verification.verify_authentication_response")
    def test_user_not_verified(self, mock_verify):
        mock_verify.return_value = MagicMock(new_sign_count=7, user_verified=False)

        with pytest.raises(VerificationFailed):
            self._verify()

    @patch("passkey_auth.verification.verify_authentication_response")
    def test_user_verification_optional(self, mock_verify):
        mock_verify.return_value = MagicMock(new_sign_count=7, user_verified=False)

        assert self._verify(VerificationAdapter(require_user_verification=False)).verified

    @patch("passkey_auth.verification.verify_authentication_response")
    def test_failure(self, mock_verify):
        mock_verify.side_effect = InvalidAuthenticationResponse("bad signature")

        with pytest.raises(VerificationFailed):
            self._verify()
