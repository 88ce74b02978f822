"""
Passkey Sessions API

Pydantic Models for User Registration
"""

from json import loads
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class RegisterCredentialResponse(BaseModel):
    """
    Registration Credential Response Model
    """

    clientDataJSON: str
    attestationObject: str
    authenticatorData: Optional[str] = None
    transports: list[str] = Field(default_factory=list)
    publicKey: Optional[str] = None
    publicKeyAlgorithm: Optional[int] = None


class RegisterCredential(BaseModel):
    """
    Registration ceremony result, as produced by navigator.credentials.create()
    """

    ceremony: Literal["registration"] = "registration"
    id: str = Field(min_length=1)
    rawId: str = Field(min_length=1)
    response: RegisterCredentialResponse
    authenticatorAttachment: Optional[str] = None
    clientExtensionResults: dict = Field(default_factory=dict)
    type: Literal["public-key"] = "public-key"

    @field_validator("response", mode="before")
    @classmethod
    def transform(cls, raw: Any) -> Any:
        """
        Transforms response data into a RegisterCredentialResponse instead of
        a string, which is likely from Javascript input.
        """
        if isinstance(raw, str):
            return loads(raw)
        if isinstance(raw, (dict, RegisterCredentialResponse)):
            return raw
        raise ValueError("response value must be of type str or dict")


class RegisterBeginRequest(BaseModel):
    """
    Registration begin request

    Arguments:
        username: Requested username, validated server side
    """

    username: str = Field(examples=["alice_01"])


class RegisterRequest(BaseModel):
    """
    Registration complete request

    Arguments:
        username: Username the challenge was issued for
        credential: RegisterCredential Model
        challengeToken: Opaque token returned by registration-begin
    """

    username: str = Field(examples=["alice_01"])
    credential: RegisterCredential
    challengeToken: str

    @field_validator("credential", mode="before")
    @classmethod
    def transform(cls, raw: Any) -> Any:
        """
        Transforms credential data into a RegisterCredential model instead of
        a string, which is likely from Javascript input.
        """
        if isinstance(raw, str):
            return loads(raw)
        if isinstance(raw, (dict, RegisterCredential)):
            return raw
        raise ValueError("credential value must be of type str or dict")


class RegisterResponse(BaseModel):
    """
    Registration complete response

    sessionToken and expiresAt are absent when an already registered
    passkey was presented without proof of its key.
    """

    verified: bool
    credentialId: str
    username: str
    sessionToken: Optional[str] = None
    expiresAt: Optional[str] = None
    alreadyRegistered: bool = False
    message: str = Field(examples=["Passkey registered successfully."])
