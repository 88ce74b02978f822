"""
Passkey Sessions API

Pydantic Models for Login
"""

from json import loads
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class LoginCredentialResponse(BaseModel):
    """
    Login Credential Response
    """

    clientDataJSON: str
    authenticatorData: str
    signature: str
    userHandle: Optional[str] = None


class LoginCredential(BaseModel):
    """
    Authentication ceremony result, as produced by navigator.credentials.get()
    """

    ceremony: Literal["authentication"] = "authentication"
    id: str = Field(min_length=1)
    rawId: str = Field(min_length=1)
    response: LoginCredentialResponse
    authenticatorAttachment: Optional[str] = None
    clientExtensionResults: dict = Field(default_factory=dict, examples=[{}])
    type: Literal["public-key"] = "public-key"

    @field_validator("response", mode="before")
    @classmethod
    def transform(cls, raw: Any) -> Any:
        """
        Transforms response data into a LoginCredentialResponse instead of
        a string, which is likely from Javascript input.
        """
        if isinstance(raw, str):
            return loads(raw)
        if isinstance(raw, (dict, LoginCredentialResponse)):
            return raw
        raise ValueError("response value must be of type str or dict")


class LoginRequest(BaseModel):
    """
    Login Request Model

    Arguments:
        credential: LoginCredential Model
        challengeToken: Opaque token returned by authentication-begin
    """

    credential: LoginCredential
    challengeToken: str

    @field_validator("credential", mode="before")
    @classmethod
    def transform(cls, raw: Any) -> Any:
        """
        Transforms credential data into a LoginCredential model instead of
        a string, which is likely from Javascript input.
        """
        if isinstance(raw, str):
            return loads(raw)
        if isinstance(raw, (dict, LoginCredential)):
            return raw
        raise ValueError("credential value must be of type str or dict")


class LoginResponse(BaseModel):
    """
    Login complete response
    """

    verified: bool
    username: str
    sessionToken: str
    expiresAt: str
