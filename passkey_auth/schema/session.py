"""
Passkey Sessions API

Session, profile and credential listing models
"""

from typing import Optional

from pydantic import BaseModel, Field


class SessionStatus(BaseModel):
    """
    Session status, re-validated on every call
    """

    authenticated: bool
    userId: Optional[int] = None
    username: Optional[str] = None
    sessionId: Optional[str] = None
    loginTime: Optional[str] = None
    expiresAt: Optional[str] = None


class LogoutResponse(BaseModel):
    message: str = Field(examples=["Logged out successfully"])
    username: str = Field(examples=["alice_01"])


class ProfileUser(BaseModel):
    id: int
    username: str
    createdAt: str


class ProfileSession(BaseModel):
    sessionId: str
    loginTime: str
    expiresAt: str


class Profile(BaseModel):
    """
    Authenticated user's profile
    """

    user: ProfileUser
    session: ProfileSession


class UsernameCheckRequest(BaseModel):
    username: str


class UsernameCheckResponse(BaseModel):
    available: bool
    errors: list[str] = Field(default_factory=list)


class CredentialSummary(BaseModel):
    id: str
    rpId: str
    counter: int
    createdAt: str
    lastUsedAt: Optional[str] = None


class CredentialList(BaseModel):
    credentials: list[CredentialSummary]
