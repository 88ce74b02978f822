"""
Passkey Sessions Errors

Every rejection carries a stable ``kind`` and the ``action`` a client
should take next: restart the ceremony, register instead, or retry later.
"""

from typing import Optional


class AuthError(Exception):
    """
    Base class for all rejections raised by the orchestrator and stores.
    """

    kind = "AuthError"
    status_code = 400
    action = "restart"
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_detail(self) -> dict:
        """
        Serialisable rejection body
        """
        return {"kind": self.kind, "msg": self.message, "action": self.action}


class InvalidUsername(AuthError):
    """Raised when a username fails format validation."""

    kind = "InvalidUsername"
    status_code = 422
    action = "none"
    default_message = "Invalid username"

    def __init__(self, errors: list[str]):
        super().__init__(f"Invalid username: {'; '.join(errors)}")
        self.errors = errors

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["errors"] = self.errors
        return detail


class UsernameTaken(AuthError):
    """Raised when a username already owns a credential for this relying party."""

    kind = "UsernameTaken"
    status_code = 409
    action = "none"
    default_message = "Username already exists"


class InvalidOrExpiredChallenge(AuthError):
    """Raised when a challenge token is absent, expired, consumed or mismatched."""

    kind = "InvalidOrExpiredChallenge"
    default_message = "Invalid or expired challenge"


class StorageUnavailable(AuthError):
    """Raised when a backing store cannot be reached. Retryable."""

    kind = "StorageUnavailable"
    status_code = 503
    action = "retry"
    default_message = "Service temporarily unavailable, please try again"


class VerificationFailed(AuthError):
    """Raised when the WebAuthn verification rejects a ceremony result."""

    kind = "VerificationFailed"
    default_message = "Passkey verification failed"


class CredentialNotFound(AuthError):
    """Raised when an assertion names a credential that was never registered."""

    kind = "CredentialNotFound"
    status_code = 404
    action = "register"
    default_message = "Credential not found"


class UserCancelled(AuthError):
    """Raised on the client when the user dismisses the local ceremony."""

    kind = "UserCancelled"
    action = "restart"
    default_message = "The passkey ceremony was cancelled"


class DuplicateCredential(AuthError):
    """
    Raised by the registry when a credential id is already stored.

    The orchestrator recovers this into a successful response.
    """

    kind = "DuplicateCredential"
    action = "none"
    default_message = "Passkey already registered"

    def __init__(self, credential_id: str, user_id: Optional[int] = None):
        super().__init__(f"Credential '{credential_id}' is already registered")
        self.credential_id = credential_id
        self.user_id = user_id


class UnknownUser(AuthError):
    """Raised when a referenced user does not exist."""

    kind = "UnknownUser"
    status_code = 404
    action = "register"
    default_message = "User not found"


class NotAuthenticated(AuthError):
    """Raised when a privileged operation has no valid session."""

    kind = "NotAuthenticated"
    status_code = 401
    action = "restart"
    default_message = "Not authenticated"


ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        UsernameTaken,
        InvalidOrExpiredChallenge,
        StorageUnavailable,
        VerificationFailed,
        CredentialNotFound,
        UserCancelled,
        UnknownUser,
        NotAuthenticated,
    )
}


def error_from_detail(detail: dict) -> AuthError:
    """
    Rebuild an AuthError from a serialised rejection body.
    """
    kind = detail.get("kind")
    message = detail.get("msg")
    if kind == InvalidUsername.kind:
        return InvalidUsername(detail.get("errors") or [message or "Invalid username"])
    if kind == DuplicateCredential.kind:
        return DuplicateCredential(detail.get("credentialId", ""))
    cls = ERRORS_BY_KIND.get(kind, AuthError)
    return cls(message)
