"""
Username validation

Pure string predicates, applied before registration-begin touches any store.
"""

import re
from dataclasses import dataclass, field

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
CONSECUTIVE_SEPARATORS = re.compile(r"[_-]{2,}")
EDGE_SEPARATORS = re.compile(r"^[_-]|[_-]$")
ALL_DIGITS = re.compile(r"^[0-9]+$")

RESERVED_USERNAMES = frozenset(
    {
        "admin",
        "administrator",
        "root",
        "user",
        "test",
        "demo",
        "api",
        "www",
        "mail",
        "email",
        "support",
        "help",
        "info",
        "contact",
        "service",
        "system",
        "null",
        "undefined",
        "guest",
        "anonymous",
    }
)


@dataclass
class ValidationResult:
    """
    Outcome of a username check
    """

    valid: bool
    errors: list[str] = field(default_factory=list)


def normalize_username(username: str) -> str:
    """Storage and comparison form of a username."""
    return username.strip().lower()


def validate_username(username: str) -> ValidationResult:
    """
    Validate username format.

    Every failed rule contributes an error message; an empty or blank
    username short-circuits with a single error.
    """
    errors: list[str] = []

    if not username or not username.strip():
        return ValidationResult(valid=False, errors=["Username is required"])

    candidate = username.strip()

    if len(candidate) < USERNAME_MIN_LENGTH:
        errors.append(f"Username must be at least {USERNAME_MIN_LENGTH} characters long")

    if len(candidate) > USERNAME_MAX_LENGTH:
        errors.append(f"Username must be no more than {USERNAME_MAX_LENGTH} characters long")

    if not USERNAME_PATTERN.match(candidate):
        errors.append("Username can only contain letters, numbers, underscores, and hyphens")

    if candidate.lower() in RESERVED_USERNAMES:
        errors.append("This username is reserved and cannot be used")

    if CONSECUTIVE_SEPARATORS.search(candidate):
        errors.append("Username cannot contain consecutive underscores or hyphens")

    if EDGE_SEPARATORS.search(candidate):
        errors.append("Username cannot start or end with underscores or hyphens")

    if ALL_DIGITS.match(candidate):
        errors.append("Username cannot be only numbers")

    return ValidationResult(valid=not errors, errors=errors)
