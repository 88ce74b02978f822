"""
Passkey Sessions

Server-mediated WebAuthn registration and authentication with single-use
challenges and TTL-bound sessions.
"""

__version__ = "0.3.0"
