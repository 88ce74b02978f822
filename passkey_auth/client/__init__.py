"""
Client-side session agent and API client
"""

from .agent import ClientSessionAgent, SessionEvent
from .api import AuthClient, Authenticator

__all__ = ["AuthClient", "Authenticator", "ClientSessionAgent", "SessionEvent"]
