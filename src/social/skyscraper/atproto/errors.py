"""Error taxonomy for the authentication subsystem.

Every failure raised by the login, restore and storage paths derives from
AuthError so callers can report it with a single except clause.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for authentication failures."""


class KeyGenerationError(AuthError):
    """The DPoP signing key could not be generated."""


class DiscoveryError(AuthError):
    """Handle, DID or authorization server metadata could not be resolved."""


class AuthorizationError(AuthError):
    """The authorization request was rejected or returned a malformed response."""

    def __init__(self, message: str, error: Optional[str] = None) -> None:
        super().__init__(message)
        self.error = error


class CallbackBindError(AuthorizationError):
    """The loopback callback listener could not bind its address."""


class CallbackTimeout(AuthError):
    """No valid authorization redirect arrived before the deadline."""


class TokenExchangeError(AuthError):
    """The authorization code could not be exchanged for tokens."""


class AppPasswordError(AuthError):
    """An app password session could not be created."""


class SessionRefreshError(AuthError):
    """A stored session was rejected by the server."""


class SessionIOError(AuthError):
    """The session file could not be written or removed."""


class SessionCorrupt(AuthError):
    """The session file exists but does not contain a valid record."""


class LoginInProgress(AuthError):
    """Another authentication attempt is already running."""


class InvalidTransition(AuthError):
    """The orchestrator was asked to make a transition it does not allow."""
