"""Protocol definitions - interfaces for dependency injection.

These are typing.Protocol classes for static type checking. Concrete
implementations live in ipc_shared (logging) and ipc_avionics (metrics,
token verification). The kernel only ever depends on these interfaces.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


# =============================================================================
# LOGGING
# =============================================================================

@runtime_checkable
class LoggerProtocol(Protocol):
    """Structured logging interface."""

    def info(self, message: str, **kwargs: Any) -> None: ...
    def debug(self, message: str, **kwargs: Any) -> None: ...
    def warning(self, message: str, **kwargs: Any) -> None: ...
    def error(self, message: str, **kwargs: Any) -> None: ...
    def bind(self, **kwargs: Any) -> "LoggerProtocol": ...


# =============================================================================
# AUTHENTICATION
# =============================================================================

@dataclass(frozen=True)
class TokenClaims:
    """Claims carried by a verified session token."""
    role: str
    subject: str
    issued_at: int
    expires_at: int


@runtime_checkable
class TokenVerifierProtocol(Protocol):
    """Verifies bearer tokens presented in the ``auth`` event.

    Returns the decoded claims, or None for any invalid, expired or
    malformed token. Never raises for bad input.
    """

    def verify(self, token: str) -> Optional[TokenClaims]: ...
