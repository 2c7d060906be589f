"""Authentication primitives."""

from ipc_avionics.security.tokens import TokenSigner

__all__ = ["TokenSigner"]
