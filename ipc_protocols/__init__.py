"""IPC Protocols Package - type contracts for all layers.

This package sits at L0. It provides:
    - protocols.py: LoggerProtocol, TokenVerifierProtocol
    - actions.py: action/process vocabularies and the wire payload models

Usage:
    from ipc_protocols import LoggerProtocol, ActionRequest, ProcessType
"""

from ipc_protocols.actions import (
    ACTION_TYPES,
    PROCESS_TYPES,
    ActionRequest,
    ActionType,
    AuthRequest,
    EventName,
    InterruptRequest,
    ProcessType,
    ResponsePayload,
)
from ipc_protocols.protocols import (
    LoggerProtocol,
    TokenClaims,
    TokenVerifierProtocol,
)

__all__ = [
    # Vocabulary
    "ACTION_TYPES",
    "PROCESS_TYPES",
    "ActionType",
    "ProcessType",
    "EventName",
    # Wire payloads
    "ActionRequest",
    "AuthRequest",
    "InterruptRequest",
    "ResponsePayload",
    # Protocols
    "LoggerProtocol",
    "TokenClaims",
    "TokenVerifierProtocol",
]
