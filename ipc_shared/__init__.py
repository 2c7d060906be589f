"""Shared utilities for the IPC control tower.

This package provides common utilities that can be used by all layers
without creating circular dependencies. It sits at L0 alongside
ipc_protocols.

Exports:
- Logging: Logger, configure_logging, create_logger, create_connection_logger
- Serialization: utc_now, utc_now_iso, serialize_datetime
- ID generation: TimestampIdGenerator, SequentialIdGenerator
"""

from ipc_shared.id_generator import (
    IdGenerator,
    SequentialIdGenerator,
    TimestampIdGenerator,
)
from ipc_shared.logging import (
    Logger,
    configure_logging,
    create_connection_logger,
    create_logger,
)
from ipc_shared.serialization import (
    serialize_datetime,
    utc_now,
    utc_now_iso,
)

__all__ = [
    # Logging
    "Logger",
    "configure_logging",
    "create_connection_logger",
    "create_logger",
    # Serialization
    "serialize_datetime",
    "utc_now",
    "utc_now_iso",
    # ID Generation
    "IdGenerator",
    "SequentialIdGenerator",
    "TimestampIdGenerator",
]
