"""Action vocabulary and wire payload models.

Everything a client may send over a connection is validated here, once,
at the boundary. The kernel receives typed values afterwards and never
re-parses raw payloads.

Inbound envelope:  {"type": <event>, "payload": {...}}
Outbound envelope: {"event": <event>, "payload": {...}}
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionType(str, Enum):
    """Kinds of action a role may request."""
    SOLICITUD = "solicitud"
    ACTUALIZACION = "actualización"
    CONSULTA = "consulta"
    REPORTE = "reporte"
    INTERRUMPIR = "interrumpir"


class ProcessType(str, Enum):
    """Kinds of simulated process a role may run."""
    CALCULATION = "calculation"
    DATABASE = "database"
    FILE_OPERATION = "file_operation"
    NETWORK = "network"
    ANALYSIS = "analysis"


ACTION_TYPES = frozenset(a.value for a in ActionType)
PROCESS_TYPES = frozenset(p.value for p in ProcessType)


class EventName(str, Enum):
    """Event names used on the connection."""
    AUTH = "auth"
    AUTH_RESPONSE = "auth_response"
    ACCION = "accion"
    ACCION_RESPUESTA = "accion_respuesta"
    INTERRUMPIR = "interrumpir"
    INTERRUPCION_RESPUESTA = "interrupcion_respuesta"
    ERROR = "error"


# =============================================================================
# INBOUND PAYLOADS
# =============================================================================

class AuthRequest(BaseModel):
    """Payload of the ``auth`` event."""

    role: str = Field(min_length=1)
    token: str = Field(min_length=1)


class ActionRequest(BaseModel):
    """Payload of the ``accion`` event."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    process_type: str = Field(alias="processType")
    priority: int = Field(ge=1, le=5)
    data: Dict[str, Any]

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in ACTION_TYPES:
            raise ValueError(f"unknown action type: {v}")
        return v

    @field_validator("process_type")
    @classmethod
    def validate_process_type(cls, v: str) -> str:
        if v not in PROCESS_TYPES:
            raise ValueError(f"unknown process type: {v}")
        return v


class InterruptRequest(BaseModel):
    """Payload of the ``interrumpir`` event."""

    model_config = ConfigDict(populate_by_name=True)

    process_id: str = Field(alias="processId", min_length=1)


# =============================================================================
# OUTBOUND PAYLOADS
# =============================================================================

class ResponsePayload(BaseModel):
    """Response body shared by every ``*_respuesta`` / ``*_response`` event."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    mensaje: Optional[str] = None
    process_id: Optional[str] = Field(default=None, alias="processId")
    resultado: Optional[Dict[str, Any]] = None
    permissions: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with wire aliases, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def success(cls, **kwargs: Any) -> "ResponsePayload":
        return cls(status="success", **kwargs)

    @classmethod
    def failure(cls, mensaje: str, **kwargs: Any) -> "ResponsePayload":
        return cls(status="error", mensaje=mensaje, **kwargs)
