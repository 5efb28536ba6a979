"""
Pydantic schemas for the Offline Sync API.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SubmitStatus(str, Enum):
    APPLIED = "applied"
    DELETED = "deleted"
    CONFLICT = "conflict"


# =============================================================================
# Authentication Schemas
# =============================================================================

class TokenPayload(BaseModel):
    """Schema for JWT token payload."""
    sub: str
    exp: datetime
    iat: datetime


# =============================================================================
# Sync Schemas
# =============================================================================

class OperationSubmit(BaseModel):
    """One queued client mutation."""
    operation_id: str = Field(..., min_length=1, max_length=64)
    kind: OperationKind
    entity_type: str = Field(..., min_length=1, max_length=100)
    entity_id: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    base_version: int = Field(..., ge=0, description="Server version the mutation was made against")
    origin_timestamp: int = Field(..., ge=0, description="Client logical timestamp in milliseconds")


class RecordOut(BaseModel):
    """Server copy of a record."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_type: str
    owner_id: str
    data: dict[str, Any]
    version: int
    updated_at: int


class SubmitResponse(BaseModel):
    """Result of reconciling one operation."""
    status: SubmitStatus
    record: Optional[RecordOut] = None
    replayed: bool = False


class PullResponse(BaseModel):
    """Changes visible to the caller since a checkpoint."""
    records: list[RecordOut]
    deleted_ids: list[str]
    checkpoint: int = Field(..., description="Pass as ``since`` on the next pull")


# =============================================================================
# Common Response Schemas
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    database: str = "connected"
