"""
Sync routes for the Offline Sync API.

Handles operation submission from client operation logs and change pulls.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.core.reconciliation import fetch_changes, reconcile_operation
from api.core.security import CurrentOwner
from api.models.database import get_db
from api.models.schemas import (
    ErrorResponse,
    OperationSubmit,
    PullResponse,
    SubmitResponse,
)

router = APIRouter(prefix="/sync", tags=["Sync"])


# =============================================================================
# Submit Operation
# =============================================================================

@router.post(
    "/operations",
    response_model=SubmitResponse,
    responses={
        200: {"description": "Operation applied (or replayed)"},
        401: {"description": "Not authenticated", "model": ErrorResponse},
        403: {"description": "Record belongs to another owner", "model": ErrorResponse},
        404: {"description": "Update of a record that does not exist", "model": ErrorResponse},
        409: {"description": "Version conflict; body carries the current record", "model": SubmitResponse},
        422: {"description": "Invalid operation or reused operation id", "model": ErrorResponse},
    },
    summary="Submit one operation",
    description="Apply a queued client mutation under optimistic concurrency.",
)
async def submit_operation(
    op: OperationSubmit,
    owner_id: CurrentOwner,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Reconcile one operation.

    Retrying an operation id that was already applied returns the stored
    result with ``replayed`` set and never applies it twice.
    """
    outcome = await reconcile_operation(db, owner_id, op)

    if outcome.is_conflict:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=outcome.to_response().model_dump(mode="json"),
        )
    return outcome.to_response()


# =============================================================================
# Pull Changes
# =============================================================================

@router.get(
    "/pull",
    response_model=PullResponse,
    responses={
        200: {"description": "Changes since the checkpoint"},
        401: {"description": "Not authenticated", "model": ErrorResponse},
        403: {"description": "Pull for another owner", "model": ErrorResponse},
    },
    summary="Pull changes",
    description="Get the caller's records changed after a checkpoint and the ids deleted since.",
)
async def pull_changes(
    owner_id: CurrentOwner,
    db: Annotated[AsyncSession, Depends(get_db)],
    since: int | None = Query(None, ge=0, description="Checkpoint from the previous pull"),
    owner: str | None = Query(None, alias="owner_id", description="Must match the caller when given"),
) -> PullResponse:
    """Return records with ``updated_at > since`` (all when absent)."""
    if owner is not None and owner != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot pull records of another owner",
        )
    return await fetch_changes(db, owner_id, since)
