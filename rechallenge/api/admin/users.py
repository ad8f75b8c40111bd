"""
Admin User Management API Endpoints.

Provides:
- Listing, approval, bulk approval and deletion of accounts
- Session interventions: progress reset and force-end
"""

import uuid
from typing import Any, Literal

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from rechallenge.core.dependencies import AdminUser, DbSession
from rechallenge.services import admin_service

router = APIRouter(tags=["Admin Users"])


# ============== Request Models ==============


class BulkApproveRequest(BaseModel):
    """Bulk approval request."""

    user_ids: list[uuid.UUID] = Field(..., alias="userIds")

    model_config = {"populate_by_name": True}


class ForceEndRequest(BaseModel):
    """Force-end request; the reason is written to the submission log."""

    reason: str = Field("ended by administrator", min_length=1, max_length=200)


# ============== Endpoints ==============


@router.get("/users")
async def list_users(
    admin: AdminUser,
    session: DbSession,
    status: Literal["approved", "pending"] | None = Query(None),
    search: str | None = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> dict[str, Any]:
    """List accounts with approval filter, search and pagination."""
    return await admin_service.list_users(session, status, search, page, limit)


@router.put("/users/bulk-approve")
async def bulk_approve(
    data: BulkApproveRequest,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, Any]:
    approved = await admin_service.bulk_approve(session, data.user_ids)
    return {"message": f"{approved} users approved", "approvedCount": approved}


@router.put("/users/{user_id}/approve")
async def approve_user(user_id: uuid.UUID, admin: AdminUser, session: DbSession) -> dict[str, Any]:
    user = await admin_service.approve_user(session, user_id)
    return {"message": "User approved successfully", "user": user.to_dict()}


@router.put("/users/{user_id}/disapprove")
async def disapprove_user(user_id: uuid.UUID, admin: AdminUser, session: DbSession) -> dict[str, Any]:
    """Revoke approval, ending any running session."""
    user = await admin_service.disapprove_user(session, user_id, admin)
    return {"message": "User disapproved successfully", "user": user.to_dict()}


@router.delete("/users/{user_id}")
async def delete_user(user_id: uuid.UUID, admin: AdminUser, session: DbSession) -> dict[str, str]:
    await admin_service.delete_user(session, user_id)
    return {"message": "User deleted successfully"}


@router.put("/users/{user_id}/reset")
async def reset_user(user_id: uuid.UUID, admin: AdminUser, session: DbSession) -> dict[str, Any]:
    """
    Reset a user's progress so they can start a fresh session.

    Works from any state; the reset count and time are kept for audit.
    """
    return await admin_service.reset_user(session, user_id, admin)


@router.put("/users/{user_id}/force-end")
async def force_end_user(
    user_id: uuid.UUID,
    data: ForceEndRequest,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, Any]:
    """End a running session immediately (409 if none is running)."""
    return await admin_service.force_end_user(session, user_id, admin, data.reason)
