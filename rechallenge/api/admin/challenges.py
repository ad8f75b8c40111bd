"""
Admin Challenge Catalog API Endpoints.

CRUD for the ordered level catalog plus a participant-view preview.
"""

import uuid
from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, Field, StrictBool

from rechallenge.core.dependencies import AdminUser, DbSession
from rechallenge.services import admin_service

router = APIRouter(tags=["Admin Challenges"])

DIFFICULTY_PATTERN = r"^(Easy|Medium|Hard|Expert)$"


# ============== Request Models ==============


class ChallengeCreateRequest(BaseModel):
    """New catalog entry."""

    level: int = Field(..., ge=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    flag: str = Field(..., min_length=1, max_length=500)
    hint: str | None = None
    is_active: StrictBool = Field(True, alias="isActive")
    difficulty: str = Field("Medium", pattern=DIFFICULTY_PATTERN)
    category: str = Field("Web", min_length=1, max_length=50)
    points: int = Field(100, ge=0)

    model_config = {"populate_by_name": True}


class ChallengeUpdateRequest(BaseModel):
    """Partial update of a catalog entry."""

    level: int | None = Field(None, ge=1)
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, min_length=1)
    flag: str | None = Field(None, min_length=1, max_length=500)
    hint: str | None = None
    is_active: StrictBool | None = Field(None, alias="isActive")
    difficulty: str | None = Field(None, pattern=DIFFICULTY_PATTERN)
    category: str | None = Field(None, min_length=1, max_length=50)
    points: int | None = Field(None, ge=0)

    model_config = {"populate_by_name": True}

    def updates(self) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        return {k: v for k, v in data.items() if v is not None or k == "hint"}


# ============== Endpoints ==============


@router.get("/challenges")
async def list_challenges(admin: AdminUser, session: DbSession) -> dict[str, Any]:
    """All challenges (flags included), ordered by level."""
    challenges = await admin_service.list_challenges(session)
    return {"challenges": [c.to_dict() for c in challenges], "total": len(challenges)}


@router.post("/challenges", status_code=status.HTTP_201_CREATED)
async def create_challenge(
    data: ChallengeCreateRequest,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, Any]:
    challenge = await admin_service.create_challenge(session, data.model_dump())
    return {"message": "Challenge created successfully", "challenge": challenge.to_dict()}


@router.put("/challenges/{challenge_id}")
async def update_challenge(
    challenge_id: uuid.UUID,
    data: ChallengeUpdateRequest,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, Any]:
    challenge = await admin_service.update_challenge(session, challenge_id, data.updates())
    return {"message": "Challenge updated successfully", "challenge": challenge.to_dict()}


@router.delete("/challenges/{challenge_id}")
async def delete_challenge(
    challenge_id: uuid.UUID,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, str]:
    await admin_service.delete_challenge(session, challenge_id)
    return {"message": "Challenge deleted successfully"}


@router.get("/challenges/{challenge_id}/preview")
async def preview_challenge(
    challenge_id: uuid.UUID,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, Any]:
    """What participants see for this challenge, with the flag alongside."""
    return await admin_service.preview_challenge(session, challenge_id)
