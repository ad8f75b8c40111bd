"""
Challenge Configuration API Endpoints.

Provides:
- GET /api/admin/config: Current configuration with window timing
- PUT /api/admin/config: Partial update of the configuration singleton
"""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field, StrictBool, StrictInt, field_validator

from rechallenge.core.dependencies import AdminUser, DbSession
from rechallenge.services import admin_service

router = APIRouter(tags=["Admin Config"])


# ============== Request Models ==============


class ConfigUpdateRequest(BaseModel):
    """
    Partial configuration update.

    Range checks are done by the service so each failure carries its own
    error code.
    """

    total_time_limit_minutes: StrictInt | None = Field(None, alias="totalTimeLimit")
    max_levels: StrictInt | None = Field(None, alias="maxLevels")
    max_attempts: StrictInt | None = Field(None, alias="maxAttempts")
    challenge_active: StrictBool | None = Field(None, alias="challengeActive")
    registration_open: StrictBool | None = Field(None, alias="registrationOpen")
    allow_hints: StrictBool | None = Field(None, alias="allowHints")
    challenge_start_date: datetime | None = Field(None, alias="challengeStartDate")
    challenge_end_date: datetime | None = Field(None, alias="challengeEndDate")
    challenge_title: str | None = Field(None, alias="challengeTitle", min_length=1, max_length=100)
    challenge_description: str | None = Field(
        None, alias="challengeDescription", max_length=500
    )
    thank_you_message: str | None = Field(None, alias="thankYouMessage", max_length=500)

    model_config = {"populate_by_name": True}

    @field_validator("challenge_start_date", "challenge_end_date")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def updates(self) -> dict[str, Any]:
        """Fields the client actually sent; required columns cannot be nulled."""
        data = self.model_dump(exclude_unset=True)
        nullable = {"challenge_start_date", "challenge_end_date"}
        return {k: v for k, v in data.items() if v is not None or k in nullable}


# ============== Endpoints ==============


@router.get("/config")
async def get_config(admin: AdminUser, session: DbSession) -> dict[str, Any]:
    return {"config": await admin_service.get_config(session)}


@router.put("/config")
async def update_config(
    data: ConfigUpdateRequest,
    admin: AdminUser,
    session: DbSession,
) -> dict[str, Any]:
    """
    Update the challenge configuration.

    A changed time limit applies to sessions started afterwards only.
    """
    config = await admin_service.update_config(session, data.updates(), admin)
    return {"message": "Configuration updated successfully", "config": config}
