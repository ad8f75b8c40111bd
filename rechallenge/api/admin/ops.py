"""
Admin Operations API Endpoints.

Provides administrative read operations:
- Live monitoring of running sessions
- Participation statistics
- User export as JSON or CSV
"""

import logging
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Query, Response

from rechallenge.core.dependencies import AdminUser, DbSession
from rechallenge.services import admin_service

router = APIRouter(tags=["Admin Operations"])
logger = logging.getLogger(__name__)


@router.get("/monitoring")
async def get_monitoring(admin: AdminUser, session: DbSession) -> dict[str, Any]:
    """
    Running sessions ordered by time remaining, plus per-state counts.
    """
    return await admin_service.get_monitoring(session)


@router.get("/stats")
async def get_stats(admin: AdminUser, session: DbSession) -> dict[str, Any]:
    return await admin_service.get_stats(session)


@router.get("/export/users")
async def export_users(
    admin: AdminUser,
    session: DbSession,
    format: Literal["json", "csv"] = Query("json"),
) -> Any:
    """
    Export participants with their session data.

    CSV output is sent as an attachment.
    """
    rows = await admin_service.export_users(session)
    logger.info(f"Admin {admin.username} exported {len(rows)} users as {format}")

    if format == "csv":
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return Response(
            content=admin_service.rows_to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="users-{stamp}.csv"'},
        )

    return {"users": rows, "total": len(rows)}
