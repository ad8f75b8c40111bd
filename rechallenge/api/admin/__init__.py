"""
Admin API Routes Package.

Aggregates all admin-related API endpoints:
- users: Account moderation and session interventions
- config: Challenge configuration singleton
- challenges: Level catalog management
- ops: Monitoring, statistics and export
"""

from fastapi import APIRouter

from rechallenge.api.admin import challenges, config, ops, users

# Create main admin router
admin_router = APIRouter(prefix="/admin")

# Include all admin sub-routers
admin_router.include_router(users.router)
admin_router.include_router(config.router)
admin_router.include_router(challenges.router)
admin_router.include_router(ops.router)

__all__ = ["admin_router"]
