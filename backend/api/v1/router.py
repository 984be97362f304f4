"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import (
    health,
    workflows,
    approvals,
    assignment_rules,
)

api_v1_router = APIRouter()

# Health (no auth required)
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Templates and instances
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Approval gate
api_v1_router.include_router(
    approvals.router,
    prefix="/workflows",
    tags=["Approvals"],
)

# Assignment rules
api_v1_router.include_router(
    assignment_rules.router,
    prefix="/workflows",
    tags=["Assignment"],
)
