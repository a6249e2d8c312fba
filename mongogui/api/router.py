"""mongogui API Router - aggregates all API routes."""

from fastapi import APIRouter

from mongogui.api import connection, stats

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

api_router.include_router(connection.router)
api_router.include_router(stats.router)
