"""
Main API router that aggregates all endpoint routers.
"""

from fastapi import APIRouter

from harvester.api.endpoints import control

api_router = APIRouter()

api_router.include_router(
    control.router,
    tags=["Control"],
)
