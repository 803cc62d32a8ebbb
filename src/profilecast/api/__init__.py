"""API route aggregation.

All routers registered here get mounted in main.py. Profile paths are
served at the root (/profiles), not under a versioned prefix, because
clients address them by those exact paths.
"""

from fastapi import APIRouter

from profilecast.api.health import router as health_router
from profilecast.api.profiles import router as profiles_router

api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(profiles_router, tags=["profiles"])
