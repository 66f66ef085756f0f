"""
Health check endpoint.
"""
from fastapi import APIRouter

from mcpchat.services.streaming import coordinator, registry

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health() -> dict:
    return {
        "status": "ok",
        "stream_sessions": registry.session_count,
        "active_generations": coordinator.active_count,
    }
