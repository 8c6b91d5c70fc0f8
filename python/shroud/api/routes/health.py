"""Health check endpoints."""

from fastapi import APIRouter

from shroud.responses import success_response

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness check endpoint.

    Returns 200 if the process is running.
    Does not check the database or whether a graph snapshot is loaded.
    """
    return success_response({"status": "ok"})
