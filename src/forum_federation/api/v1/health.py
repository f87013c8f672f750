from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from forum_federation.db import DatabaseSessionManager
from forum_federation.services import DeliveryQueue

router = APIRouter(prefix="/health", tags=["health"])


def get_db_manager(request: Request) -> DatabaseSessionManager:
    """Dependency to get the database manager from the FastAPI app state."""
    return request.app.state.db_manager


def get_delivery_queue(request: Request) -> DeliveryQueue:
    """Dependency to get the delivery queue from the FastAPI app state."""
    return request.app.state.delivery_queue


@router.get("/live")
async def liveness_check():
    """Liveness probe - indicates if the service is running."""
    return {"status": "alive", "service": "forum-federation"}


@router.get("/ready")
async def readiness_check(
    db_manager: DatabaseSessionManager = Depends(get_db_manager),
    queue: DeliveryQueue = Depends(get_delivery_queue),
):
    """Readiness probe - indicates if the service is ready to accept requests."""
    checks = {
        "database": False,
        "delivery_queue": queue.running,
    }

    try:
        with db_manager.session() as session:
            session.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database check failed: {str(e)}",
        )

    return {
        "status": "ready",
        "service": "forum-federation",
        "checks": checks,
        "queue": {"pending": queue.pending, "in_flight": queue.in_flight},
    }
