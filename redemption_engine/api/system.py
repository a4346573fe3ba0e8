"""
System Router - Health checks
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from redemption_engine.dependencies import get_db
from redemption_engine.errors import InfrastructureError
from redemption_engine.services.replay_store import replay_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Status of the relational store and the replay store."""
    database_status = "healthy"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        database_status = "unhealthy"

    redis_status = "healthy"
    try:
        replay_store.ping()
    except InfrastructureError as e:
        logger.error(f"Redis health check failed: {e}")
        redis_status = "unhealthy"

    healthy = database_status == "healthy" and redis_status == "healthy"
    return {
        "status": "healthy" if healthy else "degraded",
        "database": database_status,
        "redis": redis_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
