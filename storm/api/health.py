"""
Storm Health API

- GET /health: database reachability and registry totals
"""

from datetime import datetime
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storm.database import get_db
from storm.models import StormAccount, StormServer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class HealthSummary(BaseModel):
    status: str  # 'healthy' or 'degraded'
    database: str
    timestamp: str
    storm_servers: int
    storm_accounts: int


@router.get("", response_model=HealthSummary)
def get_health_summary(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        servers = int(db.scalar(select(func.count(StormServer.id))) or 0)
        accounts = int(db.scalar(select(func.count(StormAccount.id))) or 0)
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        return HealthSummary(
            status="degraded",
            database="unreachable",
            timestamp=datetime.utcnow().isoformat(),
            storm_servers=0,
            storm_accounts=0,
        )

    return HealthSummary(
        status="healthy" if servers > 0 else "degraded",
        database="ok",
        timestamp=datetime.utcnow().isoformat(),
        storm_servers=servers,
        storm_accounts=accounts,
    )
