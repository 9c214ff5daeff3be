from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashflow_bridge.core.clock import utc_now_iso
from cashflow_bridge.database import get_db

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/db", summary="Database readiness")
def database_readiness(db: Session = Depends(get_db)):
    """Readiness: the API can reach the database. Liveness is ``GET /health`` on the app root."""
    try:
        db.execute(text("select 1"))
    except SQLAlchemyError as exc:
        return {"status": "unavailable", "time": utc_now_iso(), "error": str(exc)}
    return {"status": "ok", "time": utc_now_iso()}
