from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sqlalchemy import text

from voyaj.database import get_db
from voyaj.scheduler import get_scheduler_status

router = APIRouter()


@router.get("/health")
async def health_check(request: Request, db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    engine = getattr(request.app.state, "engine", None)
    return {
        "status": "ok" if db_status == "healthy" else "degraded",
        "database": db_status,
        "sequencer": engine.sequencer.stats() if engine else None,
        "scheduler": get_scheduler_status(),
    }
