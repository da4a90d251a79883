from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..limiter import limiter

router = APIRouter(tags=["health"])
logger = logging.getLogger("credits.health")


@router.get("/health")
@limiter.limit("60/minute")
def health(request: Request, db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unavailable: %s", exc)
        database_ok = False
    return {
        "ok": database_ok,
        "database": "ok" if database_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
