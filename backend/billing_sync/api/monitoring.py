"""Monitoring routes: Prometheus scrape and health probe"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from billing_sync.db.redis import get_redis_client
from billing_sync.db.session import get_db

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """503 only when the database is down; a cache outage is reported but tolerated"""
    checks = {"database": "ok", "cache": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check: database unavailable: {e}")
        checks["database"] = "unavailable"
    try:
        get_redis_client().ping()
    except Exception as e:
        logger.warning(f"Health check: cache unavailable: {e}")
        checks["cache"] = "unavailable"

    if checks["database"] != "ok":
        return JSONResponse(status_code=503, content={"status": "unhealthy", **checks})
    status = "healthy" if checks["cache"] == "ok" else "degraded"
    return {"status": status, **checks}
