from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from proxyshop.core.config import settings
from proxyshop.db.session import get_db
from proxyshop.services.circuit_breaker import breaker_states


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness check - always returns 200 if app is running."""
    return {"status": "ok"}


def _check_database(db: Session) -> str:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return f"error: {e.__class__.__name__}"
    return "ok"


def _check_redis() -> str:
    try:
        redis.Redis.from_url(settings.redis_url, decode_responses=True).ping()
    except redis.RedisError as e:
        return f"error: {e.__class__.__name__}"
    return "ok"


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """
    Readiness check: 503 unless the database (ledger, claims) and Redis
    (deposit tokens, idempotency keys) both answer. Open provider circuits
    are reported but do not fail the check; purchases abort cleanly then.
    """
    checks = {"database": _check_database(db), "redis": _check_redis()}
    ready = all(v == "ok" for v in checks.values())
    if not ready:
        response.status_code = 503
    return {
        "status": "ready" if ready else "not_ready",
        "checks": checks,
        "circuit_breakers": breaker_states(),
    }
