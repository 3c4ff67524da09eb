import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.cron_jobs import run_receipts_sweep
from .responses import respond

logger = logging.getLogger(__name__)

router = APIRouter()


def _authorized(secret: Optional[str], authorization: Optional[str], x_cron_secret: Optional[str]) -> bool:
    if not secret:
        return False
    candidates = [x_cron_secret or ""]
    if authorization and authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())
    return any(hmac.compare_digest(candidate, secret) for candidate in candidates if candidate)


@router.get("/receipts-sweep")
def receipts_sweep(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Nightly receipts sweep; at most one successful run per London day"""
    settings = request.app.state.settings
    if not _authorized(settings.CRON_SECRET, authorization, x_cron_secret):
        logger.warning("Rejected unauthorized cron trigger")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    result = run_receipts_sweep(db, settings, request.app.state.classifier)
    if isinstance(result, dict) and not result.get("skipped"):
        request.app.state.summary_cache.invalidate()
    return respond(result)
