import logging
import os

from fastapi import APIRouter, Depends, Header, HTTPException

from database import enqueue_analysis, reclaim_stale_jobs
from errors import NotFound
from worker import STALE_RUNNING_MINUTES

logger = logging.getLogger(__name__)
router = APIRouter()

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")


def require_admin(x_admin_token: str = Header(None)):
    if not ADMIN_TOKEN:
        raise HTTPException(500, "ADMIN_TOKEN not configured")
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(403, "Invalid admin token")


@router.post("/admin/reclaim-stale")
def reclaim_stale(auth=Depends(require_admin)):
    """Requeue jobs stuck running after a worker crash."""
    reclaimed = reclaim_stale_jobs(STALE_RUNNING_MINUTES)
    return {"reclaimed": reclaimed}


@router.post("/admin/analysis/{track_id}/requeue")
def requeue_analysis(track_id: str, auth=Depends(require_admin)):
    """Failed jobs are never retried automatically; an operator re-enqueues them here."""
    try:
        analysis_id = enqueue_analysis(track_id)
    except NotFound:
        raise HTTPException(404, "Track not found")
    logger.info(f"Analysis for track {track_id} requeued as {analysis_id}")
    return {"ok": True, "analysis_id": analysis_id, "status": "queued"}
