import logging
from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from database import get_analysis_for_track, get_render_job, queue_counts

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/status/queue")
def get_queue():
    """Job counts per kind and status."""
    return queue_counts()


@router.get("/status/analysis/{track_id}")
def get_analysis(track_id: str):
    job = get_analysis_for_track(track_id)
    if not job:
        raise HTTPException(404, "Analysis not found")
    return asdict(job)


@router.get("/status/render/{render_id}")
def get_render(render_id: str):
    job = get_render_job(render_id)
    if not job:
        raise HTTPException(404, "Render job not found")
    return asdict(job)
