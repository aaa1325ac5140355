import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from database import (
    claim_next_analysis_job,
    claim_next_render_job,
    get_analysis_for_track,
    get_track_source,
    mark_analysis_done,
    mark_analysis_failed,
    mark_render_done,
    mark_render_failed,
    reclaim_stale_jobs,
)
from errors import ClaimError, NotFound
from models import ClaimedAnalysis, ClaimedRender, RenderResult, TempoEstimate
from render import OUTPUT_CONTENT_TYPE, check_analysis_ready, output_key_for, render_track, tempo_ratio
from storage import LocalStorage, R2Storage, get_storage
from tempo import AubioEstimator, LibrosaEstimator, analyze_track, get_estimator
from tools import Deadline, ToolRunner

logger = logging.getLogger(__name__)

# Render budget is roughly double analysis, reflecting relative cost
ANALYSIS_TIMEOUT_S = float(os.environ.get("ANALYSIS_TIMEOUT_S", "300"))
RENDER_TIMEOUT_S = float(os.environ.get("RENDER_TIMEOUT_S", "600"))
POLL_INTERVAL_S = float(os.environ.get("POLL_INTERVAL_S", "2"))
CLAIM_RETRY_S = float(os.environ.get("CLAIM_RETRY_S", "2"))
# Must stay above the largest job timeout so live jobs are never reclaimed
STALE_RUNNING_MINUTES = float(os.environ.get("STALE_RUNNING_MINUTES", "30"))
RECLAIM_EVERY_IDLE_POLLS = 30

_worker_thread: threading.Thread | None = None
_stop_event = threading.Event()


@dataclass
class Services:
    runner: ToolRunner
    storage: LocalStorage | R2Storage
    estimator: AubioEstimator | LibrosaEstimator


def default_services() -> Services:
    runner = ToolRunner()
    return Services(runner=runner, storage=get_storage(), estimator=get_estimator(runner))


def _source_suffix(key: str) -> str:
    return Path(key).suffix.lower() or ".audio"


def _error_text(e: Exception) -> str:
    return str(e) or type(e).__name__


def _run_analysis(job: ClaimedAnalysis, services: Services) -> TempoEstimate:
    deadline = Deadline(ANALYSIS_TIMEOUT_S)
    key = get_track_source(job.track_id)
    if key is None:
        raise NotFound(f"track {job.track_id} not found")

    with tempfile.TemporaryDirectory(prefix="bpmworker-") as workdir:
        source_path = os.path.join(workdir, "source" + _source_suffix(key))
        deadline.call("download", services.storage.download, key, source_path)
        estimate = analyze_track(source_path, workdir, services.runner, services.estimator, deadline)

    deadline.check("recording the result")
    return estimate


def process_analysis_job(job: ClaimedAnalysis, services: Services):
    """Run one claimed analysis job and record done or failed."""
    logger.info(f"Processing analysis job {job.id} for track {job.track_id}")
    try:
        estimate = _run_analysis(job, services)
    except Exception as e:
        logger.error(f"Analysis job {job.id} failed: {e}", exc_info=True)
        try:
            mark_analysis_failed(job.id, _error_text(e))
        except Exception as store_err:
            logger.error(f"Could not record failure of analysis job {job.id}: {store_err}")
        return

    if mark_analysis_done(job.id, estimate.bpm, estimate.confidence):
        logger.info(f"Analysis job {job.id} done: bpm={estimate.bpm:.2f} confidence={estimate.confidence:.3f}")
    else:
        logger.warning(f"Analysis job {job.id} is no longer running; result discarded")


def _run_render(job: ClaimedRender, services: Services) -> RenderResult:
    deadline = Deadline(RENDER_TIMEOUT_S)
    key = get_track_source(job.track_id)
    if key is None:
        raise NotFound(f"track {job.track_id} not found")

    analysis = get_analysis_for_track(job.track_id)
    if analysis is None:
        raise NotFound(f"missing analysis for track {job.track_id}")
    detected_bpm = check_analysis_ready(analysis.status, analysis.bpm)
    ratio = tempo_ratio(job.target_bpm, detected_bpm)
    if not job.preserve_pitch:
        logger.warning(f"Render job {job.id} asked for preserve_pitch=false; pitch is always preserved")

    with tempfile.TemporaryDirectory(prefix="bpmworker-") as workdir:
        source_path = os.path.join(workdir, "source" + _source_suffix(key))
        deadline.call("download", services.storage.download, key, source_path)

        output_path, chain = render_track(source_path, ratio, workdir, services.runner, deadline)

        output_key = output_key_for(job.track_id)
        deadline.call("upload", services.storage.upload, output_key, output_path, OUTPUT_CONTENT_TYPE)

    deadline.check("recording the result")
    return RenderResult(tempo_ratio=ratio, chain=chain, output_key=output_key)


def process_render_job(job: ClaimedRender, services: Services):
    """Run one claimed render job and record done or failed."""
    logger.info(
        f"Processing render job {job.id} for track {job.track_id} "
        f"target={job.target_bpm:.2f} preserve_pitch={job.preserve_pitch}"
    )
    try:
        result = _run_render(job, services)
    except Exception as e:
        logger.error(f"Render job {job.id} failed: {e}", exc_info=True)
        try:
            mark_render_failed(job.id, _error_text(e))
        except Exception as store_err:
            logger.error(f"Could not record failure of render job {job.id}: {store_err}")
        return

    if mark_render_done(job.id, result.tempo_ratio, result.output_key):
        logger.info(f"Render job {job.id} done: ratio={result.tempo_ratio:.4f} output={result.output_key}")
    else:
        logger.warning(f"Render job {job.id} is no longer running; output {result.output_key} discarded")


def poll_once(services: Services) -> bool:
    """Claim and run at most one job, analysis before render.

    Returns False when both queues were empty. Raises ClaimError when the store
    cannot be reached.
    """
    analysis = claim_next_analysis_job()
    if analysis:
        logger.info(f"Claimed analysis job {analysis.id} track={analysis.track_id}")
        process_analysis_job(analysis, services)
        return True

    render = claim_next_render_job()
    if render:
        logger.info(f"Claimed render job {render.id} track={render.track_id}")
        process_render_job(render, services)
        return True

    return False


def reclaim_stale():
    try:
        reclaim_stale_jobs(STALE_RUNNING_MINUTES)
    except Exception as e:
        logger.error(f"Stale job reclaim failed: {e}")


def _worker_loop(services: Services):
    """Background worker: poll for queued jobs and process them one at a time."""
    logger.info("Worker thread started")
    reclaim_stale()
    idle_polls = 0
    while not _stop_event.is_set():
        try:
            worked = poll_once(services)
        except ClaimError as e:
            logger.error(f"Claim failed, retrying in {CLAIM_RETRY_S:g}s: {e}")
            _stop_event.wait(timeout=CLAIM_RETRY_S)
            continue
        except Exception as e:
            logger.error(f"Worker loop error: {e}", exc_info=True)
            _stop_event.wait(timeout=CLAIM_RETRY_S)
            continue

        if worked:
            idle_polls = 0
            continue

        idle_polls += 1
        if idle_polls % RECLAIM_EVERY_IDLE_POLLS == 0:
            reclaim_stale()
        # No queued jobs; wait before polling again
        _stop_event.wait(timeout=POLL_INTERVAL_S)

    logger.info("Worker thread stopped")


def start_worker(services: Services | None = None):
    global _worker_thread
    _stop_event.clear()
    _worker_thread = threading.Thread(
        target=_worker_loop,
        args=(services or default_services(),),
        daemon=True,
        name="bpm-worker",
    )
    _worker_thread.start()


def stop_worker():
    _stop_event.set()
    if _worker_thread:
        _worker_thread.join(timeout=30)
