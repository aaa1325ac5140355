import logging
import math
import os
import uuid
from typing import Optional

from errors import AnalysisNotReady, InvalidRatio
from tools import FFMPEG_BIN, Deadline, ToolRunner, normalize_audio

logger = logging.getLogger(__name__)

# ffmpeg's atempo filter only behaves within this range per application
MIN_STAGE_FACTOR = 0.5
MAX_STAGE_FACTOR = 2.0

OUTPUT_CONTENT_TYPE = "audio/mpeg"


def check_analysis_ready(status: str, bpm: Optional[float]) -> float:
    """Return the detected BPM, or raise AnalysisNotReady."""
    if status != "done" or bpm is None or not bpm > 0:
        raise AnalysisNotReady(f"analysis not ready (status={status} bpm={bpm})")
    return float(bpm)


def tempo_ratio(target_bpm: float, detected_bpm: float) -> float:
    ratio = target_bpm / detected_bpm
    if not ratio > 0 or math.isinf(ratio):
        raise InvalidRatio(f"invalid ratio: {ratio}")
    return ratio


def stretch_chain(ratio: float) -> list[float]:
    """Split ratio into factors within [0.5, 2.0] whose product is ratio, e.g. 5.0 -> [2.0, 2.0, 1.25]."""
    if not ratio > 0 or math.isinf(ratio):
        raise InvalidRatio(f"invalid ratio: {ratio}")

    factors = []
    remaining = ratio
    while remaining > MAX_STAGE_FACTOR:
        factors.append(MAX_STAGE_FACTOR)
        remaining /= MAX_STAGE_FACTOR
    while remaining < MIN_STAGE_FACTOR:
        factors.append(MIN_STAGE_FACTOR)
        remaining /= MIN_STAGE_FACTOR
    factors.append(remaining)
    return factors


def atempo_filter(chain: list[float]) -> str:
    return ",".join(f"atempo={factor:.6f}" for factor in chain)


def output_key_for(track_id: str) -> str:
    return f"renders/{track_id}/{uuid.uuid4()}.mp3"


def render_track(
    source_path: str,
    ratio: float,
    workdir: str,
    runner: ToolRunner,
    deadline: Deadline,
) -> tuple[str, list[float]]:
    """Time-stretch source_path by ratio, preserving pitch.

    Returns the path of the encoded MP3 inside workdir and the stage chain used.
    """
    chain = stretch_chain(ratio)

    working_wav = os.path.join(workdir, "working.wav")
    normalize_audio(runner, source_path, working_wav, deadline)

    output_path = os.path.join(workdir, "render.mp3")
    logger.info(f"Rendering ratio {ratio:.4f} as {len(chain)} stage(s): {chain}")
    runner.run(
        FFMPEG_BIN,
        [
            "-y",
            "-i", working_wav,
            "-filter:a", atempo_filter(chain),
            "-codec:a", "libmp3lame",
            "-q:a", "2",
            output_path,
        ],
        timeout=deadline.check("ffmpeg render"),
    )
    return output_path, chain
