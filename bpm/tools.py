import logging
import os
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from errors import JobTimeout, ToolFailure

logger = logging.getLogger(__name__)

FFMPEG_BIN = os.environ.get("FFMPEG_BIN", "ffmpeg")
AUBIO_BIN = os.environ.get("AUBIO_BIN", "aubio")

SAMPLE_RATE = 44100
# Keep the end of the tool's output; the stored error message is capped anyway
OUTPUT_TAIL_CHARS = 400

# Storage transfers and in-process analysis run here so a job can stop waiting on them
_bounded_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bpm-bounded")


class Deadline:
    """Elapsed-time budget for one job, shared by every step that job runs."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def check(self, stage: str) -> float:
        """Return the remaining budget, or raise JobTimeout if none is left."""
        left = self.remaining()
        if left <= 0:
            raise JobTimeout(f"timed out after {self.seconds:g}s before {stage}")
        return left

    def call(self, stage: str, fn, *args):
        """Run fn(*args), giving up with JobTimeout once the budget is spent.

        A call that overruns keeps going in the background, but the job no
        longer waits for it and its result is discarded.
        """
        left = self.check(stage)
        future = _bounded_executor.submit(fn, *args)
        try:
            return future.result(timeout=left)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"Abandoning {stage} after the {self.seconds:g}s budget ran out")
            raise JobTimeout(f"timed out after {self.seconds:g}s during {stage}") from None


class ToolRunner:
    """Runs external command-line tools. Tests swap in a double with the same run()."""

    def run(self, name: str, args: list[str], timeout: float) -> str:
        cmd = [name, *args]
        logger.debug(f"Running {' '.join(cmd)} (timeout {timeout:.0f}s)")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            # subprocess.run kills the child before re-raising
            raise JobTimeout(f"{name} timed out after {timeout:.0f}s") from None
        except OSError as e:
            raise ToolFailure(name, f"could not start: {e}") from e

        if result.returncode != 0:
            output = result.stderr or result.stdout
            raise ToolFailure(name, f"exited with status {result.returncode}", output[-OUTPUT_TAIL_CHARS:])
        return result.stdout


def normalize_audio(
    runner: ToolRunner,
    source_path: str,
    output_path: str,
    deadline: Deadline,
    start_s: Optional[float] = None,
    duration_s: Optional[float] = None,
) -> None:
    """Transcode to a mono 44.1 kHz WAV, optionally cutting an excerpt."""
    args = ["-y"]
    if start_s is not None:
        args += ["-ss", f"{start_s:g}"]
    if duration_s is not None:
        args += ["-t", f"{duration_s:g}"]
    args += ["-i", source_path, "-ac", "1", "-ar", str(SAMPLE_RATE), output_path]

    logger.info(f"Normalizing {source_path} -> {output_path}")
    runner.run(FFMPEG_BIN, args, timeout=deadline.check("ffmpeg normalize"))
