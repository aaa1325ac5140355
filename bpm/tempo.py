import logging
import math
import os

import librosa  # ty: ignore[unresolved-import]
import numpy as np

from errors import InsufficientBeats, ToolFailure
from models import TempoEstimate
from tools import AUBIO_BIN, Deadline, ToolRunner, normalize_audio

logger = logging.getLogger(__name__)

TEMPO_ESTIMATOR = os.environ.get("TEMPO_ESTIMATOR", "aubio")

# A representative window is enough; skip intros
EXCERPT_START_S = 45
EXCERPT_DURATION_S = 90

MIN_BEAT_EVENTS = 8
MIN_VALID_INTERVALS = 6
MIN_INTERVAL_S = 0.2  # 300 BPM
MAX_INTERVAL_S = 2.0  # 30 BPM

MIN_BPM = 60.0
MAX_BPM = 220.0
OUT_OF_RANGE_PENALTY = 50.0
OCTAVE_SNAP_THRESHOLD_BPM = 5.0
OCTAVE_SNAP_DISCOUNT = 0.75
CLAMP_THRESHOLD_BPM = 0.1
CLAMP_DISCOUNT = 0.7


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def parse_tempo_output(output: str) -> float:
    """Parse `aubio tempo` output such as "131.72 bpm"."""
    fields = output.strip().lower().replace("bpm", "").split()
    if not fields:
        raise ToolFailure("aubio tempo", "returned empty output")
    try:
        bpm = float(fields[0])
    except ValueError:
        raise ToolFailure("aubio tempo", f"could not parse tempo from {fields[0]!r}") from None
    if not math.isfinite(bpm) or bpm <= 0:
        raise ToolFailure("aubio tempo", f"reported unusable tempo {bpm}")
    return bpm


def parse_beat_output(output: str) -> list[float]:
    """Parse `aubio beat` output: one timestamp per line, extra columns ignored."""
    beats = []
    for line in output.splitlines():
        fields = line.split()
        if not fields:
            continue
        try:
            t = float(fields[0])
        except ValueError:
            continue
        if math.isfinite(t) and t >= 0:
            beats.append(t)
    return beats


def bpm_and_confidence(beats: list[float]) -> tuple[float, float]:
    """BPM from the median inter-beat interval; confidence from how tightly intervals cluster."""
    if len(beats) < MIN_BEAT_EVENTS:
        raise InsufficientBeats(
            f"not enough beat events detected to estimate BPM ({len(beats)} < {MIN_BEAT_EVENTS})"
        )

    intervals = np.diff(np.asarray(beats, dtype=float))
    # Gaps outside 30-300 BPM are detection noise
    intervals = intervals[(intervals > MIN_INTERVAL_S) & (intervals < MAX_INTERVAL_S)]
    if len(intervals) < MIN_VALID_INTERVALS:
        raise InsufficientBeats(
            f"not enough usable beat intervals to estimate BPM ({len(intervals)} < {MIN_VALID_INTERVALS})"
        )

    med = float(np.median(intervals))
    mad = float(np.median(np.abs(intervals - med)))
    return 60.0 / med, clamp(1.0 - mad / med, 0.0, 1.0)


def choose_best_tempo(beat_bpm: float, beat_confidence: float, tempo_bpm: float) -> tuple[float, float]:
    """Snap the beat-based BPM to half or double when that agrees better with the global estimate."""
    candidates = (beat_bpm, beat_bpm * 2.0, beat_bpm * 0.5)

    best = candidates[0]
    best_score = math.inf
    for candidate in candidates:
        score = abs(candidate - tempo_bpm)
        if candidate < MIN_BPM or candidate > MAX_BPM:
            score += OUT_OF_RANGE_PENALTY
        if score < best_score:
            best, best_score = candidate, score

    confidence = beat_confidence
    if abs(best - beat_bpm) > OCTAVE_SNAP_THRESHOLD_BPM:
        confidence *= OCTAVE_SNAP_DISCOUNT
    return best, clamp(confidence, 0.0, 1.0)


def clamp_tempo(bpm: float, confidence: float) -> tuple[float, float]:
    final = clamp(bpm, MIN_BPM, MAX_BPM)
    if abs(final - bpm) > CLAMP_THRESHOLD_BPM:
        confidence = clamp(confidence * CLAMP_DISCOUNT, 0.0, 1.0)
    return final, confidence


def resolve_tempo(beats: list[float], tempo_bpm: float) -> TempoEstimate:
    beat_bpm, beat_confidence = bpm_and_confidence(beats)
    chosen, confidence = choose_best_tempo(beat_bpm, beat_confidence, tempo_bpm)
    bpm, confidence = clamp_tempo(chosen, confidence)
    logger.info(
        f"Tempo: beats={beat_bpm:.2f} (conf {beat_confidence:.3f}) global={tempo_bpm:.2f} "
        f"-> {bpm:.2f} (conf {confidence:.3f})"
    )
    return TempoEstimate(bpm=bpm, confidence=confidence)


class AubioEstimator:
    """Global tempo and beat events from the aubio command-line tool."""

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def tempo(self, wav_path: str, deadline: Deadline) -> float:
        output = self.runner.run(AUBIO_BIN, ["tempo", "-i", wav_path], timeout=deadline.check("aubio tempo"))
        return parse_tempo_output(output)

    def beats(self, wav_path: str, deadline: Deadline) -> list[float]:
        output = self.runner.run(AUBIO_BIN, ["beat", "-i", wav_path], timeout=deadline.check("aubio beat"))
        return parse_beat_output(output)


class LibrosaEstimator:
    """In-process estimators for hosts without aubio.

    Each step runs through Deadline.call, so a job stops waiting once its
    budget is spent. The abandoned computation finishes in the background.
    """

    def __init__(self):
        # (path, (samples, sample_rate)) of the last file loaded
        self._loaded = None

    def _load(self, wav_path: str):
        loaded = self._loaded
        if loaded is None or loaded[0] != wav_path:
            loaded = (wav_path, librosa.load(wav_path, sr=None, mono=True))
            self._loaded = loaded
        return loaded[1]

    def tempo(self, wav_path: str, deadline: Deadline) -> float:
        return deadline.call("librosa tempo", self._tempo, wav_path)

    def beats(self, wav_path: str, deadline: Deadline) -> list[float]:
        return deadline.call("librosa beat", self._beats, wav_path)

    def _tempo(self, wav_path: str) -> float:
        y, sr = self._load(wav_path)
        onset_env = librosa.onset.onset_strength(y=y, sr=sr)
        tempo = librosa.feature.tempo(onset_envelope=onset_env, sr=sr)
        return float(np.atleast_1d(tempo)[0])

    def _beats(self, wav_path: str) -> list[float]:
        y, sr = self._load(wav_path)
        # Beat tracking on the percussive part is steadier
        _, y_percussive = librosa.effects.hpss(y)
        _, beat_frames = librosa.beat.beat_track(y=y_percussive, sr=sr)
        return [float(t) for t in librosa.frames_to_time(beat_frames, sr=sr)]


def get_estimator(runner: ToolRunner, name: str = ""):
    name = name or TEMPO_ESTIMATOR
    if name == "aubio":
        return AubioEstimator(runner)
    if name == "librosa":
        return LibrosaEstimator()
    raise ValueError(f"Unknown tempo estimator: {name}")


def analyze_track(source_path: str, workdir: str, runner: ToolRunner, estimator, deadline: Deadline) -> TempoEstimate:
    """Estimate BPM and confidence for an audio file."""
    working_wav = os.path.join(workdir, "working.wav")
    normalize_audio(
        runner,
        source_path,
        working_wav,
        deadline,
        start_s=EXCERPT_START_S,
        duration_s=EXCERPT_DURATION_S,
    )
    tempo_bpm = estimator.tempo(working_wav, deadline)
    beats = estimator.beats(working_wav, deadline)
    return resolve_tempo(beats, tempo_bpm)
