from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AnalysisJob:
    id: str
    track_id: str
    status: str  # 'queued' | 'running' | 'done' | 'failed'
    bpm: Optional[float]
    confidence: Optional[float]
    error_message: Optional[str]
    created_at: Any
    started_at: Any
    finished_at: Any


@dataclass
class RenderJob:
    id: str
    track_id: str
    target_bpm: float
    tempo_ratio: float
    preserve_pitch: bool
    status: str  # 'queued' | 'running' | 'done' | 'failed'
    output_object_key: Optional[str]
    error_message: Optional[str]
    created_at: Any
    started_at: Any
    finished_at: Any


@dataclass
class ClaimedAnalysis:
    id: str
    track_id: str


@dataclass
class ClaimedRender:
    id: str
    track_id: str
    target_bpm: float
    preserve_pitch: bool


@dataclass
class TempoEstimate:
    bpm: float
    confidence: float


@dataclass
class RenderResult:
    tempo_ratio: float
    chain: list[float]
    output_key: str
