from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FormatLabel = Literal["WAV", "MP3", "FLAC", "AAC", "OGG"]


class ConversionSettings(BaseModel):
    """Per-batch target parameters. Only the WAV encoder is implemented; other labels are cosmetic."""
    model_config = ConfigDict(frozen=True)

    format_label: FormatLabel = "WAV"
    sample_rate: Literal[44100, 48000] = 44100
    bit_depth: Literal[16, 24] = 16
    channel_mode: Literal["mono", "stereo"] = "stereo"

    @property
    def channel_count(self) -> int:
        return 1 if self.channel_mode == "mono" else 2


class ProbeOut(BaseModel):
    size_bytes: int
    format_label: str
    duration_s: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    bitrate_kbps: Optional[int] = None


class ResultOut(BaseModel):
    output_name: str
    duration_s: float
    byte_size: int
    format: str
    sample_rate: int
    bit_depth: int
    channel_mode: str
    trim_start: Optional[float] = None
    trim_end: Optional[float] = None
    original_duration_s: Optional[float] = None


class TrackOut(BaseModel):
    id: str
    display_name: str
    source_name: str
    source_size: int
    content_type: str
    status: Literal["waiting", "processing", "done", "error"]
    progress: int
    trim_start: Optional[float] = None
    trim_end: Optional[float] = None
    probe: Optional[ProbeOut] = None
    result: Optional[ResultOut] = None
    error: Optional[str] = None
    diagnostics: List[str] = []
    created_at: datetime


class TrackUpdateIn(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    trim_start: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    trim_end: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)


class SubmitResponse(BaseModel):
    tracks: List[TrackOut]
    rejected: List[str] = []


class WaveformOut(BaseModel):
    track_id: str
    buckets: int
    peaks: Optional[List[float]] = None


class BatchStateOut(BaseModel):
    running: bool
    state: Literal["idle", "running", "finished", "stopped"]
    run_id: Optional[str] = None
    settings: Optional[ConversionSettings] = None
    completed: List[str] = []
    failed: List[str] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
