from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from convertix.core.errors import ResultReleasedError


class TrackStatus(str, enum.Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class SourceFile:
    """Input bytes as submitted, plus the client's name and MIME type hint."""
    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ProbeInfo:
    """Advisory metadata; every field may be None when probing could not tell."""
    size_bytes: int
    format_label: str
    duration_s: float | None = None
    sample_rate: int | None = None
    channels: int | None = None
    bitrate_kbps: int | None = None


@dataclass(frozen=True)
class FormatDescriptor:
    format_label: str
    sample_rate: int
    bit_depth: int
    channel_mode: str

    def describe(self) -> str:
        khz = f"{self.sample_rate / 1000:g}"
        return f"{self.format_label} ({khz}kHz {self.bit_depth}bit {self.channel_mode})"


class ConversionResult:
    """
    Output of one successful conversion.

    The payload is owned by the result until release() is called; reading
    `data` afterwards raises ResultReleasedError.
    """

    def __init__(
        self,
        *,
        data: bytes | bytearray,
        output_name: str,
        duration_s: float,
        format: FormatDescriptor,
        trim_start: float | None = None,
        trim_end: float | None = None,
        original_duration_s: float | None = None,
        diagnostics: list[str] | None = None,
    ) -> None:
        self._data: bytes | bytearray | None = data
        self.output_name = output_name
        self.duration_s = duration_s
        self.byte_size = len(data)
        self.format = format
        self.trim_start = trim_start
        self.trim_end = trim_end
        self.original_duration_s = original_duration_s
        self.diagnostics = list(diagnostics or [])

    @property
    def data(self) -> bytes | bytearray:
        if self._data is None:
            raise ResultReleasedError(f"result payload for {self.output_name} was released")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def trimmed(self) -> bool:
        return self.trim_start is not None and self.trim_end is not None

    def release(self) -> bool:
        """Drop the payload. Returns False if it was already released."""
        if self._data is None:
            return False
        self._data = None
        return True


def output_name_for(display_name: str, ext: str = "wav") -> str:
    stem = display_name.rsplit(".", 1)[0] if "." in display_name else display_name
    return f"{stem}.{ext}"


def _new_track_id() -> str:
    return uuid.uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Track:
    source: SourceFile
    display_name: str
    id: str = field(default_factory=_new_track_id)
    status: TrackStatus = TrackStatus.WAITING
    progress: int = 0
    probe: ProbeInfo | None = None
    trim_start: float | None = None
    trim_end: float | None = None
    result: ConversionResult | None = None
    error: str | None = None
    diagnostics: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)

    def requested_trim(self) -> tuple[float, float] | None:
        """Trim bounds to apply, or None for the full source."""
        if self.trim_start is None or self.trim_end is None:
            return None
        duration = self.probe.duration_s if self.probe else None
        if duration is not None and self.trim_start <= 0 and self.trim_end >= duration:
            return None
        return (self.trim_start, self.trim_end)
