from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from convertix.core.errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrimWindow:
    start_frame: int
    end_frame: int
    fell_back: bool = False
    diagnostic: str | None = None

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame

    def duration_s(self, sample_rate: int) -> float:
        return self.frame_count / float(sample_rate)


def compute_trim_window(
    length_frames: int,
    sample_rate: int,
    start_s: float | None = None,
    end_s: float | None = None,
) -> TrimWindow:
    """
    Map a [start_s, end_s) request onto decoded frame indices.

    A degenerate request (end at or before start after clamping) is not an
    error: the full buffer is used and a diagnostic is attached instead.
    """
    if length_frames <= 0 or sample_rate <= 0:
        raise DecodeError("decoded audio has zero length")

    if start_s is None or end_s is None:
        return TrimWindow(0, length_frames)

    start_frame = max(0, math.floor(start_s * sample_rate))
    end_frame = min(length_frames, math.floor(end_s * sample_rate))

    if start_frame >= end_frame:
        diagnostic = (
            f"trim range {start_s:.3f}s-{end_s:.3f}s is empty for a "
            f"{length_frames / sample_rate:.3f}s source; using full range"
        )
        logger.warning("Trim fallback: %s", diagnostic)
        return TrimWindow(0, length_frames, fell_back=True, diagnostic=diagnostic)

    return TrimWindow(start_frame, end_frame)
