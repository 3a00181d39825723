from __future__ import annotations

import logging
import math
import mimetypes
from dataclasses import dataclass, field
from threading import RLock
from typing import Iterable

from convertix.core import settings
from convertix.core.errors import SubmissionRejected, TrackStateError
from convertix.models.track import ConversionResult, ProbeInfo, SourceFile, Track, TrackStatus

logger = logging.getLogger(__name__)

ELIGIBLE_STATUSES = (TrackStatus.WAITING, TrackStatus.ERROR)


@dataclass
class SubmissionReport:
    accepted: list[Track] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


def resolve_type_hint(name: str, content_type: str | None) -> str:
    if content_type and content_type != "application/octet-stream":
        return content_type
    guess, _ = mimetypes.guess_type(name)
    return guess or "application/octet-stream"


def validate_source(source: SourceFile, *, max_bytes: int) -> None:
    if source.size > max_bytes:
        raise SubmissionRejected(
            f"{source.name}: {source.size / (1024 * 1024):.1f} MB exceeds the "
            f"{max_bytes / (1024 * 1024):.0f} MB limit"
        )
    major = source.content_type.split("/", 1)[0].lower()
    if major not in ("audio", "video"):
        raise SubmissionRejected(f"{source.name}: {source.content_type} is not an audio or video file")


class TrackQueue:
    """
    The ordered track collection and the only place track state changes.

    Callers edit tracks (name, trim, removal) only while they are waiting;
    the batch runner moves them through processing -> done | error. At most
    one track is processing at any time.
    """

    def __init__(self, *, max_upload_bytes: int | None = None) -> None:
        self.max_upload_bytes = int(max_upload_bytes or settings.MAX_UPLOAD_BYTES)
        self._tracks: dict[str, Track] = {}
        self._lock = RLock()

    # ---------- caller API ----------

    def submit(self, sources: Iterable[SourceFile]) -> SubmissionReport:
        report = SubmissionReport()
        for source in sources:
            source = SourceFile(
                name=source.name,
                content_type=resolve_type_hint(source.name, source.content_type),
                data=source.data,
            )
            try:
                validate_source(source, max_bytes=self.max_upload_bytes)
            except SubmissionRejected as exc:
                report.rejected.append(str(exc))
                continue
            track = Track(source=source, display_name=source.name)
            with self._lock:
                self._tracks[track.id] = track
            report.accepted.append(track)

        if report.rejected:
            logger.info("Rejected %d of %d submitted files", len(report.rejected),
                        len(report.rejected) + len(report.accepted))
        return report

    def get(self, track_id: str) -> Track:
        with self._lock:
            track = self._tracks.get(track_id)
        if track is None:
            raise KeyError(track_id)
        return track

    def list_tracks(self) -> list[Track]:
        with self._lock:
            return list(self._tracks.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._tracks)

    def rename(self, track_id: str, display_name: str) -> Track:
        return self.edit(track_id, display_name=display_name)

    def set_trim(self, track_id: str, start_s: float, end_s: float) -> Track:
        return self.edit(track_id, trim=(start_s, end_s))

    def edit(
        self,
        track_id: str,
        *,
        display_name: str | None = None,
        trim: tuple[float, float] | None = None,
    ) -> Track:
        """Rename and/or re-trim a waiting track; nothing changes unless every value is valid."""
        name = None
        if display_name is not None:
            name = display_name.strip()
            if not name:
                raise ValueError("display name must not be empty")
        if trim is not None:
            for v in trim:
                if not math.isfinite(v) or v < 0:
                    raise ValueError(f"trim bounds must be finite and >= 0, got {v!r}")
        with self._lock:
            track = self._require(track_id, TrackStatus.WAITING, action="edit")
            if name is not None:
                track.display_name = name
            if trim is not None:
                track.trim_start, track.trim_end = float(trim[0]), float(trim[1])
            return track

    def apply_probe(self, track_id: str, probe: ProbeInfo) -> Track | None:
        """Attach probe data; seeds [0, duration] trim bounds if still unset. Ignores removed tracks."""
        with self._lock:
            track = self._tracks.get(track_id)
            if track is None:
                return None
            track.probe = probe
            if (
                track.status is TrackStatus.WAITING
                and probe.duration_s
                and track.trim_start is None
                and track.trim_end is None
            ):
                track.trim_start = 0.0
                track.trim_end = probe.duration_s
            return track

    def remove(self, track_id: str) -> Track:
        with self._lock:
            track = self.get(track_id)
            if track.status is TrackStatus.PROCESSING:
                raise TrackStateError(f"track {track_id} is processing and cannot be removed")
            del self._tracks[track_id]
            self._release(track)
            return track

    def clear(self) -> int:
        with self._lock:
            if any(t.status is TrackStatus.PROCESSING for t in self._tracks.values()):
                raise TrackStateError("cannot clear the queue while a track is processing")
            tracks = list(self._tracks.values())
            self._tracks.clear()
        for track in tracks:
            self._release(track)
        return len(tracks)

    # ---------- batch runner API ----------

    def eligible_ids(self) -> list[str]:
        with self._lock:
            return [t.id for t in self._tracks.values() if t.status in ELIGIBLE_STATUSES]

    def begin(self, track_id: str) -> Track:
        with self._lock:
            track = self.get(track_id)
            if track.status not in ELIGIBLE_STATUSES:
                raise TrackStateError(f"track {track_id} is {track.status.value}, expected waiting or error")
            busy = self.processing()
            if busy is not None:
                raise TrackStateError(f"track {busy.id} is already processing")
            track.status = TrackStatus.PROCESSING
            track.progress = 0
            track.error = None
            track.diagnostics = []
            self._release(track)
            track.result = None
            return track

    def processing(self) -> Track | None:
        with self._lock:
            return next((t for t in self._tracks.values() if t.status is TrackStatus.PROCESSING), None)

    def set_progress(self, track_id: str, progress: int) -> None:
        with self._lock:
            track = self._tracks.get(track_id)
            if track is not None and track.status is TrackStatus.PROCESSING:
                track.progress = max(track.progress, max(0, min(100, int(progress))))

    def complete(self, track_id: str, result: ConversionResult) -> Track:
        with self._lock:
            track = self._require(track_id, TrackStatus.PROCESSING, action="complete")
            track.status = TrackStatus.DONE
            track.progress = 100
            track.result = result
            track.diagnostics = list(result.diagnostics)
            return track

    def fail(self, track_id: str, error: str) -> Track:
        with self._lock:
            track = self._require(track_id, TrackStatus.PROCESSING, action="fail")
            track.status = TrackStatus.ERROR
            track.progress = 0
            track.error = error or "conversion failed"
            return track

    def return_to_waiting(self, track_id: str) -> Track:
        with self._lock:
            track = self._require(track_id, TrackStatus.PROCESSING, action="return to waiting")
            track.status = TrackStatus.WAITING
            track.progress = 0
            return track

    # ---------- internals ----------

    def _require(self, track_id: str, status: TrackStatus, *, action: str) -> Track:
        track = self.get(track_id)
        if track.status is not status:
            raise TrackStateError(
                f"cannot {action} track {track_id}: it is {track.status.value}, expected {status.value}"
            )
        return track

    def _release(self, track: Track) -> None:
        if track.result is not None and track.result.release():
            logger.debug("Released result payload of track %s", track.id)
