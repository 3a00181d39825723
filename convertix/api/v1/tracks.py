from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from convertix.core.errors import ResultReleasedError, TrackStateError
from convertix.models.track import SourceFile, Track, TrackStatus
from convertix.runtime.workspace import Workspace, get_workspace
from convertix.schemas.conversion import (
    ProbeOut,
    ResultOut,
    SubmitResponse,
    TrackOut,
    TrackUpdateIn,
    WaveformOut,
)

router = APIRouter()

DOWNLOAD_CHUNK_BYTES = 1024 * 1024


def track_out(track: Track) -> TrackOut:
    probe = track.probe
    result = track.result
    return TrackOut(
        id=track.id,
        display_name=track.display_name,
        source_name=track.source.name,
        source_size=track.source.size,
        content_type=track.source.content_type,
        status=track.status.value,
        progress=track.progress,
        trim_start=track.trim_start,
        trim_end=track.trim_end,
        probe=ProbeOut(
            size_bytes=probe.size_bytes,
            format_label=probe.format_label,
            duration_s=probe.duration_s,
            sample_rate=probe.sample_rate,
            channels=probe.channels,
            bitrate_kbps=probe.bitrate_kbps,
        ) if probe else None,
        result=ResultOut(
            output_name=result.output_name,
            duration_s=result.duration_s,
            byte_size=result.byte_size,
            format=result.format.describe(),
            sample_rate=result.format.sample_rate,
            bit_depth=result.format.bit_depth,
            channel_mode=result.format.channel_mode,
            trim_start=result.trim_start,
            trim_end=result.trim_end,
            original_duration_s=result.original_duration_s,
        ) if result else None,
        error=track.error,
        diagnostics=list(track.diagnostics),
        created_at=track.created_at,
    )


def _get_track(ws: Workspace, track_id: str) -> Track:
    try:
        return ws.queue.get(track_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="track not found")


@router.post("", response_model=SubmitResponse)
async def submit_tracks(
    files: list[UploadFile] = File(...),
    ws: Workspace = Depends(get_workspace),
) -> SubmitResponse:
    sources: list[SourceFile] = []
    for up in files:
        data = await up.read()
        sources.append(SourceFile(
            name=up.filename or "untitled",
            content_type=up.content_type or "application/octet-stream",
            data=data,
        ))

    report = ws.queue.submit(sources)
    for track in report.accepted:
        ws.schedule_probe(track.id)
    return SubmitResponse(tracks=[track_out(t) for t in report.accepted], rejected=report.rejected)


@router.get("", response_model=list[TrackOut])
async def list_tracks(ws: Workspace = Depends(get_workspace)) -> list[TrackOut]:
    return [track_out(t) for t in ws.queue.list_tracks()]


@router.delete("")
async def clear_tracks(ws: Workspace = Depends(get_workspace)) -> dict:
    try:
        removed = ws.queue.clear()
    except TrackStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"removed": removed}


@router.get("/{track_id}", response_model=TrackOut)
async def get_track(track_id: str, ws: Workspace = Depends(get_workspace)) -> TrackOut:
    return track_out(_get_track(ws, track_id))


@router.patch("/{track_id}", response_model=TrackOut)
async def update_track(
    track_id: str,
    body: TrackUpdateIn,
    ws: Workspace = Depends(get_workspace),
) -> TrackOut:
    _get_track(ws, track_id)
    if (body.trim_start is None) != (body.trim_end is None):
        raise HTTPException(status_code=400, detail="trim_start and trim_end must be given together")
    trim = (body.trim_start, body.trim_end) if body.trim_start is not None and body.trim_end is not None else None
    try:
        track = ws.queue.edit(track_id, display_name=body.display_name, trim=trim)
    except TrackStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return track_out(track)


@router.delete("/{track_id}", response_model=TrackOut)
async def remove_track(track_id: str, ws: Workspace = Depends(get_workspace)) -> TrackOut:
    try:
        track = ws.queue.remove(track_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="track not found")
    except TrackStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return track_out(track)


@router.get("/{track_id}/result")
async def download_result(track_id: str, ws: Workspace = Depends(get_workspace)) -> StreamingResponse:
    track = _get_track(ws, track_id)
    if track.status is not TrackStatus.DONE or track.result is None:
        raise HTTPException(status_code=404, detail="track has no result")
    try:
        view = memoryview(track.result.data)
    except ResultReleasedError:
        raise HTTPException(status_code=410, detail="result was released")

    def chunks():
        for start in range(0, len(view), DOWNLOAD_CHUNK_BYTES):
            yield bytes(view[start:start + DOWNLOAD_CHUNK_BYTES])

    return StreamingResponse(
        chunks(),
        media_type="audio/wav",
        headers={
            "Content-Disposition": f'attachment; filename="{track.result.output_name}"',
            "Content-Length": str(len(view)),
        },
    )


@router.get("/{track_id}/waveform", response_model=WaveformOut)
async def get_waveform(track_id: str, ws: Workspace = Depends(get_workspace)) -> WaveformOut:
    track = _get_track(ws, track_id)
    peaks = await ws.probe.peaks(track.source)
    return WaveformOut(track_id=track_id, buckets=ws.probe.waveform_buckets, peaks=peaks)
