from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from convertix.core.errors import BatchAlreadyRunning
from convertix.runtime.workspace import Workspace, get_workspace
from convertix.schemas.conversion import BatchStateOut, ConversionSettings

router = APIRouter()


def batch_state(ws: Workspace) -> BatchStateOut:
    report = ws.runner.last_report
    if report is None:
        return BatchStateOut(running=False, state="idle")
    return BatchStateOut(
        running=ws.runner.is_running,
        state=report.state,
        run_id=report.run_id,
        settings=report.settings,
        completed=list(report.completed),
        failed=list(report.failed),
        started_at=report.started_at,
        finished_at=report.finished_at,
    )


@router.get("", response_model=BatchStateOut)
async def get_batch(ws: Workspace = Depends(get_workspace)) -> BatchStateOut:
    return batch_state(ws)


@router.post("", response_model=BatchStateOut, status_code=202)
async def start_batch(
    settings: ConversionSettings,
    wait: bool = False,
    ws: Workspace = Depends(get_workspace),
) -> BatchStateOut:
    try:
        task = ws.runner.start(settings)
    except BatchAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    if wait:
        await task
    return batch_state(ws)


@router.post("/cancel", response_model=BatchStateOut)
async def cancel_batch(ws: Workspace = Depends(get_workspace)) -> BatchStateOut:
    if not ws.runner.cancel():
        raise HTTPException(status_code=409, detail="no batch is running")
    return batch_state(ws)
