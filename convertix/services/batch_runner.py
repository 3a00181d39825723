from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from convertix.core.errors import BatchAlreadyRunning, ConversionCancelled, ConversionError
from convertix.runtime.cancellation import CancellationToken
from convertix.schemas.conversion import ConversionSettings
from convertix.services.conversion_service import PROGRESS_STARTED, ConversionService
from convertix.services.track_queue import TrackQueue

MAX_ERROR_CHARS = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchReport:
    run_id: str
    settings: ConversionSettings
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None

    @property
    def state(self) -> Literal["running", "finished", "stopped"]:
        if self.finished_at is None:
            return "running"
        return "stopped" if self.cancelled else "finished"


class BatchRunner:
    """
    Runs every eligible track of a TrackQueue, strictly one at a time.

    The eligible set (waiting or error) is snapshotted when the run starts
    and processed in submission order. A failing track is marked error and
    the run moves on; cancellation puts the in-flight track back to waiting
    and ends the run without starting anything else.
    """

    def __init__(self, queue: TrackQueue, service: ConversionService | None = None) -> None:
        self.queue = queue
        self.service = service or ConversionService()
        self._token: CancellationToken | None = None
        self._task: asyncio.Task | None = None
        self._report: BatchReport | None = None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def is_running(self) -> bool:
        return self._token is not None

    @property
    def last_report(self) -> BatchReport | None:
        return self._report

    def start(self, settings: ConversionSettings) -> asyncio.Task:
        """Schedule a run on the current event loop and return its task."""
        token, report = self._claim(settings)
        self._task = asyncio.create_task(self._execute(token, report))
        return self._task

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False when nothing is running."""
        if self._token is None:
            return False
        self._token.cancel()
        self.logger.info("Cancellation requested for batch %s", self._report.run_id if self._report else "?")
        return True

    async def run(self, settings: ConversionSettings) -> BatchReport:
        token, report = self._claim(settings)
        return await self._execute(token, report)

    def _claim(self, settings: ConversionSettings) -> tuple[CancellationToken, BatchReport]:
        if self._token is not None:
            raise BatchAlreadyRunning("a batch run is already in progress")
        self._token = CancellationToken()
        self._report = BatchReport(run_id=uuid.uuid4().hex, settings=settings)
        return self._token, self._report

    async def _execute(self, token: CancellationToken, report: BatchReport) -> BatchReport:
        settings = report.settings
        try:
            snapshot = self.queue.eligible_ids()
            self.logger.info("Batch %s started: %d track(s)", report.run_id, len(snapshot))
            for track_id in snapshot:
                if token.cancelled:
                    report.cancelled = True
                    break
                if not await self._run_one(track_id, settings, token, report):
                    report.cancelled = True
                    break
        finally:
            report.finished_at = _utc_now()
            self._token = None

        self.logger.info(
            "Batch %s %s: %d done, %d failed",
            report.run_id, report.state, len(report.completed), len(report.failed),
        )
        return report

    async def _run_one(
        self,
        track_id: str,
        settings: ConversionSettings,
        token: CancellationToken,
        report: BatchReport,
    ) -> bool:
        """Process one track. Returns False when the run must stop."""
        try:
            track = self.queue.begin(track_id)
        except KeyError:
            # removed by the caller after the snapshot
            return True

        self.queue.set_progress(track_id, PROGRESS_STARTED)
        self.logger.info("Processing track %s (%s)", track_id, track.source.name)
        try:
            result = await self.service.convert(
                track,
                settings,
                token,
                on_progress=lambda pct: self.queue.set_progress(track_id, pct),
            )
        except ConversionCancelled:
            self.queue.return_to_waiting(track_id)
            self.logger.info("Track %s cancelled; back to waiting", track_id)
            return False
        except ConversionError as exc:
            self._fail(track_id, exc, report)
            self.logger.warning("Track %s failed: %s", track_id, exc)
            return True
        except Exception as exc:  # pylint: disable=broad-except
            self._fail(track_id, exc, report)
            self.logger.exception("Track %s failed unexpectedly", track_id)
            return True

        self.queue.complete(track_id, result)
        report.completed.append(track_id)
        self.logger.info("Completed track %s -> %s (%d bytes)", track_id, result.output_name, result.byte_size)
        return True

    def _fail(self, track_id: str, exc: Exception, report: BatchReport) -> None:
        message = (str(exc).strip() or exc.__class__.__name__)[:MAX_ERROR_CHARS]
        self.queue.fail(track_id, message)
        report.failed.append(track_id)
