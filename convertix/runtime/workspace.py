from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from convertix.analyzers.media_probe import MediaProbe
from convertix.services.batch_runner import BatchRunner
from convertix.services.track_queue import TrackQueue

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Process-wide conversion state: one queue, one runner, one probe."""
    queue: TrackQueue
    runner: BatchRunner
    probe: MediaProbe
    background: set[asyncio.Task] = field(default_factory=set)

    @classmethod
    def create(cls) -> "Workspace":
        queue = TrackQueue()
        return cls(queue=queue, runner=BatchRunner(queue), probe=MediaProbe())

    def schedule_probe(self, track_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._probe_track(track_id))
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task

    async def _probe_track(self, track_id: str) -> None:
        try:
            track = self.queue.get(track_id)
        except KeyError:
            return
        try:
            info = await self.probe.probe(track.source)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Probe failed for track %s (%s): %s", track_id, track.source.name, exc)
            return
        self.queue.apply_probe(track_id, info)
        logger.debug("Probed track %s: duration=%s sr=%s", track_id, info.duration_s, info.sample_rate)


_WORKSPACE: Workspace | None = None


def get_workspace() -> Workspace:
    global _WORKSPACE
    if _WORKSPACE is None:
        _WORKSPACE = Workspace.create()
    return _WORKSPACE
