from __future__ import annotations

from threading import Event

from convertix.core.errors import ConversionCancelled


class CancellationToken:
    """
    Cooperative cancellation flag shared by one batch run.

    Pipeline stages run in worker threads, so the flag is a threading.Event;
    stages call raise_if_cancelled() at their checkpoints.
    """

    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise ConversionCancelled(f"cancelled at {where}" if where else "cancelled")
