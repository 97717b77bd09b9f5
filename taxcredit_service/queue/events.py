"""Fan-out notifications for queue lifecycle events.

Observers (logging, metrics) subscribe here. Whether a particular enqueued
job finished is answered by its ``JobHandle`` instead, so listeners never
sit on the completion path of a job.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from taxcredit_service.queue.types import Job

logger = logging.getLogger(__name__)

EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"
EVENT_STALLED = "stalled"


@dataclass(frozen=True)
class QueueEvent:
    kind: str  # completed|failed|stalled
    queue: str
    job: Job
    result: Any = None
    error: str | None = None


Listener = Callable[[QueueEvent], Awaitable[None] | None]


class QueueEvents:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def emit(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                out = listener(event)
                if inspect.isawaitable(out):
                    await out
            except Exception:
                logger.exception(
                    "Queue event listener failed (queue=%s event=%s job=%s)",
                    event.queue,
                    event.kind,
                    event.job.id,
                )


def log_event(event: QueueEvent) -> None:
    """Default listener: one log line per lifecycle event."""
    job = event.job
    document_id = job.data.get("documentId")
    batch_id = job.data.get("batchJobId")

    if event.kind == EVENT_COMPLETED:
        logger.info(
            "Job completed queue=%s job=%s document=%s batch=%s attempts=%d",
            event.queue,
            job.id,
            document_id,
            batch_id,
            job.attempts_made,
        )
    elif event.kind == EVENT_FAILED:
        logger.error(
            "Job failed queue=%s job=%s document=%s batch=%s attempts=%d/%d :: %s",
            event.queue,
            job.id,
            document_id,
            batch_id,
            job.attempts_made,
            job.max_attempts,
            event.error,
        )
    elif event.kind == EVENT_STALLED:
        logger.warning(
            "Job stalled queue=%s job=%s document=%s batch=%s stalled_count=%d",
            event.queue,
            job.id,
            document_id,
            batch_id,
            job.stalled_count,
        )
