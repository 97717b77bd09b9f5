from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATES: tuple[str, ...] = (WAITING, ACTIVE, COMPLETED, FAILED, DELAYED)
TERMINAL_STATES: frozenset[str] = frozenset({COMPLETED, FAILED})

STALLED_ERROR = "job stalled more than allowable limit"


class JobTimeoutError(TimeoutError):
    """Handler did not finish within the job's timeout."""


class JobFailedError(RuntimeError):
    """Raised to a waiter when the job it awaits failed terminally."""

    def __init__(self, job_id: str, error: str) -> None:
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 1
    backoff_seconds: float | None = None  # exponential base; None = retry immediately
    timeout_seconds: float | None = None
    priority: int = 0  # lower runs sooner
    remove_on_complete: bool = False

    def merged(self, **overrides: Any) -> JobOptions:
        values = {
            "attempts": self.attempts,
            "backoff_seconds": self.backoff_seconds,
            "timeout_seconds": self.timeout_seconds,
            "priority": self.priority,
            "remove_on_complete": self.remove_on_complete,
        }
        for key, value in overrides.items():
            if key not in values:
                raise TypeError(f"Unknown job option: {key}")
            values[key] = value
        return JobOptions(**values)


@dataclass
class Job:
    id: str
    queue: str
    data: dict[str, Any]
    priority: int
    state: str
    max_attempts: int
    backoff_seconds: float | None
    timeout_seconds: float | None
    remove_on_complete: bool
    available_at: datetime
    created_at: datetime
    attempts_made: int = 0  # claims so far, including the running one
    stalled_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    result: Any = None
    locked_by: str | None = None
    lock_expires_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts_made < self.max_attempts

    def retry_delay(self) -> float:
        """Exponential backoff after the current attempt: base, 2*base, 4*base..."""
        if not self.backoff_seconds:
            return 0.0
        return float(self.backoff_seconds) * (2 ** max(self.attempts_made - 1, 0))
