from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)

LOCK_SECTION = "reasoning"

LOCK_ACQUIRED = "acquired"
LOCK_IN_PROGRESS = "reasoning_in_progress"
LOCK_COOLDOWN = "cooldown"
LOCK_EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class LockPolicy:
    ttl_seconds: int
    cooldown_seconds: int
    max_attempts: int


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def evaluate_lock(state: dict[str, Any], *, now: datetime, policy: LockPolicy) -> str:
    """Decide whether a reasoning attempt may start from persisted lock fields."""
    if state.get("in_progress"):
        started_at = _parse_ts(state.get("started_at"))
        if started_at is not None and (now - started_at).total_seconds() < policy.ttl_seconds:
            return LOCK_IN_PROGRESS
    last_attempt_at = _parse_ts(state.get("last_attempt_at"))
    if last_attempt_at is not None and (now - last_attempt_at).total_seconds() < policy.cooldown_seconds:
        return LOCK_COOLDOWN
    if int(state.get("attempts") or 0) >= policy.max_attempts:
        return LOCK_EXHAUSTED
    return LOCK_ACQUIRED


class ReasoningLease:
    """Soft lock on the reasoning stage, kept in job pipeline metadata.

    `acquire` bumps the attempt counter with a compare-and-set on the previous
    count. Once acquired, leaving the `with` block always releases the lock and
    records the error that ended the attempt, if any.
    """

    def __init__(
        self,
        *,
        jobs_repository: Any,
        job_id: str,
        policy: LockPolicy,
        clock: Callable[[], datetime],
    ) -> None:
        self._jobs = jobs_repository
        self._job_id = job_id
        self._policy = policy
        self._clock = clock
        self.acquired = False
        self.attempt = 0

    def acquire(self, state: dict[str, Any]) -> str:
        now = self._clock()
        decision = evaluate_lock(state, now=now, policy=self._policy)
        if decision != LOCK_ACQUIRED:
            return decision
        previous = int(state.get("attempts") or 0)
        won = self._jobs.update_pipeline_section(
            job_id=self._job_id,
            section=LOCK_SECTION,
            values={
                "in_progress": True,
                "started_at": now.isoformat(),
                "last_attempt_at": now.isoformat(),
                "attempts": previous + 1,
                "finished_at": None,
                "last_error": None,
            },
            expected_attempts=previous,
        )
        if not won:
            logger.info("reasoning lock lost to a concurrent invocation job=%s", self._job_id)
            return LOCK_IN_PROGRESS
        self.acquired = True
        self.attempt = previous + 1
        return LOCK_ACQUIRED

    def release(self, *, error: BaseException | None = None) -> None:
        values: dict[str, Any] = {"in_progress": False, "finished_at": self._clock().isoformat()}
        if error is not None:
            values["last_error"] = str(getattr(error, "message", error))[:500]
        self._jobs.update_pipeline_section(job_id=self._job_id, section=LOCK_SECTION, values=values)
        self.acquired = False

    def __enter__(self) -> ReasoningLease:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if self.acquired:
            self.release(error=exc)
        return False
