from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from tender_review.queue_backend import PROCESS_JOB_QUEUE

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    kicked: int = 0
    processed: int = 0
    done: int = 0
    failed: int = 0
    requeued: int = 0
    acked: int = 0
    dropped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "kicked": self.kicked,
            "processed": self.processed,
            "done": self.done,
            "failed": self.failed,
            "requeued": self.requeued,
            "acked": self.acked,
            "dropped": self.dropped,
        }

    def add(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))


class WorkerRuntime:
    """External scheduler for the tender review pipeline.

    Each iteration enqueues queued and unfinished processing jobs, then delivers due job ids to
    `pipeline.advance` and re-delivers them after the returned delay until the
    step result is final or a message exceeds `max_deliveries`.
    """

    def __init__(
        self,
        *,
        store: Any,
        queue_backend: Any,
        pipeline_factory: Callable[[], Any],
        queue_name: str = PROCESS_JOB_QUEUE,
        kick_batch_size: int = 25,
        max_messages_per_iteration: int = 20,
        max_deliveries: int = 200,
        default_delay_s: int = 5,
        poll_interval_ms: int = 1000,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.pipeline_factory = pipeline_factory
        self.queue_name = queue_name
        self.kick_batch_size = max(0, int(kick_batch_size))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.max_deliveries = max(1, int(max_deliveries))
        self.default_delay_s = max(0, int(default_delay_s))
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def kick(self, stats: WorkerRunStats) -> None:
        if self.kick_batch_size <= 0:
            return
        # Processing jobs are re-offered too; the queue drops ids it already holds.
        for job in self.store.list_unfinished_jobs(limit=self.kick_batch_size):
            msg = self.queue_backend.enqueue(queue_name=self.queue_name, payload={"job_id": job["id"]})
            if msg is not None:
                stats.kicked += 1

    def _process_message(self, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(queue_name=self.queue_name)
        if msg is None:
            return False
        stats.processed += 1
        if not msg.job_id:
            self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
            return True

        try:
            result = self.pipeline_factory().advance(msg.job_id)
        except Exception:
            logger.exception("pipeline invocation raised job=%s", msg.job_id)
            self._requeue(msg, delay_s=self.default_delay_s, stats=stats)
            return True

        if result.is_final:
            self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
            if result.status == "done":
                stats.done += 1
            else:
                stats.failed += 1
            logger.info("job=%s finished status=%s detail=%s", msg.job_id, result.status, result.detail)
            return True

        delay_s = result.retry_after_s if result.retry_after_s is not None else self.default_delay_s
        self._requeue(msg, delay_s=delay_s, stats=stats)
        return True

    def _requeue(self, msg: Any, *, delay_s: int, stats: WorkerRunStats) -> None:
        if msg.attempt + 1 >= self.max_deliveries:
            logger.warning("job=%s dropped after %s deliveries", msg.job_id, msg.attempt + 1)
            self.queue_backend.nack(message_id=msg.message_id, requeue=False)
            stats.dropped += 1
            return
        self.queue_backend.nack(message_id=msg.message_id, requeue=True, delay_ms=max(0, int(delay_s)) * 1000)
        stats.requeued += 1

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        self.kick(stats)
        while stats.processed < self.max_messages_per_iteration:
            if not self._process_message(stats):
                break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    store: Any,
    queue_backend: Any,
    pipeline_factory: Callable[[], Any],
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        store=store,
        queue_backend=queue_backend,
        pipeline_factory=pipeline_factory,
        kick_batch_size=_env_int(env, "WORKER_KICK_BATCH_SIZE", default=25, minimum=0),
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        max_deliveries=_env_int(env, "WORKER_MAX_DELIVERIES", default=200, minimum=1),
        default_delay_s=_env_int(env, "TP_FOLLOWUP_DELAY_SECONDS", default=5, minimum=0),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=1000, minimum=1),
    )
