from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

PROCESS_JOB_QUEUE = "process-job"


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None

    @property
    def job_id(self) -> str:
        return str(self.payload.get("job_id") or "")


def _is_due(available_at: Any) -> bool:
    if not isinstance(available_at, str) or not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


def _due_iso(available_at: datetime | None) -> str:
    if isinstance(available_at, datetime):
        return available_at.astimezone(UTC).isoformat()
    return datetime.now(UTC).isoformat()


class InMemoryQueueBackend:
    """Delayed re-delivery of job ids inside one process.

    A job id is held at most once per queue (pending or in flight); duplicate
    enqueues return None.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}
        self._job_ids: dict[str, set[str]] = {}

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage | None:
        with self._lock:
            job_id = str(payload.get("job_id") or "")
            tracked = self._job_ids.setdefault(queue_name, set())
            if job_id and job_id in tracked:
                return None
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                queue_name=queue_name,
                payload=dict(payload),
                attempt=int(payload.get("attempt", 0)),
                available_at=_due_iso(available_at),
            )
            self._queues.setdefault(queue_name, deque()).append(msg)
            if job_id:
                tracked.add(job_id)
            return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            for _ in range(len(queue)):
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is not None:
                self._job_ids.get(msg.queue_name, set()).discard(msg.job_id)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            if requeue:
                due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
                msg.available_at = due_at.isoformat()
                self._queues.setdefault(msg.queue_name, deque()).append(msg)
            else:
                self._job_ids.get(msg.queue_name, set()).discard(msg.job_id)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()
            self._job_ids.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for TP_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue shared by several worker processes.

    A message left in flight longer than `visibility_timeout_s` (its worker
    died mid-delivery) is moved back to pending on the next dequeue.
    """

    def __init__(self, *, dsn: str, namespace: str = "tp", visibility_timeout_s: int = 600) -> None:
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "tp"
        self.visibility_timeout_s = max(1, int(visibility_timeout_s))
        self._lock = threading.RLock()
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _jobs_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:jobs"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._client.sadd(self._registry_key(), key)

    def _load_msg(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage | None:
        with self._lock:
            job_id = str(payload.get("job_id") or "")
            jobs_key = self._jobs_key(queue_name)
            if job_id and not self._client.sadd(jobs_key, job_id):
                return None
            message_id = f"msg_{uuid.uuid4().hex[:12]}"
            data = {
                "queue_name": queue_name,
                "payload": dict(payload),
                "attempt": int(payload.get("attempt", 0)),
                "status": "pending",
                "available_at": _due_iso(available_at),
            }
            self._save_msg(message_id, data)
            pending_key = self._pending_key(queue_name)
            self._client.rpush(pending_key, message_id)
            self._track_keys(pending_key, self._inflight_key(queue_name), jobs_key, self._msg_key(message_id))
            return self._to_message(message_id, data)

    def reclaim_stale(self, *, queue_name: str) -> int:
        with self._lock:
            inflight_key = self._inflight_key(queue_name)
            cutoff = datetime.now(UTC) - timedelta(seconds=self.visibility_timeout_s)
            reclaimed = 0
            for message_id in sorted(self._client.smembers(inflight_key) or ()):
                data = self._load_msg(message_id)
                if data is None:
                    self._client.srem(inflight_key, message_id)
                    continue
                try:
                    inflight_at = datetime.fromisoformat(str(data.get("inflight_at") or ""))
                except ValueError:
                    inflight_at = None
                if inflight_at is not None and inflight_at.tzinfo is None:
                    inflight_at = inflight_at.replace(tzinfo=UTC)
                if inflight_at is not None and inflight_at > cutoff:
                    continue
                self._client.srem(inflight_key, message_id)
                data["status"] = "pending"
                data["attempt"] = int(data.get("attempt", 0)) + 1
                data["available_at"] = _due_iso(None)
                data.pop("inflight_at", None)
                self._save_msg(message_id, data)
                self._client.rpush(self._pending_key(queue_name), message_id)
                reclaimed += 1
            if reclaimed:
                logger.warning("reclaimed %s stale in-flight messages queue=%s", reclaimed, queue_name)
            return reclaimed

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            self.reclaim_stale(queue_name=queue_name)
            pending_key = self._pending_key(queue_name)
            for _ in range(int(self._client.llen(pending_key))):
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load_msg(message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at")):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["status"] = "inflight"
                data["inflight_at"] = datetime.now(UTC).isoformat()
                self._save_msg(message_id, data)
                self._client.sadd(self._inflight_key(queue_name), message_id)
                return self._to_message(message_id, data)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight":
                return
            queue_name = str(data.get("queue_name", ""))
            self._client.srem(self._inflight_key(queue_name), message_id)
            self._client.srem(self._jobs_key(queue_name), str(data.get("payload", {}).get("job_id") or ""))
            self._client.delete(self._msg_key(message_id))

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight":
                return None
            queue_name = str(data.get("queue_name", ""))
            data["attempt"] = int(data.get("attempt", 0)) + 1
            self._client.srem(self._inflight_key(queue_name), message_id)
            if requeue:
                data["status"] = "pending"
                data["available_at"] = (datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()
                self._save_msg(message_id, data)
                self._client.rpush(self._pending_key(queue_name), message_id)
            else:
                self._client.srem(self._jobs_key(queue_name), str(data.get("payload", {}).get("job_id") or ""))
                self._client.delete(self._msg_key(message_id))
            return self._to_message(message_id, data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name)))

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)


def create_queue_from_env(environ: Mapping[str, str] | None = None) -> InMemoryQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("TP_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when TP_QUEUE_BACKEND=redis")
        try:
            visibility_timeout_s = int(env.get("TP_QUEUE_VISIBILITY_TIMEOUT_SECONDS", "600"))
        except ValueError:
            visibility_timeout_s = 600
        return RedisQueueBackend(
            dsn=dsn,
            namespace=env.get("TP_QUEUE_KEY_PREFIX", "tp"),
            visibility_timeout_s=visibility_timeout_s,
        )
    raise RuntimeError(f"unsupported queue backend: {backend}")
