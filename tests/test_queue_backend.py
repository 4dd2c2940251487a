from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from tender_review.queue_backend import (
    PROCESS_JOB_QUEUE,
    InMemoryQueueBackend,
    RedisQueueBackend,
    create_queue_from_env,
)


class FakeRedisClient:
    def __init__(self) -> None:
        self.kv: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}

    @classmethod
    def from_url(cls, _dsn: str, decode_responses: bool = True):
        assert decode_responses is True
        return cls()

    def set(self, key: str, value: str) -> None:
        self.kv[key] = value

    def get(self, key: str):
        return self.kv.get(key)

    def rpush(self, key: str, value: str) -> None:
        self.lists.setdefault(key, []).append(value)

    def lpop(self, key: str):
        items = self.lists.get(key, [])
        if not items:
            return None
        return items.pop(0)

    def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    def sadd(self, key: str, value: str) -> int:
        members = self.sets.setdefault(key, set())
        if value in members:
            return 0
        members.add(value)
        return 1

    def srem(self, key: str, value: str) -> None:
        self.sets.setdefault(key, set()).discard(value)

    def smembers(self, key: str):
        return set(self.sets.get(key, set()))

    def delete(self, *keys: str) -> None:
        for key in keys:
            self.kv.pop(key, None)
            self.lists.pop(key, None)
            self.sets.pop(key, None)


class FakeRedisModule:
    class Redis:
        @staticmethod
        def from_url(dsn: str, decode_responses: bool = True):
            return FakeRedisClient.from_url(dsn, decode_responses=decode_responses)


def test_enqueue_deduplicates_job_ids_until_ack():
    q = InMemoryQueueBackend()
    first = q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"})
    assert first is not None
    assert q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"}) is None

    msg = q.dequeue(queue_name=PROCESS_JOB_QUEUE)
    assert msg.job_id == "job_1"
    assert q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"}) is None

    q.ack(message_id=msg.message_id)
    assert q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"}) is not None


def test_nack_requeues_with_attempt_increment():
    q = InMemoryQueueBackend()
    enqueued = q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"})
    msg = q.dequeue(queue_name=PROCESS_JOB_QUEUE)
    assert msg.message_id == enqueued.message_id

    nack = q.nack(message_id=msg.message_id, requeue=True)
    assert nack.attempt == 1
    assert q.pending_count(queue_name=PROCESS_JOB_QUEUE) == 1

    replay = q.dequeue(queue_name=PROCESS_JOB_QUEUE)
    assert replay.message_id == msg.message_id
    assert replay.attempt == 1


def test_delayed_messages_are_not_due_yet():
    q = InMemoryQueueBackend()
    q.enqueue(
        queue_name=PROCESS_JOB_QUEUE,
        payload={"job_id": "job_later"},
        available_at=datetime.now(UTC) + timedelta(minutes=5),
    )
    q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_now"})

    assert q.dequeue(queue_name=PROCESS_JOB_QUEUE).job_id == "job_now"
    assert q.dequeue(queue_name=PROCESS_JOB_QUEUE) is None
    assert q.pending_count(queue_name=PROCESS_JOB_QUEUE) == 1

    msg = q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_x"})
    q.dequeue(queue_name=PROCESS_JOB_QUEUE)
    q.nack(message_id=msg.message_id, requeue=True, delay_ms=60_000)
    assert q.dequeue(queue_name=PROCESS_JOB_QUEUE) is None


def test_nack_without_requeue_drops_message():
    q = InMemoryQueueBackend()
    q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"})
    msg = q.dequeue(queue_name=PROCESS_JOB_QUEUE)

    dropped = q.nack(message_id=msg.message_id, requeue=False)

    assert dropped.attempt == 1
    assert q.pending_count(queue_name=PROCESS_JOB_QUEUE) == 0
    assert q.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_1"}) is not None
    assert q.nack(message_id="msg_unknown") is None


def test_queue_factory_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("TP_QUEUE_BACKEND", raising=False)
    assert isinstance(create_queue_from_env(), InMemoryQueueBackend)


def test_queue_factory_rejects_unsupported_backend():
    with pytest.raises(RuntimeError, match="unsupported queue backend"):
        create_queue_from_env({"TP_QUEUE_BACKEND": "rabbitmq"})


def test_queue_factory_requires_redis_dsn():
    with pytest.raises(ValueError, match="REDIS_DSN"):
        create_queue_from_env({"TP_QUEUE_BACKEND": "redis"})


def test_redis_backend_with_fake_driver(monkeypatch):
    monkeypatch.setattr("tender_review.queue_backend._import_redis", lambda: FakeRedisModule)

    queue = create_queue_from_env({"TP_QUEUE_BACKEND": "redis", "REDIS_DSN": "redis://localhost:6379/0"})
    assert isinstance(queue, RedisQueueBackend)

    sent = queue.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_redis_1"})
    assert queue.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_redis_1"}) is None
    got = queue.dequeue(queue_name=PROCESS_JOB_QUEUE)
    assert got.message_id == sent.message_id

    nacked = queue.nack(message_id=got.message_id, requeue=True)
    assert nacked.attempt == 1
    replay = queue.dequeue(queue_name=PROCESS_JOB_QUEUE)
    assert replay.attempt == 1
    queue.ack(message_id=replay.message_id)
    assert queue.pending_count(queue_name=PROCESS_JOB_QUEUE) == 0
    assert queue.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_redis_1"}) is not None

    queue.reset()
    assert queue.pending_count(queue_name=PROCESS_JOB_QUEUE) == 0


def test_redis_backend_reports_missing_driver(monkeypatch):
    def _raise_missing():
        raise RuntimeError("redis is required for TP_QUEUE_BACKEND=redis; install redis>=5")

    monkeypatch.setattr("tender_review.queue_backend._import_redis", _raise_missing)
    with pytest.raises(RuntimeError, match="redis"):
        RedisQueueBackend(dsn="redis://localhost:6379/0")


def test_redis_backend_reclaims_messages_left_in_flight(monkeypatch):
    monkeypatch.setattr("tender_review.queue_backend._import_redis", lambda: FakeRedisModule)
    queue = create_queue_from_env(
        {
            "TP_QUEUE_BACKEND": "redis",
            "REDIS_DSN": "redis://localhost:6379/0",
            "TP_QUEUE_VISIBILITY_TIMEOUT_SECONDS": "60",
        }
    )
    assert queue.visibility_timeout_s == 60

    sent = queue.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_crashed"})
    assert queue.dequeue(queue_name=PROCESS_JOB_QUEUE).message_id == sent.message_id
    assert queue.dequeue(queue_name=PROCESS_JOB_QUEUE) is None
    assert queue.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_crashed"}) is None

    key = f"tp:msg:{sent.message_id}"
    data = json.loads(queue._client.kv[key])
    data["inflight_at"] = (datetime.now(UTC) - timedelta(seconds=61)).isoformat()
    queue._client.kv[key] = json.dumps(data)

    replay = queue.dequeue(queue_name=PROCESS_JOB_QUEUE)
    assert replay.message_id == sent.message_id
    assert replay.attempt == 1
    queue.ack(message_id=replay.message_id)
    assert queue.enqueue(queue_name=PROCESS_JOB_QUEUE, payload={"job_id": "job_crashed"}) is not None
