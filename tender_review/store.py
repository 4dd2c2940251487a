from __future__ import annotations

import os
import threading
import uuid
from collections.abc import Mapping
from typing import Any

from tender_review.db.postgres import PostgresTxRunner
from tender_review.errors import job_not_found
from tender_review.object_storage import content_type_for_source, create_object_storage_from_env
from tender_review.repositories import (
    InMemoryJobEventsRepository,
    InMemoryJobResultsRepository,
    InMemoryJobsRepository,
    PostgresJobEventsRepository,
    PostgresJobResultsRepository,
    PostgresJobsRepository,
)


class InMemoryStore:
    """Jobs, results and events for one process, plus the upload object storage."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.object_storage = create_object_storage_from_env(os.environ)
        self.job_rows: dict[str, dict[str, Any]] = {}
        self.result_rows: dict[str, dict[str, Any]] = {}
        self.event_rows: list[dict[str, Any]] = []
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.jobs = InMemoryJobsRepository(self.job_rows, lock=self._lock)
        self.results = InMemoryJobResultsRepository(self.result_rows, lock=self._lock)
        self.events = InMemoryJobEventsRepository(self.event_rows, lock=self._lock)

    def reset(self) -> None:
        self.object_storage = create_object_storage_from_env(os.environ)
        reset_fn = getattr(self.object_storage, "reset", None)
        if callable(reset_fn):
            reset_fn()
        with self._lock:
            self.job_rows.clear()
            self.result_rows.clear()
            self.event_rows.clear()

    def create_job(
        self,
        *,
        user_id: str,
        file_name: str,
        source_type: str = "pdf",
        file_bytes: bytes | None = None,
        file_path: str | None = None,
        extracted_text: str | None = None,
    ) -> dict[str, Any]:
        """Create a queued job the way the upload collaborator does.

        Either `file_bytes` (stored through object storage) or an existing
        `file_path` pointer is required. `extracted_text` pre-fills the result
        slot for the client-side extraction fast path.
        """
        job_id = f"job_{uuid.uuid4().hex[:12]}"
        if file_bytes is not None:
            file_path = self.object_storage.put_object(
                user_id=user_id,
                job_id=job_id,
                filename=file_name,
                content_bytes=file_bytes,
                content_type=content_type_for_source(source_type),
            )
        if not file_path:
            raise ValueError("file_bytes or file_path is required")
        job = self.jobs.create(
            job={
                "id": job_id,
                "user_id": user_id,
                "file_name": file_name,
                "file_path": file_path,
                "source_type": source_type,
                "status": "queued",
                "pipeline": {},
            }
        )
        if extracted_text:
            self.results.upsert(job_id=job_id, user_id=user_id, values={"extracted_text": extracted_text})
        return job

    def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id=job_id)
        if job is None:
            raise job_not_found(job_id)
        return job

    def list_queued_jobs(self, *, limit: int = 25) -> list[dict[str, Any]]:
        return self.jobs.list_by_status(status="queued", limit=limit)

    def list_unfinished_jobs(self, *, limit: int = 25) -> list[dict[str, Any]]:
        """Queued jobs first, then jobs left in processing by an earlier run."""
        queued = self.list_queued_jobs(limit=limit)
        remaining = max(0, limit - len(queued))
        if remaining <= 0:
            return queued
        return queued + self.jobs.list_by_status(status="processing", limit=remaining)


class PostgresBackedStore(InMemoryStore):
    """Same surface as InMemoryStore with rows kept in PostgreSQL."""

    backend_name = "postgres"

    def __init__(self, *, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._tx_runner = PostgresTxRunner(dsn)
        self._tx_runner.ensure_schema()
        super().__init__()

    def _bind_repositories(self) -> None:
        self.jobs = PostgresJobsRepository(tx_runner=self._tx_runner, table_name="jobs")
        self.results = PostgresJobResultsRepository(tx_runner=self._tx_runner, table_name="job_results")
        self.events = PostgresJobEventsRepository(tx_runner=self._tx_runner, table_name="job_events")

    def reset(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute("TRUNCATE TABLE job_events, job_results, jobs")

        self._tx_runner.run_in_tx(fn=_op)
        super().reset()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("TP_STORE_BACKEND", "memory").strip().lower()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when TP_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn)
    return InMemoryStore()


store = create_store_from_env()
