from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from tender_review.db.postgres import PostgresTxRunner, validate_identifier
from tender_review.errors import ApiError

JOB_STATUSES = ("queued", "processing", "done", "failed")
TERMINAL_STATUSES = frozenset({"done", "failed"})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"processing"},
    "processing": {"done", "failed"},
    "done": set(),
    "failed": set(),
}


def sources_for(new_status: str) -> list[str]:
    """Statuses from which `new_status` may be entered."""
    if new_status not in ALLOWED_TRANSITIONS:
        raise ApiError(
            code="WF_STATE_TRANSITION_INVALID",
            message=f"unknown job status: {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
    return sorted(src for src, targets in ALLOWED_TRANSITIONS.items() if new_status in targets)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryJobsRepository:
    def __init__(self, jobs: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._jobs = jobs
        self._lock = lock or threading.RLock()

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = dict(job)
            row.setdefault("status", "queued")
            row.setdefault("pipeline", {})
            row.setdefault("error_message", None)
            row.setdefault("created_at", _utcnow_iso())
            row.setdefault("updated_at", row["created_at"])
            self._jobs[str(row["id"])] = row
            return json.loads(json.dumps(row))

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._jobs.get(job_id)
            return json.loads(json.dumps(row)) if row is not None else None

    def claim(self, *, job_id: str) -> bool:
        return self.update_status(job_id=job_id, status="processing")

    def update_status(self, *, job_id: str, status: str, error_message: str | None = None) -> bool:
        allowed_from = sources_for(status)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.get("status") not in allowed_from:
                return False
            row["status"] = status
            if error_message is not None:
                row["error_message"] = error_message
            row["updated_at"] = _utcnow_iso()
            return True

    def update_pipeline_section(
        self,
        *,
        job_id: str,
        section: str,
        values: dict[str, Any],
        expected_attempts: int | None = None,
    ) -> bool:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                return False
            pipeline = row.setdefault("pipeline", {})
            current = dict(pipeline.get(section) or {})
            if expected_attempts is not None and int(current.get("attempts") or 0) != expected_attempts:
                return False
            current.update(json.loads(json.dumps(values)))
            pipeline[section] = current
            row["updated_at"] = _utcnow_iso()
            return True

    def list_by_status(self, *, status: str, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                x
                for x in self._jobs.values()
                if x.get("status") == status and str(x.get("file_path") or "").strip()
            ]
            rows.sort(key=lambda x: str(x.get("created_at") or ""))
            return [json.loads(json.dumps(x)) for x in rows[: max(0, limit)]]


class PostgresJobsRepository:
    """Jobs table access; status changes are conditional updates."""

    _COLUMNS = "id, user_id, file_name, file_path, source_type, status, pipeline, error_message, created_at, updated_at"

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_job(row: Any) -> dict[str, Any]:
        return {
            "id": row[0],
            "user_id": row[1],
            "file_name": row[2],
            "file_path": row[3],
            "source_type": row[4],
            "status": row[5],
            "pipeline": row[6] if isinstance(row[6], dict) else {},
            "error_message": row[7],
            "created_at": row[8].isoformat() if isinstance(row[8], datetime) else row[8],
            "updated_at": row[9].isoformat() if isinstance(row[9], datetime) else row[9],
        }

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (
                id, user_id, file_name, file_path, source_type, status, pipeline, error_message
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
            RETURNING {self._COLUMNS}
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        job["id"],
                        job["user_id"],
                        job.get("file_name", ""),
                        job.get("file_path", ""),
                        job.get("source_type", "pdf"),
                        job.get("status", "queued"),
                        json.dumps(job.get("pipeline", {}), ensure_ascii=True, sort_keys=True),
                        job.get("error_message"),
                    ),
                )
                row = cur.fetchone()
            return self._row_to_job(row)

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {self._COLUMNS} FROM {self._table_name} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            return self._row_to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def claim(self, *, job_id: str) -> bool:
        return self.update_status(job_id=job_id, status="processing")

    def update_status(self, *, job_id: str, status: str, error_message: str | None = None) -> bool:
        allowed_from = sources_for(status)
        sql = f"""
            UPDATE {self._table_name}
            SET status = %s,
                error_message = COALESCE(%s, error_message),
                updated_at = now()
            WHERE id = %s AND status = ANY(%s)
            RETURNING id
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (status, error_message, job_id, allowed_from))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(fn=_op)

    def update_pipeline_section(
        self,
        *,
        job_id: str,
        section: str,
        values: dict[str, Any],
        expected_attempts: int | None = None,
    ) -> bool:
        sql = f"""
            UPDATE {self._table_name}
            SET pipeline = jsonb_set(
                    COALESCE(pipeline, '{{}}'::jsonb),
                    ARRAY[%s],
                    COALESCE(pipeline -> %s, '{{}}'::jsonb) || %s::jsonb,
                    true
                ),
                updated_at = now()
            WHERE id = %s
        """
        params: list[Any] = [
            section,
            section,
            json.dumps(values, ensure_ascii=True, sort_keys=True),
            job_id,
        ]
        if expected_attempts is not None:
            sql += " AND COALESCE((pipeline -> %s ->> 'attempts')::int, 0) = %s"
            params.extend([section, expected_attempts])
        sql += " RETURNING id"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return cur.fetchone() is not None

        return self._tx_runner.run_in_tx(fn=_op)

    def list_by_status(self, *, status: str, limit: int) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE status = %s AND COALESCE(file_path, '') <> ''
            ORDER BY created_at ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (status, max(0, limit)))
                rows = cur.fetchall() or []
            return [self._row_to_job(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)
