from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from tender_review.db.postgres import PostgresTxRunner, validate_identifier

RESULT_FIELDS = (
    "extracted_text",
    "executive_summary",
    "checklist",
    "risks",
    "clarifications",
    "proposal_draft",
)
_JSON_FIELDS = {"executive_summary", "checklist", "risks", "clarifications"}


class InMemoryJobResultsRepository:
    def __init__(self, results: dict[str, dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._results = results
        self._lock = lock or threading.RLock()

    def upsert(self, *, job_id: str, user_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """Insert or merge the given result fields in one step."""
        with self._lock:
            row = self._results.setdefault(job_id, {"job_id": job_id, "user_id": user_id})
            for key in RESULT_FIELDS:
                if key in values:
                    row[key] = json.loads(json.dumps(values[key]))
            row["updated_at"] = datetime.now(UTC).isoformat()
            return json.loads(json.dumps(row))

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._results.get(job_id)
            return json.loads(json.dumps(row)) if row is not None else None


class PostgresJobResultsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "job_results") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def upsert(self, *, job_id: str, user_id: str, values: dict[str, Any]) -> dict[str, Any]:
        fields = [key for key in RESULT_FIELDS if key in values]
        columns = ["job_id", "user_id", *fields]
        placeholders = ["%s", "%s"] + ["%s::jsonb" if key in _JSON_FIELDS else "%s" for key in fields]
        updates = [f"{key} = EXCLUDED.{key}" for key in fields] + ["updated_at = now()"]
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT (job_id) DO UPDATE
            SET {", ".join(updates)}
        """
        params: list[Any] = [job_id, user_id]
        for key in fields:
            value = values[key]
            params.append(json.dumps(value, ensure_ascii=True) if key in _JSON_FIELDS else value)

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))

        self._tx_runner.run_in_tx(fn=_op)
        return self.get(job_id=job_id) or {}

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT job_id, user_id, {", ".join(RESULT_FIELDS)}, updated_at
            FROM {self._table_name}
            WHERE job_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                row = cur.fetchone()
            if row is None:
                return None
            out: dict[str, Any] = {"job_id": row[0], "user_id": row[1]}
            for idx, key in enumerate(RESULT_FIELDS, start=2):
                out[key] = row[idx]
            updated_at = row[2 + len(RESULT_FIELDS)]
            out["updated_at"] = updated_at.isoformat() if isinstance(updated_at, datetime) else updated_at
            return out

        return self._tx_runner.run_in_tx(fn=_op)
