from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any

from tender_review.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryJobEventsRepository:
    def __init__(self, events: list[dict[str, Any]], *, lock: threading.RLock | None = None) -> None:
        self._events = events
        self._lock = lock or threading.RLock()

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        item = json.loads(json.dumps(event, default=str))
        with self._lock:
            self._events.append(item)
        return dict(item)

    def list_for_job(self, *, job_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(x) for x in self._events if x.get("job_id") == job_id]


class PostgresJobEventsRepository:
    """Append-only event rows; there is no update or delete path."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "job_events") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        item = dict(event)
        sql = f"""
            INSERT INTO {self._table_name} (
                event_id, job_id, user_id, level, event_type, message, meta, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["event_id"],
                        item["job_id"],
                        item.get("user_id", ""),
                        item.get("level", "info"),
                        item.get("event_type", ""),
                        item.get("message", ""),
                        json.dumps(item.get("meta", {}), ensure_ascii=True, sort_keys=True, default=str),
                        item.get("created_at"),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_job(self, *, job_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT event_id, job_id, user_id, level, event_type, message, meta, created_at
            FROM {self._table_name}
            WHERE job_id = %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                out.append(
                    {
                        "event_id": row[0],
                        "job_id": row[1],
                        "user_id": row[2],
                        "level": row[3],
                        "event_type": row[4],
                        "message": row[5],
                        "meta": row[6] if isinstance(row[6], dict) else {},
                        "created_at": row[7].isoformat() if isinstance(row[7], datetime) else row[7],
                    }
                )
            return out

        return self._tx_runner.run_in_tx(fn=_op)
