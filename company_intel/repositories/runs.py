from __future__ import annotations

import json
from typing import Any

from company_intel.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryRunsRepository:
    def __init__(self, runs: dict[str, dict[str, Any]]) -> None:
        self._runs = runs

    def save(self, *, run: dict[str, Any]) -> dict[str, Any]:
        self._runs[str(run["run_id"])] = dict(run)
        return dict(run)

    def get(self, *, tenant_id: str, run_id: str) -> dict[str, Any] | None:
        row = self._runs.get(run_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list(self, *, tenant_id: str, limit: int = 100) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._runs.values() if x.get("tenant_id") == tenant_id]
        rows.sort(key=lambda x: str(x.get("started_at", "")), reverse=True)
        return rows[: max(1, min(limit, 1000))]


class PostgresRunsRepository:
    """Runs repository for the postgres backend; every query is scoped by tenant_id."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "runs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def save(self, *, run: dict[str, Any]) -> dict[str, Any]:
        item = dict(run)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                run_id, tenant_id, job_id, trigger, status, started_at, completed_at, duration_ms, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(run_id) DO UPDATE
            SET status = EXCLUDED.status,
                completed_at = EXCLUDED.completed_at,
                duration_ms = EXCLUDED.duration_ms,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["run_id"],
                        tenant_id,
                        item.get("job_id"),
                        item.get("trigger"),
                        item.get("status"),
                        item.get("started_at"),
                        item.get("completed_at"),
                        item.get("duration_ms"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, run_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND run_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, run_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(self, *, tenant_id: str, limit: int = 100) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s
            ORDER BY started_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, max(1, min(limit, 1000))))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
