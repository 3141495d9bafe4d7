from __future__ import annotations

import json
from typing import Any

from company_intel.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryRunStepsRepository:
    def __init__(self, run_steps: dict[str, dict[str, Any]]) -> None:
        self._run_steps = run_steps

    def save(self, *, step: dict[str, Any]) -> dict[str, Any]:
        self._run_steps[str(step["step_id"])] = dict(step)
        return dict(step)

    def get(self, *, tenant_id: str, step_id: str) -> dict[str, Any] | None:
        row = self._run_steps.get(step_id)
        if row is None or row.get("tenant_id") != tenant_id:
            return None
        return dict(row)

    def list_for_run(self, *, tenant_id: str, run_id: str) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._run_steps.values()
            if x.get("tenant_id") == tenant_id and x.get("run_id") == run_id
        ]
        rows.sort(key=lambda x: str(x.get("created_at", "")))
        return rows


class PostgresRunStepsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "run_steps") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def save(self, *, step: dict[str, Any]) -> dict[str, Any]:
        item = dict(step)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                step_id, tenant_id, run_id, connector, status, created_at, duration_ms, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(step_id) DO UPDATE
            SET status = EXCLUDED.status,
                duration_ms = EXCLUDED.duration_ms,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["step_id"],
                        tenant_id,
                        item.get("run_id"),
                        item.get("connector"),
                        item.get("status"),
                        item.get("created_at"),
                        item.get("duration_ms"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get(self, *, tenant_id: str, step_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND step_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, step_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return row[0]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list_for_run(self, *, tenant_id: str, run_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE tenant_id = %s AND run_id = %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, run_id))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
