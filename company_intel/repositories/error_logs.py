from __future__ import annotations

import json
from typing import Any

from company_intel.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryErrorLogsRepository:
    def __init__(self, error_logs: list[dict[str, Any]]) -> None:
        self._error_logs = error_logs

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        self._error_logs.append(item)
        return item

    def list(self, *, tenant_id: str, run_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._error_logs if x.get("tenant_id") == tenant_id]
        if run_id is not None:
            rows = [x for x in rows if x.get("run_id") == run_id]
        rows.sort(key=lambda x: str(x.get("created_at", "")), reverse=True)
        return rows[: max(1, min(limit, 1000))]


class PostgresErrorLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "error_logs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                error_id, tenant_id, run_id, source, message, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["error_id"],
                        tenant_id,
                        item.get("run_id"),
                        item.get("source"),
                        item.get("message"),
                        item.get("created_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True, default=str),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(self, *, tenant_id: str, run_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        clauses = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]
        if run_id is not None:
            clauses.append("run_id = %s")
            params.append(run_id)
        params.append(max(1, min(limit, 1000)))
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            return [row[0] for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
