from __future__ import annotations

import json
from typing import Any

from company_intel.db.postgres import PostgresTxRunner, validate_identifier


class InMemoryOutboxEventsRepository:
    def __init__(self, events: dict[str, dict[str, Any]]) -> None:
        self._events = events

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        self._events[str(event["event_id"])] = dict(event)
        return dict(event)

    def list(self, *, tenant_id: str, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        items = [dict(x) for x in self._events.values() if x.get("tenant_id") == tenant_id]
        if status:
            items = [x for x in items if x.get("status") == status]
        items.sort(key=lambda x: (str(x.get("created_at", "")), int(x.get("seq", 0))))
        return items[: max(1, min(limit, 1000))]

    def mark_published(self, *, tenant_id: str, event_id: str, published_at: str) -> dict[str, Any] | None:
        event = self._events.get(event_id)
        if event is None or event.get("tenant_id") != tenant_id:
            return None
        event["status"] = "published"
        event["published_at"] = published_at
        return dict(event)


class PostgresOutboxEventsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "outbox_events") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, event: dict[str, Any]) -> dict[str, Any]:
        item = dict(event)
        tenant_id = str(item["tenant_id"])
        sql = f"""
            INSERT INTO {self._table_name} (
                event_id, tenant_id, event_type, aggregate_type, aggregate_id, status, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["event_id"],
                        tenant_id,
                        item.get("event_type"),
                        item.get("aggregate_type"),
                        item.get("aggregate_id"),
                        item.get("status", "pending"),
                        item.get("created_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(self, *, tenant_id: str, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        clauses = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]
        if status:
            clauses.append("status = %s")
            params.append(status)
        params.append(max(1, min(limit, 1000)))
        sql = f"""
            SELECT payload, status
            FROM {self._table_name}
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at ASC
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                if isinstance(row[0], dict):
                    out.append({**row[0], "status": row[1]})
            return out

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def mark_published(self, *, tenant_id: str, event_id: str, published_at: str) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET status = 'published',
                payload = jsonb_set(payload, '{{published_at}}', to_jsonb(%s::text))
            WHERE tenant_id = %s AND event_id = %s
            RETURNING payload
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (published_at, tenant_id, event_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return {**row[0], "status": "published"}

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
