from __future__ import annotations

import json
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from company_intel.db.postgres import PostgresTxRunner, validate_identifier

MemoryMutator = Callable[[dict[str, Any]], dict[str, Any]]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_thread_memory(*, tenant_id: str, thread_key: str) -> dict[str, Any]:
    now = _utcnow_iso()
    return {
        "tenant_id": tenant_id,
        "thread_key": thread_key,
        "messages": [],
        "summary_text": None,
        "total_turns": 0,
        "total_chars": 0,
        "created_at": now,
        "updated_at": now,
    }


def _copy(record: dict[str, Any]) -> dict[str, Any]:
    out = dict(record)
    out["messages"] = [dict(m) for m in record.get("messages", [])]
    return out


class InMemoryThreadMemoriesRepository:
    """Thread memory keyed by (tenant_id, thread_key); writes are serialized per key.

    ``_guard`` covers the dict itself so listings never see it change size.
    """

    def __init__(self, thread_memories: dict[tuple[str, str], dict[str, Any]]) -> None:
        self._thread_memories = thread_memories
        self._guard = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def get(self, *, tenant_id: str, thread_key: str) -> dict[str, Any] | None:
        row = self._thread_memories.get((tenant_id, thread_key))
        return _copy(row) if row is not None else None

    def get_or_create(self, *, tenant_id: str, thread_key: str) -> dict[str, Any]:
        key = (tenant_id, thread_key)
        with self._lock_for(key):
            row = self._thread_memories.get(key)
            if row is None:
                row = new_thread_memory(tenant_id=tenant_id, thread_key=thread_key)
                with self._guard:
                    self._thread_memories[key] = row
            return _copy(row)

    def update_atomic(self, *, tenant_id: str, thread_key: str, mutate: MemoryMutator) -> dict[str, Any]:
        key = (tenant_id, thread_key)
        with self._lock_for(key):
            current = self._thread_memories.get(key) or new_thread_memory(tenant_id=tenant_id, thread_key=thread_key)
            updated = mutate(_copy(current))
            updated["updated_at"] = _utcnow_iso()
            with self._guard:
                self._thread_memories[key] = updated
            return _copy(updated)

    def _snapshot(self) -> list[tuple[tuple[str, str], dict[str, Any]]]:
        with self._guard:
            return list(self._thread_memories.items())

    def list(self, *, tenant_id: str, skip: int = 0, take: int = 20) -> list[dict[str, Any]]:
        rows = [_copy(x) for (tenant, _), x in self._snapshot() if tenant == tenant_id]
        rows.sort(key=lambda x: str(x.get("updated_at", "")), reverse=True)
        start = max(0, skip)
        return rows[start : start + max(1, min(take, 1000))]

    def count(self, *, tenant_id: str) -> int:
        return sum(1 for (tenant, _), _row in self._snapshot() if tenant == tenant_id)


class PostgresThreadMemoriesRepository:
    """Thread memory on PostgreSQL; ``update_atomic`` holds a row lock for the whole read-modify-write."""

    _COLUMNS = "tenant_id, thread_key, messages, summary_text, total_turns, total_chars, created_at, updated_at"

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "thread_memories") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_record(row: Any) -> dict[str, Any]:
        return {
            "tenant_id": row[0],
            "thread_key": row[1],
            "messages": row[2] if isinstance(row[2], list) else [],
            "summary_text": row[3],
            "total_turns": int(row[4] or 0),
            "total_chars": int(row[5] or 0),
            "created_at": row[6],
            "updated_at": row[7],
        }

    def _ensure_row(self, cur: Any, *, tenant_id: str, thread_key: str) -> None:
        now = _utcnow_iso()
        cur.execute(
            f"""
            INSERT INTO {self._table_name} ({self._COLUMNS})
            VALUES (%s, %s, '[]'::jsonb, NULL, 0, 0, %s, %s)
            ON CONFLICT(tenant_id, thread_key) DO NOTHING
            """,
            (tenant_id, thread_key, now, now),
        )

    def get(self, *, tenant_id: str, thread_key: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE tenant_id = %s AND thread_key = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, thread_key))
                row = cur.fetchone()
            return self._row_to_record(row) if row is not None else None

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def get_or_create(self, *, tenant_id: str, thread_key: str) -> dict[str, Any]:
        select_sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE tenant_id = %s AND thread_key = %s
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                self._ensure_row(cur, tenant_id=tenant_id, thread_key=thread_key)
                cur.execute(select_sql, (tenant_id, thread_key))
                row = cur.fetchone()
            return self._row_to_record(row)

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def update_atomic(self, *, tenant_id: str, thread_key: str, mutate: MemoryMutator) -> dict[str, Any]:
        select_sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE tenant_id = %s AND thread_key = %s
            FOR UPDATE
        """
        update_sql = f"""
            UPDATE {self._table_name}
            SET messages = %s::jsonb,
                summary_text = %s,
                total_turns = %s,
                total_chars = %s,
                updated_at = %s
            WHERE tenant_id = %s AND thread_key = %s
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                self._ensure_row(cur, tenant_id=tenant_id, thread_key=thread_key)
                cur.execute(select_sql, (tenant_id, thread_key))
                row = cur.fetchone()
                updated = mutate(self._row_to_record(row))
                updated["updated_at"] = _utcnow_iso()
                cur.execute(
                    update_sql,
                    (
                        json.dumps(updated["messages"], ensure_ascii=True),
                        updated.get("summary_text"),
                        int(updated.get("total_turns", 0)),
                        int(updated.get("total_chars", 0)),
                        updated["updated_at"],
                        tenant_id,
                        thread_key,
                    ),
                )
            return updated

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def list(self, *, tenant_id: str, skip: int = 0, take: int = 20) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {self._COLUMNS}
            FROM {self._table_name}
            WHERE tenant_id = %s
            ORDER BY updated_at DESC
            OFFSET %s
            LIMIT %s
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, max(0, skip), max(1, min(take, 1000))))
                rows = cur.fetchall() or []
            return [self._row_to_record(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def count(self, *, tenant_id: str) -> int:
        sql = f"SELECT COUNT(1) FROM {self._table_name} WHERE tenant_id = %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)
