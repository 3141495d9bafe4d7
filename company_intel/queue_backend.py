from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

ENRICHMENT_QUEUE = "enrichment"
DEFAULT_NAMESPACE = "intel"


@dataclass
class QueueMessage:
    message_id: str
    tenant_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None
    duplicate: bool = False


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _due_iso(available_at: datetime | None) -> str:
    if isinstance(available_at, datetime):
        return available_at.astimezone(UTC).isoformat()
    return _utcnow_iso()


def _delayed_iso(delay_ms: int) -> str:
    return (datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()


def _is_due(available_at: str | None) -> bool:
    if not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


def _new_message_id(job_id: str | None) -> str:
    return job_id.strip() if job_id and job_id.strip() else f"msg_{uuid.uuid4().hex[:12]}"


class InMemoryQueueBackend:
    """Process-local queue.

    Passing ``job_id`` makes it the message id; enqueueing a job id that is
    still pending or inflight returns the existing message flagged
    ``duplicate`` instead of adding a second copy.
    """

    def __init__(self, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._lock = threading.RLock()
        self._namespace = namespace
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def queue_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}"

    def _find_pending(self, message_id: str) -> QueueMessage | None:
        for queue in self._queues.values():
            for msg in queue:
                if msg.message_id == message_id:
                    return msg
        return None

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
        job_id: str | None = None,
    ) -> QueueMessage:
        with self._lock:
            message_id = _new_message_id(job_id)
            existing = self._inflight.get(message_id) or self._find_pending(message_id)
            if existing is not None:
                return QueueMessage(**{**existing.__dict__, "duplicate": True})
            msg = QueueMessage(
                message_id=message_id,
                tenant_id=tenant_id,
                queue_name=queue_name,
                payload=payload,
                available_at=_due_iso(available_at),
            )
            self._queues.setdefault(self.queue_key(tenant_id=tenant_id, queue_name=queue_name), deque()).append(msg)
            return msg

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(self.queue_key(tenant_id=tenant_id, queue_name=queue_name), deque())
            for _ in range(len(queue)):
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.tenant_id != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            self._inflight.pop(message_id, None)

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            if msg.tenant_id != tenant_id:
                self._inflight[message_id] = msg
                raise RuntimeError("tenant mismatch for queue message")
            msg.attempt += 1
            if requeue:
                msg.available_at = _delayed_iso(delay_ms)
                key = self.queue_key(tenant_id=msg.tenant_id, queue_name=msg.queue_name)
                self._queues.setdefault(key, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(self.queue_key(tenant_id=tenant_id, queue_name=queue_name), deque()))

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()

    def list_tenants(self, *, queue_name: str) -> list[str]:
        with self._lock:
            prefix = f"{self._namespace}:"
            suffix = f":queue:{queue_name}"
            tenants = {
                key[len(prefix) : -len(suffix)]
                for key, queue in self._queues.items()
                if queue and key.startswith(prefix) and key.endswith(suffix)
            }
            return sorted(t for t in tenants if t)


class SqliteQueueBackend:
    """SQLite-backed queue that survives worker restarts on a single host."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_messages (
                    message_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_messages_lookup
                ON queue_messages(tenant_id, queue_name, status, created_at)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row, *, duplicate: bool = False) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            tenant_id=row["tenant_id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            available_at=row["available_at"],
            duplicate=duplicate,
        )

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
        job_id: str | None = None,
    ) -> QueueMessage:
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            message_id = _new_message_id(job_id)
            row = conn.execute(
                """
                SELECT message_id, tenant_id, queue_name, payload, attempt, available_at, status
                FROM queue_messages
                WHERE message_id = ?
                """,
                (message_id,),
            ).fetchone()
            if row is not None and row["status"] in {"pending", "inflight"}:
                conn.commit()
                return self._row_to_message(row, duplicate=True)
            if row is not None:
                conn.execute("DELETE FROM queue_messages WHERE message_id = ?", (message_id,))

            now = _utcnow_iso()
            msg = QueueMessage(
                message_id=message_id,
                tenant_id=tenant_id,
                queue_name=queue_name,
                payload=payload,
                available_at=_due_iso(available_at),
            )
            conn.execute(
                """
                INSERT INTO queue_messages(
                    message_id, tenant_id, queue_name, payload, attempt, status, available_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 0, 'pending', ?, ?, ?)
                """,
                (
                    msg.message_id,
                    msg.tenant_id,
                    msg.queue_name,
                    json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                    msg.available_at,
                    now,
                    now,
                ),
            )
            conn.commit()
            return msg

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT message_id, tenant_id, queue_name, payload, attempt, available_at
                FROM queue_messages
                WHERE tenant_id = ? AND queue_name = ? AND status = 'pending' AND available_at <= ?
                ORDER BY available_at ASC, created_at ASC
                LIMIT 1
                """,
                (tenant_id, queue_name, _utcnow_iso()),
            ).fetchone()
            if row is None:
                conn.commit()
                return None
            conn.execute(
                "UPDATE queue_messages SET status = 'inflight', updated_at = ? WHERE message_id = ?",
                (_utcnow_iso(), row["message_id"]),
            )
            conn.commit()
            return self._row_to_message(row)

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT tenant_id FROM queue_messages WHERE message_id = ? AND status = 'inflight'",
                (message_id,),
            ).fetchone()
            if row is None:
                return
            if row["tenant_id"] != tenant_id:
                raise RuntimeError("tenant mismatch for queue message")
            conn.execute("DELETE FROM queue_messages WHERE message_id = ?", (message_id,))
            conn.commit()

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT message_id, tenant_id, queue_name, payload, attempt, available_at
                FROM queue_messages
                WHERE message_id = ? AND status = 'inflight'
                """,
                (message_id,),
            ).fetchone()
            if row is None:
                conn.commit()
                return None
            if row["tenant_id"] != tenant_id:
                conn.commit()
                raise RuntimeError("tenant mismatch for queue message")
            msg = self._row_to_message(row)
            msg.attempt += 1
            if requeue:
                msg.available_at = _delayed_iso(delay_ms)
            conn.execute(
                """
                UPDATE queue_messages
                SET attempt = ?, status = ?, available_at = ?, updated_at = ?
                WHERE message_id = ?
                """,
                (msg.attempt, "pending" if requeue else "discarded", msg.available_at, _utcnow_iso(), message_id),
            )
            conn.commit()
            return msg

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS cnt
                FROM queue_messages
                WHERE tenant_id = ? AND queue_name = ? AND status = 'pending'
                """,
                (tenant_id, queue_name),
            ).fetchone()
            return int(row["cnt"]) if row is not None else 0

    def reset(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM queue_messages")
            conn.commit()

    def list_tenants(self, *, queue_name: str) -> list[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT tenant_id
                FROM queue_messages
                WHERE queue_name = ? AND status = 'pending'
                ORDER BY tenant_id ASC
                """,
                (queue_name,),
            ).fetchall()
        return [str(row["tenant_id"]) for row in rows if row["tenant_id"]]


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for INTEL_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue shared by every worker process.

    Message bodies live under ``{ns}:msg:{id}``; per-tenant pending lists and
    inflight sets hold ids only.
    """

    def __init__(self, *, dsn: str = "", namespace: str = DEFAULT_NAMESPACE, client: Any = None) -> None:
        self._namespace = namespace.strip() or DEFAULT_NAMESPACE
        self._lock = threading.RLock()
        if client is not None:
            self._client = client
            return
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}:pending"

    def _inflight_key(self, *, tenant_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{tenant_id}:queue:{queue_name}:inflight"

    def _msg_key(self, *, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _load_msg(self, *, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id=message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, *, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id=message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any], *, duplicate: bool = False) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            tenant_id=str(data.get("tenant_id", "")),
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
            duplicate=duplicate,
        )

    def _load_owned(self, *, tenant_id: str, message_id: str) -> dict[str, Any] | None:
        data = self._load_msg(message_id=message_id)
        if data is None:
            return None
        if data.get("tenant_id") != tenant_id:
            raise RuntimeError("tenant mismatch for queue message")
        if data.get("status") != "inflight":
            return None
        return data

    def enqueue(
        self,
        *,
        tenant_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
        job_id: str | None = None,
    ) -> QueueMessage:
        with self._lock:
            message_id = _new_message_id(job_id)
            existing = self._load_msg(message_id=message_id)
            if existing is not None and existing.get("status") in {"pending", "inflight"}:
                return self._to_message(message_id, existing, duplicate=True)
            data = {
                "tenant_id": tenant_id,
                "queue_name": queue_name,
                "payload": payload,
                "attempt": 0,
                "status": "pending",
                "available_at": _due_iso(available_at),
            }
            pending_key = self._pending_key(tenant_id=tenant_id, queue_name=queue_name)
            self._save_msg(message_id=message_id, data=data)
            self._client.rpush(pending_key, message_id)
            self._client.sadd(
                self._registry_key(),
                pending_key,
                self._inflight_key(tenant_id=tenant_id, queue_name=queue_name),
                self._msg_key(message_id=message_id),
            )
            return self._to_message(message_id, data)

    def dequeue(self, *, tenant_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(tenant_id=tenant_id, queue_name=queue_name)
            for _ in range(int(self._client.llen(pending_key))):
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load_msg(message_id=message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at")):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["status"] = "inflight"
                self._save_msg(message_id=message_id, data=data)
                self._client.sadd(self._inflight_key(tenant_id=tenant_id, queue_name=queue_name), message_id)
                return self._to_message(message_id, data)
            return None

    def ack(self, *, tenant_id: str, message_id: str) -> None:
        with self._lock:
            data = self._load_owned(tenant_id=tenant_id, message_id=message_id)
            if data is None:
                return
            inflight_key = self._inflight_key(tenant_id=tenant_id, queue_name=str(data["queue_name"]))
            self._client.srem(inflight_key, message_id)
            self._client.delete(self._msg_key(message_id=message_id))

    def nack(
        self,
        *,
        tenant_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            data = self._load_owned(tenant_id=tenant_id, message_id=message_id)
            if data is None:
                return None
            queue_name = str(data["queue_name"])
            data["attempt"] = int(data.get("attempt", 0)) + 1
            self._client.srem(self._inflight_key(tenant_id=tenant_id, queue_name=queue_name), message_id)
            if requeue:
                data["status"] = "pending"
                data["available_at"] = _delayed_iso(delay_ms)
                self._save_msg(message_id=message_id, data=data)
                self._client.lpush(self._pending_key(tenant_id=tenant_id, queue_name=queue_name), message_id)
            else:
                data["status"] = "discarded"
                self._save_msg(message_id=message_id, data=data)
            return self._to_message(message_id, data)

    def pending_count(self, *, tenant_id: str, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(tenant_id=tenant_id, queue_name=queue_name)))

    def reset(self) -> None:
        with self._lock:
            keys = self._client.smembers(self._registry_key())
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(self._registry_key())

    def list_tenants(self, *, queue_name: str) -> list[str]:
        with self._lock:
            prefix = f"{self._namespace}:"
            suffix = f":queue:{queue_name}:pending"
            tenants: set[str] = set()
            for key in self._client.smembers(self._registry_key()):
                if not isinstance(key, str) or not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                if int(self._client.llen(key)) <= 0:
                    continue
                tenant_id = key[len(prefix) : -len(suffix)]
                if tenant_id:
                    tenants.add(tenant_id)
            return sorted(tenants)


QueueBackend = InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend


def create_queue_from_env(environ: Mapping[str, str] | None = None) -> QueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("INTEL_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "sqlite":
        return SqliteQueueBackend(env.get("INTEL_QUEUE_SQLITE_PATH", ".runtime/intel_queue.sqlite3"))
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when INTEL_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=env.get("INTEL_QUEUE_KEY_PREFIX", DEFAULT_NAMESPACE))
    raise RuntimeError(f"unsupported queue backend: {backend}")
