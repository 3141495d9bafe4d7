from __future__ import annotations

import itertools
import logging
import os
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from company_intel.db.postgres import PostgresTxRunner
from company_intel.db.rls import PostgresRlsManager
from company_intel.db.schema import SCHEMA_STATEMENTS, TRUNCATE_TABLES
from company_intel.env import env_bool
from company_intel.errors import PipelineError
from company_intel.repositories import (
    InMemoryErrorLogsRepository,
    InMemoryOutboxEventsRepository,
    InMemoryRunStepsRepository,
    InMemoryRunsRepository,
    InMemoryThreadMemoriesRepository,
    PostgresErrorLogsRepository,
    PostgresOutboxEventsRepository,
    PostgresRunStepsRepository,
    PostgresRunsRepository,
    PostgresThreadMemoriesRepository,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Execution history for the enrichment pipeline.

    Runs, run steps, thread memories, error logs and outbox events live in
    plain dicts/lists here; ``PostgresBackedStore`` swaps the repositories
    for PostgreSQL ones while keeping this interface.
    """

    def __init__(self) -> None:
        self.runs: dict[str, dict[str, Any]] = {}
        self.run_steps: dict[str, dict[str, Any]] = {}
        self.thread_memories: dict[tuple[str, str], dict[str, Any]] = {}
        self.error_logs: list[dict[str, Any]] = []
        self.outbox_events: dict[str, dict[str, Any]] = {}
        self._outbox_seq = itertools.count(1)
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.runs_repository = InMemoryRunsRepository(self.runs)
        self.run_steps_repository = InMemoryRunStepsRepository(self.run_steps)
        self.thread_memories_repository = InMemoryThreadMemoriesRepository(self.thread_memories)
        self.error_logs_repository = InMemoryErrorLogsRepository(self.error_logs)
        self.outbox_repository = InMemoryOutboxEventsRepository(self.outbox_events)

    def reset(self) -> None:
        self.runs.clear()
        self.run_steps.clear()
        self.thread_memories.clear()
        self.error_logs.clear()
        self.outbox_events.clear()
        self._outbox_seq = itertools.count(1)
        self._bind_repositories()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def save_run(self, *, run: dict[str, Any]) -> dict[str, Any]:
        return self.runs_repository.save(run=run)

    def get_run_for_tenant(self, *, tenant_id: str, run_id: str) -> dict[str, Any] | None:
        return self.runs_repository.get(tenant_id=tenant_id, run_id=run_id)

    def list_runs(self, *, tenant_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return self.runs_repository.list(tenant_id=tenant_id, limit=limit)

    def save_run_step(self, *, step: dict[str, Any]) -> dict[str, Any]:
        return self.run_steps_repository.save(step=step)

    def get_run_step_for_tenant(self, *, tenant_id: str, step_id: str) -> dict[str, Any] | None:
        return self.run_steps_repository.get(tenant_id=tenant_id, step_id=step_id)

    def list_run_steps(self, *, tenant_id: str, run_id: str) -> list[dict[str, Any]]:
        return self.run_steps_repository.list_for_run(tenant_id=tenant_id, run_id=run_id)

    def append_error_log(
        self,
        *,
        tenant_id: str,
        source: str,
        message: str,
        run_id: str | None = None,
        stack: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        log = {
            "error_id": f"err_{uuid.uuid4().hex[:12]}",
            "tenant_id": tenant_id,
            "run_id": run_id,
            "source": source,
            "message": message,
            "stack": stack,
            "metadata": dict(metadata or {}),
            "created_at": self._utcnow_iso(),
        }
        return self.error_logs_repository.append(log=log)

    def list_error_logs(
        self,
        *,
        tenant_id: str,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        return self.error_logs_repository.list(tenant_id=tenant_id, run_id=run_id, limit=limit)

    def append_outbox_event(
        self,
        *,
        tenant_id: str,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        event = {
            "event_id": f"evt_{uuid.uuid4().hex[:12]}",
            "seq": next(self._outbox_seq),
            "tenant_id": tenant_id,
            "event_type": event_type,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "payload": payload,
            "status": "pending",
            "published_at": None,
            "created_at": self._utcnow_iso(),
        }
        return self.outbox_repository.append(event=event)

    def list_outbox_events(
        self,
        *,
        tenant_id: str,
        status: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        return self.outbox_repository.list(tenant_id=tenant_id, status=status, limit=limit)

    def mark_outbox_event_published(self, *, tenant_id: str, event_id: str) -> dict[str, Any]:
        event = self.outbox_repository.mark_published(
            tenant_id=tenant_id,
            event_id=event_id,
            published_at=self._utcnow_iso(),
        )
        if event is None:
            raise PipelineError(
                code="OUTBOX_EVENT_NOT_FOUND",
                message="outbox event not found",
                error_class="validation",
                retryable=False,
            )
        return event


class PostgresBackedStore(InMemoryStore):
    """Store backend that persists every record in PostgreSQL tables."""

    def __init__(self, *, dsn: str, apply_rls: bool = False) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._lock = threading.RLock()
        self.tx_runner = PostgresTxRunner(self._dsn)
        super().__init__()
        self._initialize_database()
        if apply_rls:
            PostgresRlsManager(self._dsn).apply()

    def _bind_repositories(self) -> None:
        self.runs_repository = PostgresRunsRepository(tx_runner=self.tx_runner)
        self.run_steps_repository = PostgresRunStepsRepository(tx_runner=self.tx_runner)
        self.thread_memories_repository = PostgresThreadMemoriesRepository(tx_runner=self.tx_runner)
        self.error_logs_repository = PostgresErrorLogsRepository(tx_runner=self.tx_runner)
        self.outbox_repository = PostgresOutboxEventsRepository(tx_runner=self.tx_runner)

    def _initialize_database(self) -> None:
        with self._lock, self.tx_runner.connect() as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        logger.info("postgres_schema_ready tables=%s", len(SCHEMA_STATEMENTS))

    def reset(self) -> None:
        with self._lock, self.tx_runner.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE TABLE {', '.join(TRUNCATE_TABLES)}")
            conn.commit()
        super().reset()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("INTEL_STORE_BACKEND", "memory").strip().lower()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when INTEL_STORE_BACKEND=postgres")
        return PostgresBackedStore(dsn=dsn, apply_rls=env_bool(env, "POSTGRES_APPLY_RLS", default=False))
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return InMemoryStore()
