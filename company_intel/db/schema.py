from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS runs (
      run_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      job_id TEXT,
      trigger TEXT,
      status TEXT NOT NULL,
      started_at TEXT NOT NULL,
      completed_at TEXT,
      duration_ms INTEGER,
      payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_tenant_started ON runs(tenant_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS run_steps (
      step_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      run_id TEXT NOT NULL REFERENCES runs(run_id),
      connector TEXT NOT NULL,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL,
      duration_ms INTEGER,
      payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_run_steps_run ON run_steps(tenant_id, run_id)",
    """
    CREATE TABLE IF NOT EXISTS thread_memories (
      tenant_id TEXT NOT NULL,
      thread_key TEXT NOT NULL,
      messages JSONB NOT NULL DEFAULT '[]'::jsonb,
      summary_text TEXT,
      total_turns INTEGER NOT NULL DEFAULT 0,
      total_chars INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL,
      updated_at TEXT NOT NULL,
      PRIMARY KEY (tenant_id, thread_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS error_logs (
      error_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      run_id TEXT,
      source TEXT NOT NULL,
      message TEXT NOT NULL,
      created_at TEXT NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outbox_events (
      event_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      event_type TEXT NOT NULL,
      aggregate_type TEXT NOT NULL,
      aggregate_id TEXT NOT NULL,
      status TEXT NOT NULL,
      created_at TEXT NOT NULL,
      payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS connector_configs (
      connector_id TEXT PRIMARY KEY,
      tenant_id TEXT NOT NULL,
      connector_type TEXT NOT NULL,
      enabled BOOLEAN NOT NULL DEFAULT TRUE,
      encrypted_config TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_configs (
      tenant_id TEXT PRIMARY KEY,
      encrypted_providers TEXT NOT NULL,
      updated_at TEXT NOT NULL
    )
    """,
)

TRUNCATE_TABLES: tuple[str, ...] = (
    "run_steps",
    "runs",
    "thread_memories",
    "error_logs",
    "outbox_events",
)
