from __future__ import annotations

from company_intel.db.postgres import _import_psycopg, validate_identifier


class PostgresRlsManager:
    """Enable tenant isolation policies keyed on ``app.current_tenant``."""

    DEFAULT_TABLES: tuple[str, ...] = (
        "runs",
        "run_steps",
        "thread_memories",
        "error_logs",
        "outbox_events",
        "connector_configs",
        "provider_configs",
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [validate_identifier(name) for name in target_tables]

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table in self._tables:
                    policy = f"{table}_tenant_isolation"
                    cur.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
                    cur.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
                    cur.execute(f"DROP POLICY IF EXISTS {policy} ON {table}")
                    cur.execute(
                        f"""
                        CREATE POLICY {policy} ON {table}
                        USING ({table}.tenant_id = current_setting('app.current_tenant', true))
                        WITH CHECK ({table}.tenant_id = current_setting('app.current_tenant', true))
                        """
                    )
            conn.commit()
        return list(self._tables)
