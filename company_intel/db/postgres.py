from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresTxRunner:
    """Run one callback per transaction with ``app.current_tenant`` set for row-level security."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def connect(self) -> Any:
        psycopg = _import_psycopg()
        return psycopg.connect(self._dsn)

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_tenant', %s, true)", (tenant_id,))
            result = fn(conn)
            conn.commit()
            return result
