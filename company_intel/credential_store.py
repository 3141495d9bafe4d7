from __future__ import annotations

import logging
import os
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from company_intel.connectors import ConnectorType, resolve_connector_type
from company_intel.db.postgres import PostgresTxRunner, validate_identifier
from company_intel.encryption import ConfigCipher, ConfigDecryptionError, create_cipher_from_env
from company_intel.errors import PipelineError
from company_intel.llm_provider import ProviderConfig, default_provider_settings

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
_SENSITIVE_SUFFIXES = ("token", "secret", "password", "apikey", "api_key", "consumerkey", "consumer_key")


@dataclass
class ConnectorSpec:
    """One enabled connector as the pipeline sees it, config already decrypted.

    ``config`` is None and ``config_error`` is set when the stored config could
    not be decrypted; the fan-out turns that into a failed step.
    """

    connector_type: str
    config: dict[str, Any] | None
    connector_id: str = ""
    config_error: str | None = None


def _normalize_key(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def redact_sensitive(value: object) -> object:
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = _normalize_key(str(key))
            if key_lower == "authorization" or key_lower.endswith(_SENSITIVE_SUFFIXES):
                redacted[str(key)] = REDACTED
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "xoxb-", "bearer ")):
            return REDACTED
    return value


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _has_slack_origin(origin: Mapping[str, Any] | None) -> bool:
    return bool(origin) and bool(str(origin.get("channel_id") or "").strip())


class BaseCredentialStore:
    """Decrypts per-tenant connector, provider and reply credentials.

    Subclasses only move encrypted rows in and out of storage.
    """

    def __init__(self, *, cipher: ConfigCipher) -> None:
        self.cipher = cipher

    def _load_connector_rows(self, *, tenant_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _save_connector_row(self, *, row: dict[str, Any]) -> None:
        raise NotImplementedError

    def _load_provider_token(self, *, tenant_id: str) -> str | None:
        raise NotImplementedError

    def _save_provider_token(self, *, tenant_id: str, token: str) -> None:
        raise NotImplementedError

    def upsert_connector(
        self,
        *,
        tenant_id: str,
        connector_type: ConnectorType | str,
        config: dict[str, Any],
        enabled: bool = True,
        connector_id: str | None = None,
    ) -> dict[str, Any]:
        ctype = resolve_connector_type(str(connector_type))
        row = {
            "connector_id": connector_id or f"conn_{uuid.uuid4().hex[:12]}",
            "tenant_id": tenant_id,
            "connector_type": ctype.value,
            "enabled": bool(enabled),
            "encrypted_config": self.cipher.encrypt_object(config),
            "updated_at": _utcnow_iso(),
        }
        self._save_connector_row(row=row)
        logger.info(
            "connector_config_saved tenant_id=%s connector_id=%s type=%s enabled=%s",
            tenant_id,
            row["connector_id"],
            ctype.value,
            row["enabled"],
        )
        return {
            "connector_id": row["connector_id"],
            "tenant_id": tenant_id,
            "connector_type": ctype.value,
            "enabled": row["enabled"],
            "config": redact_sensitive(config),
        }

    def get_enabled_connectors(self, *, tenant_id: str) -> list[ConnectorSpec]:
        specs: list[ConnectorSpec] = []
        for row in self._load_connector_rows(tenant_id=tenant_id):
            if not row.get("enabled"):
                continue
            try:
                config = self.cipher.decrypt_object(str(row["encrypted_config"]))
            except ConfigDecryptionError as exc:
                logger.warning(
                    "connector_config_unreadable tenant_id=%s connector_id=%s error=%s",
                    tenant_id,
                    row.get("connector_id"),
                    exc,
                )
                specs.append(
                    ConnectorSpec(
                        connector_type=str(row["connector_type"]),
                        config=None,
                        connector_id=str(row.get("connector_id", "")),
                        config_error=str(exc),
                    )
                )
                continue
            specs.append(
                ConnectorSpec(
                    connector_type=str(row["connector_type"]),
                    config=config if isinstance(config, dict) else {},
                    connector_id=str(row.get("connector_id", "")),
                )
            )
        return specs

    def set_provider_chain(self, *, tenant_id: str, providers: list[ProviderConfig | dict[str, Any]]) -> None:
        entries = [p if isinstance(p, ProviderConfig) else ProviderConfig.from_dict(p) for p in providers]
        payload = [
            {
                "provider": p.provider,
                "model": p.model,
                "api_key": p.api_key,
                "enabled": p.enabled,
                "priority": p.priority,
                "base_url": p.base_url,
                "temperature": p.temperature,
                "max_tokens": p.max_tokens,
            }
            for p in entries
        ]
        self._save_provider_token(tenant_id=tenant_id, token=self.cipher.encrypt_object(payload))
        logger.info("provider_chain_saved tenant_id=%s providers=%s", tenant_id, len(entries))

    def ensure_provider_chain(self, *, tenant_id: str) -> list[ProviderConfig]:
        """Seed a tenant that has no provider chain with the disabled defaults."""
        if self._load_provider_token(tenant_id=tenant_id) is not None:
            return self.get_provider_chain(tenant_id=tenant_id)
        defaults = default_provider_settings()
        self.set_provider_chain(tenant_id=tenant_id, providers=defaults)
        return defaults

    def get_provider_chain(self, *, tenant_id: str) -> list[ProviderConfig]:
        token = self._load_provider_token(tenant_id=tenant_id)
        if token is None:
            return []
        try:
            raw = self.cipher.decrypt_object(token)
        except ConfigDecryptionError as exc:
            raise PipelineError(
                code="PROVIDER_CONFIG_UNREADABLE",
                message=f"provider settings could not be decrypted: {exc}",
                error_class="persistence",
                retryable=True,
            ) from exc
        return [ProviderConfig.from_dict(item) for item in raw if isinstance(item, dict)]

    def get_reply_credentials(self, *, tenant_id: str, origin: Mapping[str, Any] | None) -> dict[str, str] | None:
        """Bot token of the tenant's enabled Slack connector, or None.

        Missing credentials only disable reply dispatch, so lookup problems are
        logged and reported as None.
        """
        if not _has_slack_origin(origin):
            return None
        for spec in self.get_enabled_connectors(tenant_id=tenant_id):
            if spec.connector_type != ConnectorType.SLACK.value:
                continue
            if spec.config is None:
                logger.warning("reply_credentials_unreadable tenant_id=%s connector_id=%s", tenant_id, spec.connector_id)
                continue
            token = str(spec.config.get("botToken") or spec.config.get("bot_token") or "").strip()
            if token:
                return {"bot_token": token}
        logger.warning(
            "reply_credentials_missing tenant_id=%s team_id=%s",
            tenant_id,
            (origin or {}).get("team_id"),
        )
        return None


class InMemoryCredentialStore(BaseCredentialStore):
    def __init__(self, *, cipher: ConfigCipher) -> None:
        super().__init__(cipher=cipher)
        self._connectors: dict[str, dict[str, Any]] = {}
        self._providers: dict[str, str] = {}

    def _load_connector_rows(self, *, tenant_id: str) -> list[dict[str, Any]]:
        return [dict(x) for x in self._connectors.values() if x.get("tenant_id") == tenant_id]

    def _save_connector_row(self, *, row: dict[str, Any]) -> None:
        self._connectors[str(row["connector_id"])] = dict(row)

    def _load_provider_token(self, *, tenant_id: str) -> str | None:
        return self._providers.get(tenant_id)

    def _save_provider_token(self, *, tenant_id: str, token: str) -> None:
        self._providers[tenant_id] = token

    def reset(self) -> None:
        self._connectors.clear()
        self._providers.clear()


class PostgresCredentialStore(BaseCredentialStore):
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        cipher: ConfigCipher,
        connectors_table: str = "connector_configs",
        providers_table: str = "provider_configs",
    ) -> None:
        super().__init__(cipher=cipher)
        self._tx_runner = tx_runner
        self._connectors_table = validate_identifier(connectors_table)
        self._providers_table = validate_identifier(providers_table)

    def _load_connector_rows(self, *, tenant_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT connector_id, connector_type, enabled, encrypted_config
            FROM {self._connectors_table}
            WHERE tenant_id = %s
            ORDER BY connector_id ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                rows = cur.fetchall() or []
            return [
                {
                    "connector_id": row[0],
                    "tenant_id": tenant_id,
                    "connector_type": row[1],
                    "enabled": bool(row[2]),
                    "encrypted_config": row[3],
                }
                for row in rows
            ]

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _save_connector_row(self, *, row: dict[str, Any]) -> None:
        sql = f"""
            INSERT INTO {self._connectors_table} (
                connector_id, tenant_id, connector_type, enabled, encrypted_config, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT(connector_id) DO UPDATE
            SET enabled = EXCLUDED.enabled,
                encrypted_config = EXCLUDED.encrypted_config,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        row["connector_id"],
                        row["tenant_id"],
                        row["connector_type"],
                        row["enabled"],
                        row["encrypted_config"],
                        row["updated_at"],
                    ),
                )

        self._tx_runner.run_in_tx(tenant_id=str(row["tenant_id"]), fn=_op)

    def _load_provider_token(self, *, tenant_id: str) -> str | None:
        sql = f"""
            SELECT encrypted_providers
            FROM {self._providers_table}
            WHERE tenant_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> str | None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                row = cur.fetchone()
            return None if row is None else str(row[0])

        return self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)

    def _save_provider_token(self, *, tenant_id: str, token: str) -> None:
        sql = f"""
            INSERT INTO {self._providers_table} (tenant_id, encrypted_providers, updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT(tenant_id) DO UPDATE
            SET encrypted_providers = EXCLUDED.encrypted_providers,
                updated_at = EXCLUDED.updated_at
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, token, _utcnow_iso()))

        self._tx_runner.run_in_tx(tenant_id=tenant_id, fn=_op)


def create_credential_store_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    tx_runner: PostgresTxRunner | None = None,
) -> BaseCredentialStore:
    env = os.environ if environ is None else environ
    cipher = create_cipher_from_env(env)
    backend = env.get("INTEL_STORE_BACKEND", "memory").strip().lower()
    if backend == "postgres":
        if tx_runner is None:
            dsn = env.get("POSTGRES_DSN", "").strip()
            if not dsn:
                raise ValueError("POSTGRES_DSN must be set when INTEL_STORE_BACKEND=postgres")
            tx_runner = PostgresTxRunner(dsn)
        return PostgresCredentialStore(tx_runner=tx_runner, cipher=cipher)
    if backend != "memory":
        raise RuntimeError(f"unsupported store backend: {backend}")
    return InMemoryCredentialStore(cipher=cipher)
