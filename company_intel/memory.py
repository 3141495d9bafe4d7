from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

MAX_TURNS = 50
MAX_CHARS = 12_000
ALLOWED_ROLES = frozenset({"user", "assistant", "system"})


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def make_message(role: str, content: str, *, ts: str | None = None) -> dict[str, str]:
    if role not in ALLOWED_ROLES:
        raise ValueError(f"unsupported memory role: {role}")
    return {"role": role, "content": str(content), "ts": ts or _utcnow_iso()}


def trim_messages(
    messages: list[dict[str, Any]],
    *,
    max_turns: int = MAX_TURNS,
    max_chars: int = MAX_CHARS,
) -> list[dict[str, Any]]:
    """Drop the oldest message, one at a time, until both bounds hold."""
    kept = list(messages)
    total = sum(len(str(m.get("content", ""))) for m in kept)
    while kept and (len(kept) > max_turns or total > max_chars):
        dropped = kept.pop(0)
        total -= len(str(dropped.get("content", "")))
    return kept


class ThreadMemoryManager:
    """Bounded conversation history per (tenant, thread).

    ``total_turns`` and ``total_chars`` are lifetime counters; trimming only
    affects the retained ``messages``.
    """

    def __init__(
        self,
        *,
        repository: Any,
        max_turns: int = MAX_TURNS,
        max_chars: int = MAX_CHARS,
    ) -> None:
        self.repository = repository
        self.max_turns = max(1, int(max_turns))
        self.max_chars = max(1, int(max_chars))

    def get_or_create(self, *, tenant_id: str, thread_key: str) -> dict[str, Any]:
        return self.repository.get_or_create(tenant_id=tenant_id, thread_key=thread_key)

    def append(
        self,
        *,
        tenant_id: str,
        thread_key: str,
        new_messages: list[dict[str, Any]],
    ) -> dict[str, Any]:
        incoming = [make_message(str(m["role"]), str(m.get("content", "")), ts=m.get("ts")) for m in new_messages]
        appended_chars = sum(len(m["content"]) for m in incoming)

        def _mutate(record: dict[str, Any]) -> dict[str, Any]:
            combined = list(record.get("messages", [])) + incoming
            record["messages"] = trim_messages(combined, max_turns=self.max_turns, max_chars=self.max_chars)
            record["total_turns"] = int(record.get("total_turns", 0)) + len(incoming)
            record["total_chars"] = int(record.get("total_chars", 0)) + appended_chars
            return record

        updated = self.repository.update_atomic(tenant_id=tenant_id, thread_key=thread_key, mutate=_mutate)
        logger.debug(
            "thread_memory_appended tenant_id=%s thread_key=%s added=%s retained=%s",
            tenant_id,
            thread_key,
            len(incoming),
            len(updated["messages"]),
        )
        return updated

    def set_summary(self, *, tenant_id: str, thread_key: str, summary_text: str | None) -> dict[str, Any]:
        def _mutate(record: dict[str, Any]) -> dict[str, Any]:
            record["summary_text"] = summary_text
            return record

        return self.repository.update_atomic(tenant_id=tenant_id, thread_key=thread_key, mutate=_mutate)

    def list_threads(self, *, tenant_id: str, skip: int = 0, take: int = 20) -> dict[str, Any]:
        rows = self.repository.list(tenant_id=tenant_id, skip=skip, take=take)
        items = [
            {
                "thread_key": row["thread_key"],
                "message_count": len(row.get("messages", [])),
                "total_turns": row.get("total_turns", 0),
                "total_chars": row.get("total_chars", 0),
                "summary_text": row.get("summary_text"),
                "updated_at": row.get("updated_at"),
            }
            for row in rows
        ]
        return {"items": items, "total": self.repository.count(tenant_id=tenant_id)}

    def get_thread(self, *, tenant_id: str, thread_key: str) -> dict[str, Any] | None:
        return self.repository.get(tenant_id=tenant_id, thread_key=thread_key)
