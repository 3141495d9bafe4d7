"""
Enrichment job handler.

Flow per job:
  1. open a Run (RUNNING)
  2. resolve reply credentials for the origin thread
  3. load the tenant's enabled connectors, configs decrypted
  4. load thread memory
  5. fan out one RunStep per connector
  6. build the LLM prompt from memory and the result digest
  7. ask the provider fallback chain, or fall back to the apology text
  8. post the reply
  9. append the user and assistant turns to thread memory
 10. finalize the Run as COMPLETED or DEGRADED
"""

from __future__ import annotations

import hashlib
import logging
import time
import traceback
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from company_intel.fanout import FanOutExecutor
from company_intel.llm_provider import ProviderConfig, ProviderFallbackChain
from company_intel.memory import ThreadMemoryManager, make_message
from company_intel.reply_channel import SlackReplyChannel
from company_intel.results import NormalizedResult
from company_intel.run_tracker import RunStatus, RunTracker, RunTrigger

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = " ".join(
    [
        "You are a company intelligence assistant integrated with Slack.",
        "You have access to real-time data from connected business integrations.",
        "Provide concise, accurate, and actionable answers based on the data provided.",
        "When referencing specific data points, briefly cite the source in parentheses.",
        "If no relevant data was found, say so clearly and suggest what to check.",
    ]
)
APOLOGY_TEXT = "⚠️ I encountered an error generating a response. Please try again in a moment."
MEMORY_CONTEXT_TURNS = 6
DIGEST_ITEMS_PER_SOURCE = 5

ERROR_SOURCE = "enrichment.orchestrator"
ERROR_SOURCE_LLM = "enrichment.orchestrator/llm"
ERROR_SOURCE_REPLY = "enrichment.orchestrator/reply"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def derive_job_id(tenant_id: str, thread_key: str) -> str:
    """Stable per conversation so duplicate triggers collapse in the queue."""
    digest = hashlib.sha256(f"{tenant_id}:{thread_key}".encode("utf-8")).hexdigest()
    return f"job_{digest[:24]}"


class OriginContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    team_id: str | None = None
    channel_id: str | None = None
    thread_ts: str | None = None
    user_id: str | None = None
    bot_user_id: str | None = None

    @property
    def is_slack(self) -> bool:
        return bool(self.channel_id or self.team_id)


class EnrichmentJob(BaseModel):
    tenant_id: str = Field(min_length=1)
    thread_key: str = Field(min_length=1)
    user_message: str
    origin: OriginContext | None = None
    enqueued_at: str = Field(default_factory=_utcnow_iso)

    @property
    def job_id(self) -> str:
        return derive_job_id(self.tenant_id, self.thread_key)


def render_result_digest(results: list[NormalizedResult]) -> str:
    blocks: list[str] = []
    for result in results:
        if not result.success:
            reason = result.error.message if result.error is not None else result.status_message or "unknown"
            blocks.append(f"[{result.source}]: Error - {reason}")
            continue
        count = len(result.items)
        lines = [
            f"  • {item.label}: {item.summary}" if item.summary else f"  • {item.label}"
            for item in result.items[:DIGEST_ITEMS_PER_SOURCE]
        ]
        header = f"[{result.source}] ({count} result{'' if count == 1 else 's'}):"
        blocks.append("\n".join([header, *lines]))
    return "\n\n".join(blocks)


def build_llm_messages(
    user_message: str,
    memory_messages: list[dict[str, Any]],
    results: list[NormalizedResult],
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    for m in memory_messages[-MEMORY_CONTEXT_TURNS:]:
        if m.get("role") in {"user", "assistant"}:
            messages.append({"role": str(m["role"]), "content": str(m.get("content", ""))})

    digest = render_result_digest(results)
    if digest:
        content = f"User query: {user_message}\n\nLive data from integrations:\n{digest}"
    else:
        content = user_message
    messages.append({"role": "user", "content": content})
    return messages


class EnrichmentOrchestrator:
    def __init__(
        self,
        *,
        store: Any,
        credentials: Any,
        memory: ThreadMemoryManager | None = None,
        tracker: RunTracker | None = None,
        fanout: FanOutExecutor | None = None,
        llm_chain: ProviderFallbackChain | None = None,
        reply_channel: Any = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.memory = memory or ThreadMemoryManager(repository=store.thread_memories_repository)
        self.tracker = tracker or RunTracker(store=store)
        self.fanout = fanout or FanOutExecutor(tracker=self.tracker)
        self.llm_chain = llm_chain or ProviderFallbackChain()
        self.reply_channel = reply_channel or SlackReplyChannel()

    def process(self, job: EnrichmentJob | Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(job, EnrichmentJob):
            job = EnrichmentJob.model_validate(job)
        t0 = time.monotonic()
        origin = job.origin.model_dump() if job.origin is not None else None
        trigger = RunTrigger.SLACK_MENTION if job.origin is not None and job.origin.is_slack else RunTrigger.API

        run = self.tracker.start_run(
            tenant_id=job.tenant_id,
            job_id=job.job_id,
            trigger=trigger,
            input_snapshot=job.model_dump(mode="json"),
        )
        try:
            reply_credentials = self.credentials.get_reply_credentials(tenant_id=job.tenant_id, origin=origin)
            connectors = self.credentials.get_enabled_connectors(tenant_id=job.tenant_id)
            logger.info("connectors_loaded run_id=%s count=%s", run["run_id"], len(connectors))

            thread = self.memory.get_thread(tenant_id=job.tenant_id, thread_key=job.thread_key)
            memory_messages = list(thread["messages"]) if thread else []

            results = self.fanout.run_all(run=run, connectors=connectors, query=job.user_message)
            successful = sum(1 for r in results if r.success)
            failed = len(results) - successful

            providers = self.credentials.get_provider_chain(tenant_id=job.tenant_id)
            llm_messages = build_llm_messages(job.user_message, memory_messages, results)
            response_text = self._generate(run=run, job=job, messages=llm_messages, providers=providers)

            if origin is not None and reply_credentials:
                self._dispatch_reply(run=run, job=job, origin=origin, text=response_text, credentials=reply_credentials)
            elif origin is not None:
                logger.warning("reply_skipped run_id=%s reason=no_credentials", run["run_id"])

            self.memory.append(
                tenant_id=job.tenant_id,
                thread_key=job.thread_key,
                new_messages=[make_message("user", job.user_message), make_message("assistant", response_text)],
            )

            final = self.tracker.finalize_run(run=run, results=results, output_summary=response_text)
        except Exception as exc:
            self._record_failure(run=run, job=job, exc=exc)
            raise

        duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "enrichment_complete run_id=%s status=%s successful=%s failed=%s duration_ms=%s",
            final["run_id"],
            final["status"],
            successful,
            failed,
            duration_ms,
        )
        return {
            "run_id": final["run_id"],
            "job_id": job.job_id,
            "status": final["status"],
            "response_text": response_text,
            "successful_sources": successful,
            "failed_sources": failed,
            "duration_ms": duration_ms,
        }

    def _generate(
        self,
        *,
        run: dict[str, Any],
        job: EnrichmentJob,
        messages: list[dict[str, str]],
        providers: list[ProviderConfig],
    ) -> str:
        try:
            completion = self.llm_chain.complete(messages, providers)
        except Exception as exc:
            logger.error("llm_failed run_id=%s error=%s", run["run_id"], exc)
            self.store.append_error_log(
                tenant_id=job.tenant_id,
                run_id=run["run_id"],
                source=ERROR_SOURCE_LLM,
                message=str(exc),
                metadata={"job_id": job.job_id},
            )
            return APOLOGY_TEXT
        logger.info(
            "llm_responded run_id=%s provider=%s model=%s attempts=%s",
            run["run_id"],
            completion.provider,
            completion.model,
            len(completion.attempts),
        )
        return completion.content

    def _dispatch_reply(
        self,
        *,
        run: dict[str, Any],
        job: EnrichmentJob,
        origin: dict[str, Any],
        text: str,
        credentials: Mapping[str, str],
    ) -> None:
        try:
            self.reply_channel.post_reply(origin=origin, text=text, credentials=credentials)
        except Exception as exc:
            logger.error("reply_failed run_id=%s channel=%s error=%s", run["run_id"], origin.get("channel_id"), exc)
            self.store.append_error_log(
                tenant_id=job.tenant_id,
                run_id=run["run_id"],
                source=ERROR_SOURCE_REPLY,
                message=str(exc),
                metadata={"job_id": job.job_id, "channel": origin.get("channel_id")},
            )

    def _record_failure(self, *, run: dict[str, Any], job: EnrichmentJob, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        logger.error("enrichment_failed run_id=%s job_id=%s error=%s", run["run_id"], job.job_id, message)
        # The run state comes first; a broken error log must not leave it RUNNING.
        try:
            self.tracker.fail_run(run=run, error=message)
        except Exception:
            logger.exception("run_fail_unrecorded run_id=%s", run["run_id"])
        try:
            self.store.append_error_log(
                tenant_id=job.tenant_id,
                run_id=run["run_id"],
                source=ERROR_SOURCE,
                message=message,
                stack="".join(traceback.format_exception(exc)),
                metadata={"job_id": job.job_id},
            )
        except Exception:
            logger.exception("error_log_unrecorded run_id=%s", run["run_id"])

    def fail_stalled(self, job: EnrichmentJob, *, error: str) -> list[str]:
        """Mark every still-RUNNING run of this job FAILED; returns their ids."""
        failed: list[str] = []
        for run in self.store.list_runs(tenant_id=job.tenant_id, limit=1000):
            if run.get("job_id") != job.job_id or run.get("status") != RunStatus.RUNNING.value:
                continue
            if self.tracker.fail_run(run=run, error=error) is not None:
                failed.append(run["run_id"])
        return failed
