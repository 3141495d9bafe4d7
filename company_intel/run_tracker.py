from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from company_intel.errors import PipelineError
from company_intel.results import NormalizedResult

logger = logging.getLogger(__name__)

OUTPUT_SUMMARY_MAX_CHARS = 500


class RunStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


class RunStepStatus(StrEnum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RunTrigger(StrEnum):
    SLACK_MENTION = "slack_mention"
    API = "api"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.DEGRADED, RunStatus.FAILED})


def resolve_run_status(*, invoked: int, failed: int) -> RunStatus:
    """Final status from connector outcomes.

    No failures is COMPLETED, including the case where nothing was invoked.
    Any failure, up to and including all of them, is DEGRADED because a reply
    was still produced. FAILED is only reached through ``fail_run``.
    """
    if invoked < 0 or failed < 0 or failed > invoked:
        raise ValueError(f"invalid step counts: invoked={invoked} failed={failed}")
    if failed == 0:
        return RunStatus.COMPLETED
    return RunStatus.DEGRADED


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _duration_ms(started_at: str, ended: datetime) -> int:
    try:
        started = datetime.fromisoformat(started_at)
    except (TypeError, ValueError):
        return 0
    return max(0, int((ended - started).total_seconds() * 1000))


class RunTracker:
    """State machine for Runs and their RunSteps.

    Every transition is persisted through the store, emitted as an outbox
    event and logged.
    """

    ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
        RunStatus.PENDING: {RunStatus.RUNNING},
        RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.DEGRADED, RunStatus.FAILED},
        RunStatus.COMPLETED: set(),
        RunStatus.DEGRADED: set(),
        RunStatus.FAILED: set(),
    }
    ALLOWED_STEP_TRANSITIONS: dict[RunStepStatus, set[RunStepStatus]] = {
        RunStepStatus.RUNNING: {RunStepStatus.COMPLETED, RunStepStatus.FAILED},
        RunStepStatus.COMPLETED: set(),
        RunStepStatus.FAILED: set(),
    }

    def __init__(self, *, store: Any) -> None:
        self.store = store

    def _emit(
        self,
        *,
        tenant_id: str,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> None:
        self.store.append_outbox_event(
            tenant_id=tenant_id,
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload,
        )

    def _check_transition(self, *, current: str, new: RunStatus) -> None:
        allowed = self.ALLOWED_TRANSITIONS.get(RunStatus(current), set())
        if new not in allowed:
            raise PipelineError(
                code="RUN_STATE_TRANSITION_INVALID",
                message=f"invalid run transition: {current} -> {new.value}",
                error_class="business_rule",
                retryable=False,
            )

    def _load_run(self, *, tenant_id: str, run_id: str) -> dict[str, Any]:
        run = self.store.get_run_for_tenant(tenant_id=tenant_id, run_id=run_id)
        if run is None:
            raise PipelineError(
                code="RUN_NOT_FOUND",
                message=f"run not found: {run_id}",
                error_class="persistence",
                retryable=True,
            )
        return run

    def start_run(
        self,
        *,
        tenant_id: str,
        job_id: str,
        trigger: RunTrigger | str,
        input_snapshot: dict[str, Any],
    ) -> dict[str, Any]:
        """Create the Run. It is recorded as PENDING and immediately moved to RUNNING."""
        now = _utcnow()
        run = {
            "run_id": f"run_{uuid.uuid4().hex[:16]}",
            "tenant_id": tenant_id,
            "job_id": job_id,
            "trigger": str(trigger),
            "status": RunStatus.PENDING.value,
            "input_snapshot": dict(input_snapshot),
            "output_summary": None,
            "started_at": now.isoformat(),
            "error_message": None,
            "completed_at": None,
            "duration_ms": None,
        }
        self._check_transition(current=run["status"], new=RunStatus.RUNNING)
        run["status"] = RunStatus.RUNNING.value
        saved = self.store.save_run(run=run)
        self._emit(
            tenant_id=tenant_id,
            event_type="run.running",
            aggregate_type="run",
            aggregate_id=run["run_id"],
            payload={"tenant_id": tenant_id, "run_id": run["run_id"], "job_id": job_id, "status": run["status"]},
        )
        logger.info("run_started tenant_id=%s run_id=%s job_id=%s", tenant_id, run["run_id"], job_id)
        return saved

    def start_step(self, *, run: dict[str, Any], connector: str, query: str) -> dict[str, Any]:
        step = {
            "step_id": f"step_{uuid.uuid4().hex[:16]}",
            "run_id": run["run_id"],
            "tenant_id": run["tenant_id"],
            "connector": connector,
            "status": RunStepStatus.RUNNING.value,
            "input_snapshot": {"query": query},
            "output": None,
            "error_message": None,
            "duration_ms": None,
            "created_at": _utcnow().isoformat(),
        }
        saved = self.store.save_run_step(step=step)
        self._emit(
            tenant_id=run["tenant_id"],
            event_type="run_step.running",
            aggregate_type="run_step",
            aggregate_id=step["step_id"],
            payload={
                "tenant_id": run["tenant_id"],
                "run_id": run["run_id"],
                "connector": connector,
                "status": step["status"],
            },
        )
        return saved

    def complete_step(self, *, step: dict[str, Any], result: NormalizedResult, duration_ms: int) -> dict[str, Any]:
        """Record the connector outcome; a failed result marks the step FAILED."""
        current = RunStepStatus(step["status"])
        new_status = RunStepStatus.COMPLETED if result.success else RunStepStatus.FAILED
        if new_status not in self.ALLOWED_STEP_TRANSITIONS[current]:
            raise PipelineError(
                code="RUN_STEP_TRANSITION_INVALID",
                message=f"invalid step transition: {current.value} -> {new_status.value}",
                error_class="business_rule",
                retryable=False,
            )
        updated = dict(step)
        updated["status"] = new_status.value
        updated["output"] = result.model_dump(mode="json")
        updated["error_message"] = result.error.message if result.error is not None else None
        updated["duration_ms"] = int(duration_ms)
        saved = self.store.save_run_step(step=updated)
        self._emit(
            tenant_id=step["tenant_id"],
            event_type=f"run_step.{new_status.value.lower()}",
            aggregate_type="run_step",
            aggregate_id=step["step_id"],
            payload={
                "tenant_id": step["tenant_id"],
                "run_id": step["run_id"],
                "connector": step["connector"],
                "status": new_status.value,
                "duration_ms": int(duration_ms),
            },
        )
        logger.info(
            "run_step_finished run_id=%s connector=%s status=%s duration_ms=%s",
            step["run_id"],
            step["connector"],
            new_status.value,
            duration_ms,
        )
        return saved

    def _finish(
        self,
        *,
        run: dict[str, Any],
        status: RunStatus,
        output_summary: str | None,
        error_message: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        current = self._load_run(tenant_id=run["tenant_id"], run_id=run["run_id"])
        self._check_transition(current=current["status"], new=status)
        ended = _utcnow()
        current["status"] = status.value
        current["completed_at"] = ended.isoformat()
        current["duration_ms"] = _duration_ms(current["started_at"], ended)
        if output_summary is not None:
            current["output_summary"] = output_summary[:OUTPUT_SUMMARY_MAX_CHARS]
        if error_message is not None:
            current["error_message"] = error_message[:OUTPUT_SUMMARY_MAX_CHARS]
        saved = self.store.save_run(run=current)
        self._emit(
            tenant_id=current["tenant_id"],
            event_type=f"run.{status.value.lower()}",
            aggregate_type="run",
            aggregate_id=current["run_id"],
            payload={
                "tenant_id": current["tenant_id"],
                "run_id": current["run_id"],
                "status": status.value,
                "duration_ms": current["duration_ms"],
                **(extra or {}),
            },
        )
        return saved

    def finalize_run(
        self,
        *,
        run: dict[str, Any],
        results: list[NormalizedResult],
        output_summary: str,
    ) -> dict[str, Any]:
        failed = sum(1 for r in results if not r.success)
        status = resolve_run_status(invoked=len(results), failed=failed)
        saved = self._finish(
            run=run,
            status=status,
            output_summary=output_summary,
            extra={"invoked": len(results), "failed": failed},
        )
        logger.info(
            "run_finalized tenant_id=%s run_id=%s status=%s invoked=%s failed=%s duration_ms=%s",
            saved["tenant_id"],
            saved["run_id"],
            status.value,
            len(results),
            failed,
            saved["duration_ms"],
        )
        return saved

    def fail_run(self, *, run: dict[str, Any], error: str) -> dict[str, Any] | None:
        """Mark a still-RUNNING run FAILED; a run already terminal is left untouched."""
        current = self._load_run(tenant_id=run["tenant_id"], run_id=run["run_id"])
        if RunStatus(current["status"]) in TERMINAL_RUN_STATUSES:
            logger.warning(
                "run_fail_skipped run_id=%s status=%s",
                current["run_id"],
                current["status"],
            )
            return None
        saved = self._finish(
            run=current,
            status=RunStatus.FAILED,
            output_summary=None,
            error_message=error,
            extra={"error": error[:200]},
        )
        logger.error("run_failed tenant_id=%s run_id=%s error=%s", saved["tenant_id"], saved["run_id"], error)
        return saved
