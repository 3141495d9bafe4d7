from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, fields
from typing import Any

from jsonschema import ValidationError, validate

from company_intel.env import env_int
from company_intel.errors import PipelineError
from company_intel.orchestrator import EnrichmentJob, EnrichmentOrchestrator
from company_intel.queue_backend import ENRICHMENT_QUEUE, QueueMessage
from company_intel.run_tracker import RunStatus

logger = logging.getLogger(__name__)

JOB_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["job_id", "tenant_id", "thread_key", "user_message"],
    "properties": {
        "job_id": {"type": "string", "pattern": "^job_[0-9a-f]{24}$"},
        "tenant_id": {"type": "string", "minLength": 1},
        "thread_key": {"type": "string", "minLength": 1},
        "user_message": {"type": "string"},
        "origin": {"type": ["object", "null"]},
        "enqueued_at": {"type": "string"},
    },
}


def enqueue_enrichment_job(queue_backend: Any, job: EnrichmentJob) -> QueueMessage:
    """Queue a job under its derived id; a live duplicate is not queued twice."""
    payload = {"job_id": job.job_id, **job.model_dump(mode="json")}
    msg = queue_backend.enqueue(
        tenant_id=job.tenant_id,
        queue_name=ENRICHMENT_QUEUE,
        payload=payload,
        job_id=job.job_id,
    )
    if msg.duplicate:
        logger.info("job_deduplicated tenant_id=%s job_id=%s", job.tenant_id, job.job_id)
    else:
        logger.info("job_enqueued tenant_id=%s job_id=%s", job.tenant_id, job.job_id)
    return msg


class SlidingWindowRateLimiter:
    """At most ``max_jobs`` job starts in any trailing ``window_ms``."""

    def __init__(self, *, max_jobs: int, window_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_jobs = max(1, int(max_jobs))
        self.window_s = max(1, int(window_ms)) / 1000.0
        self._clock = clock
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_s:
            self._starts.popleft()

    def has_capacity(self) -> bool:
        with self._lock:
            self._prune(self._clock())
            return len(self._starts) < self.max_jobs

    def record(self) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._starts.append(now)


@dataclass
class WorkerRunStats:
    processed: int = 0
    completed: int = 0
    degraded: int = 0
    retrying: int = 0
    failed: int = 0
    invalid: int = 0
    stalled: int = 0
    acked: int = 0
    requeued: int = 0
    rate_limited: int = 0

    def merge(self, other: "WorkerRunStats") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class WorkerRuntime:
    """Resident consumer for the enrichment queue.

    Up to ``concurrency`` jobs run at once. A job that returns is acked; one
    that raises or outlives ``job_timeout_ms`` is nacked with exponential
    backoff until ``max_attempts`` is reached and then discarded.

    A stalled job's thread cannot be killed, so its slot stays taken until the
    call returns and no new job is claimed into it.
    """

    def __init__(
        self,
        *,
        orchestrator: EnrichmentOrchestrator,
        queue_backend: Any,
        queue_name: str = ENRICHMENT_QUEUE,
        concurrency: int = 5,
        max_attempts: int = 3,
        backoff_base_ms: int = 2000,
        backoff_max_ms: int = 60_000,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        job_timeout_ms: int = 120_000,
        poll_interval_ms: int = 200,
    ) -> None:
        self.orchestrator = orchestrator
        self.queue_backend = queue_backend
        self.queue_name = queue_name
        self.concurrency = max(1, int(concurrency))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_ms = max(0, int(backoff_base_ms))
        self.backoff_max_ms = max(self.backoff_base_ms, int(backoff_max_ms))
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(max_jobs=50, window_ms=60_000)
        self.job_timeout_ms = max(1, int(job_timeout_ms))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="enrichment")
        # Stalled jobs whose threads are still running; each holds an executor slot.
        self._abandoned: set[Future] = set()
        self._abandoned_lock = threading.Lock()

    def retry_delay_ms(self, attempts_made: int) -> int:
        """Backoff after the given number of failed attempts: base, 2x base, 4x base, ..."""
        exponent = max(0, int(attempts_made) - 1)
        return min(self.backoff_max_ms, self.backoff_base_ms * (2**exponent))

    def busy_slots(self) -> int:
        with self._abandoned_lock:
            self._abandoned = {f for f in self._abandoned if not f.done()}
            return len(self._abandoned)

    def free_slots(self) -> int:
        return max(0, self.concurrency - self.busy_slots())

    def _list_tenants(self) -> list[str]:
        return [str(x) for x in self.queue_backend.list_tenants(queue_name=self.queue_name) if str(x)]

    def _parse(self, msg: QueueMessage) -> EnrichmentJob | None:
        try:
            validate(instance=msg.payload, schema=JOB_PAYLOAD_SCHEMA)
            job = EnrichmentJob.model_validate({k: v for k, v in msg.payload.items() if k != "job_id"})
        except (ValidationError, ValueError) as exc:
            logger.error("job_payload_invalid message_id=%s error=%s", msg.message_id, exc)
            return None
        if job.job_id != msg.payload["job_id"]:
            logger.error("job_id_mismatch message_id=%s job_id=%s", msg.message_id, msg.payload["job_id"])
            return None
        return job

    def _claim(self, stats: WorkerRunStats, *, limit: int) -> list[tuple[QueueMessage, EnrichmentJob]]:
        claimed: list[tuple[QueueMessage, EnrichmentJob]] = []
        while len(claimed) < limit:
            tenants = self._list_tenants()
            if not tenants:
                break
            progressed = False
            for tenant_id in tenants:
                if len(claimed) >= limit:
                    break
                if not self.rate_limiter.has_capacity():
                    stats.rate_limited += 1
                    return claimed
                msg = self.queue_backend.dequeue(tenant_id=tenant_id, queue_name=self.queue_name)
                if msg is None:
                    continue
                self.rate_limiter.record()
                progressed = True
                stats.processed += 1
                job = self._parse(msg)
                if job is None:
                    self.queue_backend.nack(tenant_id=tenant_id, message_id=msg.message_id, requeue=False)
                    stats.invalid += 1
                    continue
                claimed.append((msg, job))
            if not progressed:
                break
        return claimed

    def _retry_or_discard(self, *, msg: QueueMessage, error: BaseException, stats: WorkerRunStats) -> None:
        attempts_made = msg.attempt + 1
        retryable = not isinstance(error, PipelineError) or error.retryable
        if retryable and attempts_made < self.max_attempts:
            delay_ms = self.retry_delay_ms(attempts_made)
            self.queue_backend.nack(
                tenant_id=msg.tenant_id,
                message_id=msg.message_id,
                requeue=True,
                delay_ms=delay_ms,
            )
            stats.retrying += 1
            stats.requeued += 1
            logger.warning(
                "job_retry_scheduled job_id=%s attempt=%s delay_ms=%s error=%s",
                msg.message_id,
                attempts_made,
                delay_ms,
                error,
            )
            return
        self.queue_backend.nack(tenant_id=msg.tenant_id, message_id=msg.message_id, requeue=False)
        stats.failed += 1
        logger.error("job_discarded job_id=%s attempts=%s error=%s", msg.message_id, attempts_made, error)

    def _handle_done(self, *, msg: QueueMessage, future: Future, stats: WorkerRunStats) -> None:
        error = future.exception()
        if error is not None:
            self._retry_or_discard(msg=msg, error=error, stats=stats)
            return
        result = future.result()
        self.queue_backend.ack(tenant_id=msg.tenant_id, message_id=msg.message_id)
        stats.acked += 1
        if result.get("status") == RunStatus.DEGRADED.value:
            stats.degraded += 1
        else:
            stats.completed += 1

    def _handle_stalled(self, *, msg: QueueMessage, job: EnrichmentJob, stats: WorkerRunStats) -> None:
        stats.stalled += 1
        error = TimeoutError(f"job stalled after {self.job_timeout_ms} ms")
        failed_runs = self.orchestrator.fail_stalled(job, error=str(error))
        logger.error("job_stalled job_id=%s failed_runs=%s", job.job_id, ",".join(failed_runs))
        self._retry_or_discard(msg=msg, error=error, stats=stats)

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        free = self.free_slots()
        if free == 0:
            logger.warning("worker_saturated stalled_jobs=%s", self.concurrency)
            return stats.as_dict()
        claimed = self._claim(stats, limit=free)
        if not claimed:
            return stats.as_dict()

        pending = {self._executor.submit(self.orchestrator.process, job): (msg, job) for msg, job in claimed}
        done, not_done = wait(list(pending), timeout=self.job_timeout_ms / 1000.0)
        for future in done:
            msg, _ = pending[future]
            self._handle_done(msg=msg, future=future, stats=stats)
        for future in not_done:
            msg, job = pending[future]
            if future.cancel():
                # never started, so there is no run to fail
                self.queue_backend.nack(tenant_id=msg.tenant_id, message_id=msg.message_id, requeue=True)
                stats.requeued += 1
                logger.warning("job_requeued_unstarted job_id=%s", job.job_id)
                continue
            with self._abandoned_lock:
                self._abandoned.add(future)
            self._handle_stalled(msg=msg, job=job, stats=stats)
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = WorkerRunStats(**self.run_once())
            aggregate.merge(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current.processed == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def create_worker_runtime_from_env(
    *,
    orchestrator: EnrichmentOrchestrator,
    queue_backend: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        orchestrator=orchestrator,
        queue_backend=queue_backend,
        concurrency=env_int(env, "WORKER_CONCURRENCY", default=5, minimum=1),
        max_attempts=env_int(env, "WORKER_MAX_ATTEMPTS", default=3, minimum=1),
        backoff_base_ms=env_int(env, "WORKER_RETRY_BACKOFF_BASE_MS", default=2000),
        backoff_max_ms=env_int(env, "WORKER_RETRY_BACKOFF_MAX_MS", default=60_000),
        rate_limiter=SlidingWindowRateLimiter(
            max_jobs=env_int(env, "WORKER_RATE_LIMIT_MAX", default=50, minimum=1),
            window_ms=env_int(env, "WORKER_RATE_LIMIT_WINDOW_MS", default=60_000, minimum=1),
        ),
        job_timeout_ms=env_int(env, "WORKER_JOB_TIMEOUT_MS", default=120_000, minimum=1),
        poll_interval_ms=env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
