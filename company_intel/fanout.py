from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from company_intel.connectors import Connector, build_connector
from company_intel.credential_store import ConnectorSpec
from company_intel.errors import PipelineError
from company_intel.results import NormalizedResult, err_result
from company_intel.run_tracker import RunTracker

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_GRACE_MS = 2000


@dataclass
class _Invocation:
    index: int
    source: str
    step: dict[str, Any]
    started: float
    deadline: float


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class FanOutExecutor:
    """Run every connector of a job concurrently, one RunStep each.

    Steps are created before any connector is invoked and are completed from
    the calling thread, exactly once each. A connector that raises or runs
    past its deadline becomes a failed result; siblings are never cancelled.
    Threads still busy after their deadline are abandoned, not joined.
    """

    def __init__(
        self,
        *,
        tracker: RunTracker,
        timeout_grace_ms: int = DEFAULT_TIMEOUT_GRACE_MS,
        max_workers: int | None = None,
        connector_factory: Any = build_connector,
    ) -> None:
        self.tracker = tracker
        self.timeout_grace_ms = max(0, int(timeout_grace_ms))
        self.max_workers = max_workers
        self.connector_factory = connector_factory

    def _build(self, spec: ConnectorSpec) -> tuple[Connector | None, NormalizedResult | None]:
        if spec.config_error is not None:
            return None, err_result(
                source=spec.connector_type,
                message=f"connector config unavailable: {spec.config_error}",
                code="CONNECTOR_CONFIG_UNAVAILABLE",
            )
        try:
            return self.connector_factory(spec.connector_type, spec.config or {}), None
        except PipelineError as exc:
            return None, err_result(source=spec.connector_type, message=exc.message, code=exc.code)

    @staticmethod
    def _outcome(future: Future, source: str) -> NormalizedResult:
        try:
            result = future.result(timeout=0)
        except Exception as exc:
            logger.warning("connector_raised source=%s error=%s", source, type(exc).__name__)
            return err_result(
                source=source,
                message=str(exc) or type(exc).__name__,
                code="CONNECTOR_EXCEPTION",
            )
        if not isinstance(result, NormalizedResult):
            return err_result(source=source, message="connector returned no result", code="CONNECTOR_NO_RESULT")
        return result

    def _finish(self, inv: _Invocation, result: NormalizedResult, results: list[NormalizedResult | None]) -> None:
        duration_ms = _elapsed_ms(inv.started)
        if not result.success and result.duration_ms == 0:
            result = result.model_copy(update={"duration_ms": duration_ms})
        self.tracker.complete_step(step=inv.step, result=result, duration_ms=duration_ms)
        results[inv.index] = result

    def run_all(self, *, run: dict[str, Any], connectors: list[ConnectorSpec], query: str) -> list[NormalizedResult]:
        results: list[NormalizedResult | None] = [None] * len(connectors)
        runnable: list[tuple[_Invocation, Connector]] = []

        for index, spec in enumerate(connectors):
            step = self.tracker.start_step(run=run, connector=spec.connector_type, query=query)
            started = time.monotonic()
            connector, failure = self._build(spec)
            inv = _Invocation(index=index, source=spec.connector_type, step=step, started=started, deadline=started)
            if failure is not None:
                logger.warning(
                    "connector_unavailable run_id=%s source=%s code=%s",
                    run["run_id"],
                    spec.connector_type,
                    failure.error.code if failure.error else "",
                )
                self._finish(inv, failure, results)
                continue
            runnable.append((inv, connector))

        if runnable:
            executor = ThreadPoolExecutor(
                max_workers=self.max_workers or len(runnable),
                thread_name_prefix="fanout",
            )
            try:
                pending: dict[Future, _Invocation] = {}
                for inv, connector in runnable:
                    inv.started = time.monotonic()
                    timeout_ms = int(getattr(connector, "timeout_ms", 10000)) + self.timeout_grace_ms
                    inv.deadline = inv.started + timeout_ms / 1000.0
                    pending[executor.submit(connector.run_enrichment, query)] = inv
                self._collect(pending, results)
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

        return [r for r in results if r is not None]

    def _collect(self, pending: dict[Future, _Invocation], results: list[NormalizedResult | None]) -> None:
        while pending:
            now = time.monotonic()
            for future, inv in list(pending.items()):
                if future.done():
                    del pending[future]
                    self._finish(inv, self._outcome(future, inv.source), results)
                elif inv.deadline <= now:
                    del pending[future]
                    future.cancel()
                    logger.warning("connector_timeout source=%s elapsed_ms=%s", inv.source, _elapsed_ms(inv.started))
                    self._finish(
                        inv,
                        err_result(
                            source=inv.source,
                            message=f"connector timed out after {_elapsed_ms(inv.started)} ms",
                            code="CONNECTOR_TIMEOUT",
                        ),
                        results,
                    )
            if not pending:
                break
            next_deadline = min(inv.deadline for inv in pending.values())
            wait(list(pending), timeout=max(0.0, next_deadline - time.monotonic()), return_when=FIRST_COMPLETED)
