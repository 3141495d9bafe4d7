from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any

from company_intel.credential_store import create_credential_store_from_env
from company_intel.env import env_int
from company_intel.fanout import DEFAULT_TIMEOUT_GRACE_MS, FanOutExecutor
from company_intel.llm_provider import ProviderFallbackChain, providers_from_env
from company_intel.orchestrator import EnrichmentOrchestrator
from company_intel.run_tracker import RunTracker
from company_intel.store import create_store_from_env


def build_orchestrator_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    store: Any = None,
    credentials: Any = None,
) -> EnrichmentOrchestrator:
    """Wire store, credentials, fan-out and LLM chain from ``INTEL_*`` / ``LLM_*`` settings."""
    env = os.environ if environ is None else environ
    store = store if store is not None else create_store_from_env(env)
    if credentials is None:
        credentials = create_credential_store_from_env(env, tx_runner=getattr(store, "tx_runner", None))
    tracker = RunTracker(store=store)
    fanout = FanOutExecutor(
        tracker=tracker,
        timeout_grace_ms=env_int(env, "FANOUT_TIMEOUT_GRACE_MS", default=DEFAULT_TIMEOUT_GRACE_MS),
    )
    return EnrichmentOrchestrator(
        store=store,
        credentials=credentials,
        tracker=tracker,
        fanout=fanout,
        llm_chain=ProviderFallbackChain(default_providers=providers_from_env(env)),
    )
