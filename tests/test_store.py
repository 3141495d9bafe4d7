from __future__ import annotations

import pytest

from company_intel.errors import PipelineError
from company_intel.store import InMemoryStore, create_store_from_env


def _event(store: InMemoryStore, tenant_id: str, event_type: str) -> dict:
    return store.append_outbox_event(
        tenant_id=tenant_id,
        event_type=event_type,
        aggregate_type="run",
        aggregate_id="run_1",
        payload={"status": "RUNNING"},
    )


def test_outbox_events_keep_append_order_per_tenant(store):
    _event(store, "tenant_a", "run.running")
    _event(store, "tenant_b", "run.running")
    _event(store, "tenant_a", "run.completed")

    events = store.list_outbox_events(tenant_id="tenant_a")
    assert [e["event_type"] for e in events] == ["run.running", "run.completed"]
    assert all(e["status"] == "pending" for e in events)
    assert events[0]["seq"] < events[1]["seq"]


def test_mark_outbox_event_published(store):
    event = _event(store, "tenant_a", "run.running")
    published = store.mark_outbox_event_published(tenant_id="tenant_a", event_id=event["event_id"])
    assert published["status"] == "published"
    assert published["published_at"] is not None
    assert store.list_outbox_events(tenant_id="tenant_a", status="pending") == []


def test_mark_outbox_event_published_is_tenant_scoped(store):
    event = _event(store, "tenant_a", "run.running")
    with pytest.raises(PipelineError) as exc_info:
        store.mark_outbox_event_published(tenant_id="tenant_b", event_id=event["event_id"])
    assert exc_info.value.code == "OUTBOX_EVENT_NOT_FOUND"


def test_error_logs_filter_by_run(store):
    store.append_error_log(tenant_id="tenant_a", source="enrichment.orchestrator", message="a", run_id="run_1")
    store.append_error_log(
        tenant_id="tenant_a",
        source="enrichment.orchestrator/llm",
        message="b",
        run_id="run_2",
        metadata={"job_id": "job_x"},
    )
    store.append_error_log(tenant_id="tenant_b", source="x", message="c", run_id="run_1")

    logs = store.list_error_logs(tenant_id="tenant_a", run_id="run_2")
    assert [x["message"] for x in logs] == ["b"]
    assert logs[0]["error_id"].startswith("err_")
    assert logs[0]["metadata"] == {"job_id": "job_x"}
    assert len(store.list_error_logs(tenant_id="tenant_a")) == 2


def test_reset_clears_history(store):
    _event(store, "tenant_a", "run.running")
    store.append_error_log(tenant_id="tenant_a", source="x", message="y")
    store.reset()
    assert store.list_outbox_events(tenant_id="tenant_a") == []
    assert store.list_error_logs(tenant_id="tenant_a") == []


def test_store_factory_defaults_to_in_memory():
    assert isinstance(create_store_from_env({}), InMemoryStore)


def test_store_factory_requires_dsn_for_postgres():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_store_from_env({"INTEL_STORE_BACKEND": "postgres"})


def test_store_factory_rejects_unknown_backend():
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({"INTEL_STORE_BACKEND": "sqlite"})
