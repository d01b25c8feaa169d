"""
Tests for hsseguard.api -- the HTTP sweep trigger.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from hsseguard import __version__
from hsseguard.api import create_app
from hsseguard.audit import AuditLog
from hsseguard.config import EngineSettings
from hsseguard.models import EntityKind, Escalatable
from hsseguard.notifications import NotificationAdapter, RecordingDispatcher
from hsseguard.scheduler import EscalationScheduler
from hsseguard.store import InMemoryEntityStore, InMemoryThresholdStore
from hsseguard.thresholds import ThresholdResolver


def _make_client() -> tuple[TestClient, InMemoryEntityStore, RecordingDispatcher]:
    store = InMemoryEntityStore()
    store.add(Escalatable(
        entity_id="inc-1",
        tenant_id="acme",
        kind=EntityKind.INCIDENT_SCREENING,
        reference_at=datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc),
        status="submitted",
        severity=3,
    ))
    audit_log = AuditLog()
    dispatcher = RecordingDispatcher()
    scheduler = EscalationScheduler(
        store,
        ThresholdResolver(InMemoryThresholdStore(), audit_log),
        NotificationAdapter(dispatcher, audit_log),
        audit_log=audit_log,
    )
    return TestClient(create_app(scheduler)), store, dispatcher


class _ExplodingScheduler:
    settings = EngineSettings()

    def run_sweep(self, now=None):
        raise RuntimeError("entity store unreachable")


class TestHealth:
    def test_health(self):
        client, _, _ = _make_client()
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": __version__,
            "sweep_interval_minutes": 30,
        }


class TestSweepEndpoint:
    def test_sweep_returns_summary(self):
        client, store, dispatcher = _make_client()
        # Level 3 defaults: escalation 1 at 12h.
        response = client.post("/sweep", params={"now": "2026-01-05T15:00:00Z"})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "SLA escalation sweep completed"
        assert body["entities_processed"] == 1
        assert body["escalations_sent"] == 1
        assert body["errors"] == 0
        assert store.get("inc-1").escalation_level == 1
        assert len(dispatcher.events) == 1

    def test_repeated_sweep_is_idempotent(self):
        client, _, dispatcher = _make_client()
        client.post("/sweep", params={"now": "2026-01-05T15:00:00Z"})
        body = client.post("/sweep", params={"now": "2026-01-05T15:00:00Z"}).json()
        assert body["escalations_sent"] == 0
        assert len(dispatcher.events) == 1

    def test_invalid_now_rejected(self):
        client, _, _ = _make_client()
        assert client.post("/sweep", params={"now": "yesterday"}).status_code == 422

    def test_sweep_failure_returns_500(self):
        client = TestClient(create_app(_ExplodingScheduler()))
        response = client.post("/sweep")
        assert response.status_code == 500
        assert response.json() == {"error": "entity store unreachable"}
